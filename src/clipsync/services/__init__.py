"""Capture, merge and sync services for ClipSync."""
