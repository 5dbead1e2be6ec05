"""HTTP API for ClipSync."""
