"""
ClipSync: clipboard capture with multi-device history sync.
"""

__version__ = "0.3.0"

API_VERSION = "v1"

__all__ = [
    "API_VERSION",
    "__version__",
]
