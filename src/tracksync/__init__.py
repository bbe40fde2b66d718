"""tracksync - keep filtered copies of a music library in sync."""

__version__ = "0.1.0"
