"""Linux control groups: the unified v2 hierarchy and host inspection."""

__version__ = "0.1.0"
__all__ = ["errors", "host", "v2"]