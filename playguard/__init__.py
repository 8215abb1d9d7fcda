"""PlayGuard — integrity verification for self-reported gameplay results."""
__version__ = "1.0.0"
