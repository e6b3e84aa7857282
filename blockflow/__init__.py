"""blockflow - no-code workflow engine over app-scoped SQL tables."""

__version__ = "0.1.0"
