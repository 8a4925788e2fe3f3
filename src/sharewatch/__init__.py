"""ShareWatch — session tracking and account-sharing rules for media servers."""

__version__ = "0.1.0"
