"""mailbridge: two-way email channel over IMAP polling and pooled SMTP."""

__version__ = "0.1.0"

__all__ = ["__version__"]
