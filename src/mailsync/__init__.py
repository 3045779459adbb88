"""Multi-account IMAP sync and conversation threading engine."""

__version__ = "0.1.0"
