"""SQLite storage for synced mail."""

from .database import MailDatabase, from_iso, to_iso, utcnow

__all__ = ["MailDatabase", "from_iso", "to_iso", "utcnow"]
