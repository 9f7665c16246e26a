"""Storage abstractions for Dockhand."""

from .journal import JournalEvent, JournalUnavailableError, SessionJournal

__all__ = ["JournalEvent", "JournalUnavailableError", "SessionJournal"]
