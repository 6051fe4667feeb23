"""Persistent store for sessions, decisions, the trade queue and snapshots."""

from tradeguard.storage.database import Database

__all__ = ['Database']
