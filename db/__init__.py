"""
Database module for the trade/ad signal bot.

Provides the SQLite audit store for trades, signals, market events and bot state.
"""

from .database import Database, close_database, get_database, reliability_multiplier, utc_stamp

__all__ = [
    "Database",
    "get_database",
    "close_database",
    "reliability_multiplier",
    "utc_stamp",
]
