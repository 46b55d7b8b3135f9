"""Relational store access for forgetter."""

from forgetter.db.config import create_engine, normalize_database_url, open_engine

__all__ = ["create_engine", "normalize_database_url", "open_engine"]
