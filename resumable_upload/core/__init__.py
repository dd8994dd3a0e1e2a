"""Core module exports"""
from .config import settings, Settings
from .database import create_db_engine, create_session_factory

__all__ = ["settings", "Settings", "create_db_engine", "create_session_factory"]
