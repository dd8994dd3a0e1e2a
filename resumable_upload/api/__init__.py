"""API module exports"""
from .deps import HeaderIdentityProvider, get_current_user_id, get_manager
from .endpoints import router

__all__ = ["HeaderIdentityProvider", "get_current_user_id", "get_manager", "router"]
