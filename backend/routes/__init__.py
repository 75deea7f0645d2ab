"""
Trade Document Hub - Routes Package

API routers for the Trade Document Hub.
"""

from .auth import router as auth_router
from .transactions import router as transactions_router, set_dependencies as set_transactions_deps

__all__ = [
    'auth_router',
    'transactions_router', 'set_transactions_deps',
]
