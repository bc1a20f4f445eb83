"""
API routers for the BFF resilience layer.

Routers:
- admin: Operator visibility and manual recovery
"""

from src.routers.admin import router as admin_router

__all__ = ["admin_router"]
