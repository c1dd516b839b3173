"""Opportunity API routers."""

from .opportunities import router as opportunities_router
from .line_items import router as line_items_router
from .contacts import router as contacts_router

__all__ = [
    "opportunities_router",
    "line_items_router",
    "contacts_router",
]
