"""
SalesOps Core Package

Opportunity domain, database access, side-effect events and outbox.
"""

from . import database
from . import events

__all__ = ["database", "events"]
