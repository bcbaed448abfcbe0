# agentrelay/ui/__init__.py
"""
Terminal rendering for relay events.
"""

from . import colors
from .console import EventPrinter

__all__ = [
    "colors",
    "EventPrinter",
]
