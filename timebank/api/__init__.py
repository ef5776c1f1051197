# timebank/api/__init__.py
# This file makes the api directory a Python package.

from . import session
from . import credits
from . import admin
from . import notification

__all__ = [
    "session",
    "credits",
    "admin",
    "notification",
]
