"""Routers package."""

from . import (
    health,
    credits,
    purchases,
    generations,
    profile,
    admin,
)
