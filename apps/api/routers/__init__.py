"""Routers package."""

from . import (
    health,
    credits,
    songs,
    payments,
    generation,
)
