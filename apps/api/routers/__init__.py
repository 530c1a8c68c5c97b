"""Routers package."""

from . import (
    health,
    posts,
    generation,
    billing,
)
