"""Routers package."""

from . import (
    health,
    credits,
    entitlements,
    billing,
)
