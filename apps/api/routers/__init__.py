"""Routers package."""

from . import (
    health,
    auth,
    subscription,
    webhook,
)
