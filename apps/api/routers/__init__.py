"""Routers package."""

from . import (
    health,
    auth,
    account,
    billing,
    images,
    downloads,
)
