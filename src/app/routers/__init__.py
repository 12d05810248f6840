# Routers package
from . import (
    credits_router,
    polar_router,
)

__all__ = [
    "credits_router",
    "polar_router",
]
