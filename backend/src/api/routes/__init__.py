"""API route modules."""
from api.routes.brokers import router as brokers_router
from api.routes.crosswalk import router as crosswalk_router

__all__ = [
    "brokers_router",
    "crosswalk_router",
]
