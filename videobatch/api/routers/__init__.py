from .batches import router as batches_router
from .enterprise import router as enterprise_router
from .health import router as health_router

__all__ = ["batches_router", "enterprise_router", "health_router"]
