from .batches import router as batches_router
from .upscale import router as upscale_router
from .credits import router as credits_router
from .payments import router as payments_router
from .health import router as health_router

__all__ = [
    "batches_router",
    "upscale_router",
    "credits_router",
    "payments_router",
    "health_router",
]
