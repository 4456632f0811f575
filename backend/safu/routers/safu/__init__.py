# safu/routers/safu/__init__.py
from .launches import router as launches_router
from .contributions import router as contributions_router
from .settlement import router as settlement_router

__all__ = ["launches_router", "contributions_router", "settlement_router"]
