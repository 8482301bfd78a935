# src/routers/__init__.py

from src.routers.users import router as users_router
from src.routers.offers import router as offers_router
from src.routers.claims import router as claims_router
from src.routers.billing import router as billing_router
from src.routers.feed import router as feed_router

__all__ = ["users_router", "offers_router", "claims_router", "billing_router", "feed_router"]
