from api.routes_proposals import router as proposals_router
from api.routes_workers import router as workers_router

__all__ = ["proposals_router", "workers_router"]
