from fastapi import APIRouter

from betgate.api.routes.admin import router as admin_router
from betgate.api.routes.auth import router as auth_router
from betgate.api.routes.balance import router as balance_router
from betgate.api.routes.bets import router as bets_router
from betgate.api.routes.health import router as health_router
from betgate.api.routes.transactions import router as transactions_router

api_router = APIRouter()
api_router.include_router(health_router, tags=["health"])
api_router.include_router(auth_router, prefix="/auth", tags=["auth"])
api_router.include_router(bets_router, prefix="/bets", tags=["bets"])
api_router.include_router(balance_router, prefix="/balance", tags=["balance"])
api_router.include_router(transactions_router, prefix="/transactions", tags=["transactions"])
api_router.include_router(admin_router, prefix="/admin", tags=["admin"])
