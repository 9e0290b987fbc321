from fastapi import APIRouter

from app.api.routes import health, jobs, ops, orders, webhooks, withdrawals

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(webhooks.router, tags=["webhooks"])
api_router.include_router(jobs.router, tags=["jobs"])
api_router.include_router(withdrawals.router, tags=["withdrawals"])
api_router.include_router(orders.router, prefix="/orders", tags=["orders"])
api_router.include_router(ops.router, prefix="/ops", tags=["ops"])
