"""Main API router that includes all endpoint routers."""

from fastapi import APIRouter

from sitswap.api.v1 import bookings, payments, points, webhooks

api_router = APIRouter()

# Bookings
api_router.include_router(bookings.router, prefix="/bookings", tags=["Bookings"])

# Payments
api_router.include_router(payments.router, prefix="/payments", tags=["Payments"])

# Points
api_router.include_router(points.router, prefix="/points", tags=["Points"])

# Webhooks
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])
