"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from consultpay.app.api.v1.endpoints import consultations, wallet, admin_billing, admin_ops

router = APIRouter()

router.include_router(consultations.router)
router.include_router(wallet.router)

# Operator endpoints
router.include_router(admin_billing.router)
router.include_router(admin_ops.router)
