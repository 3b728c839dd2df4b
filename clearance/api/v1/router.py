from fastapi import APIRouter

from clearance.api.v1.endpoints import (
    criteria,
    eligible_affiliates,
    affiliates,
    payments,
    events,
)

api_router = APIRouter(prefix="/api/v1")

# Affiliate Earnings Clearance
api_router.include_router(criteria.router, prefix="/clearance", tags=["Clearance Criteria"])
api_router.include_router(eligible_affiliates.router, prefix="/clearance", tags=["Eligible Affiliates"])
api_router.include_router(affiliates.router, prefix="/clearance", tags=["Affiliate Clearance Status"])
api_router.include_router(payments.router, prefix="/clearance/payments", tags=["Batch Payments"])
api_router.include_router(events.router, prefix="/clearance", tags=["Clearance Events"])
