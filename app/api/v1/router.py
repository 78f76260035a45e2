from fastapi import APIRouter

from app.api.v1.endpoints import affiliate_commissions


api_router = APIRouter(prefix="/api/v1")

# Affiliate attribution, commission ledger, tiers and reports
api_router.include_router(
    affiliate_commissions.router,
    prefix="/affiliate-commissions",
    tags=["Affiliate Commissions"]
)
