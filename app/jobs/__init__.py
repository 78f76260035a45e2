"""
Background Jobs Module

Maintenance jobs for the commission ledger, triggered by an external
scheduler:
- Hold maturation (PENDING -> APPROVED)
- Tier recalculation
"""

from app.jobs.commission_jobs import approve_matured_commissions_job, recalculate_tiers_job

__all__ = [
    "approve_matured_commissions_job",
    "recalculate_tiers_job",
]
