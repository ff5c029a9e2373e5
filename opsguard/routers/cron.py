"""Cron scheduler router.

Operational endpoints: inspect the scheduler and, for deployments that
drive escalation from an external cron instead of the internal scheduler,
run one escalation batch on demand.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from opsguard.core.auth import require_cron_secret
from opsguard.database import get_db
from opsguard.schemas.cron import CronStatusResponse, EscalationBatchResponse
from opsguard.services.cron_scheduler import get_cron_scheduler_status
from opsguard.services.escalation_engine import process_pending_escalations

router = APIRouter(
    prefix="/api/cron",
    tags=["cron"],
    dependencies=[Depends(require_cron_secret)],
)


@router.get("/status", response_model=CronStatusResponse)
async def cron_status() -> CronStatusResponse:
    """Scheduler running flag plus the shared lease and run bookkeeping."""
    status = await get_cron_scheduler_status()
    return CronStatusResponse.model_validate(status)


@router.post("/process-escalations", response_model=EscalationBatchResponse)
async def process_escalations(
    db: AsyncSession = Depends(get_db),
) -> EscalationBatchResponse:
    """Execute every due escalation step now."""
    result = await process_pending_escalations(db)
    return EscalationBatchResponse.model_validate(result)
