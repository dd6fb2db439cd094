"""Integrity Router — on-demand run of the read-only auditor."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db
from integrity.auditor import check_integrity, summarize

router = APIRouter(prefix="/api/v1/integrity", tags=["integrity"])


@router.get("/check")
async def run_integrity_check(db: AsyncSession = Depends(get_db)):
    violations = await check_integrity(db)
    return summarize(violations)
