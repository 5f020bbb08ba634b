"""Reconciliation report endpoints."""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException

from ..dependencies import get_checks
from ..models import CountsResponse, OrderingRepairResponse, ReconciliationReportResponse
from ...errors import ConfigurationError, DestinationUnavailableError, TransientIOError
from ...services.reconciliation import ReconciliationChecks

logger = logging.getLogger(__name__)

router = APIRouter()


def _entity_or_404(checks: ReconciliationChecks, entity: str) -> str:
    try:
        return checks.registry.get(entity).name
    except ConfigurationError:
        raise HTTPException(status_code=404, detail=f"Unknown entity type: {entity}")


@router.get("/reconciliation", response_model=ReconciliationReportResponse)
def reconciliation_report(
    entity: Optional[str] = None,
    checks: ReconciliationChecks = Depends(get_checks),
):
    """Run every check without repairing anything."""
    entities = [_entity_or_404(checks, entity)] if entity else None
    try:
        report = checks.report(entities)
    except (DestinationUnavailableError, TransientIOError) as e:
        raise HTTPException(status_code=503, detail=str(e))
    return report.to_dict()


@router.get("/counts", response_model=CountsResponse)
def table_counts(checks: ReconciliationChecks = Depends(get_checks)):
    """Row count of every entity table."""
    try:
        counts = checks.table_counts()
    except (DestinationUnavailableError, TransientIOError) as e:
        raise HTTPException(status_code=503, detail=str(e))
    return CountsResponse(counts=counts, total=sum(counts.values()))


@router.post("/reconciliation/{entity}/repair-ordering", response_model=OrderingRepairResponse)
def repair_ordering(entity: str, checks: ReconciliationChecks = Depends(get_checks)):
    """Renumber broken ordering groups of one entity type."""
    entity = _entity_or_404(checks, entity)
    if checks.registry.get(entity).ordering is None:
        raise HTTPException(status_code=400, detail=f"{entity} has no ordering column")

    try:
        violations = checks.find_ordering_violations(entity)
        groups, rows = checks.repair_ordering(entity, violations)
    except (DestinationUnavailableError, TransientIOError) as e:
        raise HTTPException(status_code=503, detail=str(e))

    logger.info(f"Ordering repair for {entity}: {groups} groups, {rows} rows")
    return OrderingRepairResponse(
        entity=entity,
        dry_run=checks.dry_run,
        violations=len(violations),
        groups_repaired=groups,
        rows_reordered=rows,
        planned_changes=sum(len(v.changes) for v in violations) if checks.dry_run else None,
    )
