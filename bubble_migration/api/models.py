"""Pydantic models for API responses."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime


class HealthResponse(BaseModel):
    status: str
    version: str


class ReconciliationReportResponse(BaseModel):
    generated_at: datetime
    has_unresolved: bool
    entities: List[Dict[str, Any]] = Field(default_factory=list)


class CountsResponse(BaseModel):
    counts: Dict[str, int]
    total: int


class OrderingRepairResponse(BaseModel):
    entity: str
    dry_run: bool
    violations: int
    groups_repaired: int = 0
    rows_reordered: int = 0
    planned_changes: Optional[int] = None
