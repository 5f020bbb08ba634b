"""Migration execution models."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime
import json
import os
import uuid

from dotenv import load_dotenv

from ..errors import ConfigurationError
from .record import RecordIssue, RecordStatus


class MigrationStatus(str, Enum):
    """Status of a migration run."""
    PENDING = "pending"
    EXTRACTING = "extracting"
    LOADING = "loading"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


@dataclass
class MigrationStep:
    """Migration of a single entity type."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    entity: str = ""
    table: str = ""
    status: MigrationStatus = MigrationStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    records_processed: int = 0
    records_migrated: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    records_already_migrated: int = 0  # subset of records_skipped
    records_excluded: int = 0  # subset of records_skipped: configured exclusions and known duplicates
    records_failed: int = 0
    links_written: int = 0
    issues: List[RecordIssue] = field(default_factory=list)
    failed_batches: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def add_issue(
        self,
        source_id: str,
        status: RecordStatus,
        reason: str,
        error_type: Optional[str] = None,
    ) -> RecordIssue:
        """Record a skipped or failed record."""
        issue = RecordIssue(
            entity_type=self.entity,
            source_id=source_id,
            status=status,
            reason=reason,
            error_type=error_type,
        )
        self.issues.append(issue)
        return issue

    @property
    def unexpected_skips(self) -> int:
        """Skips caused by missing references or invalid records."""
        return self.records_skipped - self.records_already_migrated - self.records_excluded

    @property
    def skip_rate(self) -> float:
        """Share of processed records skipped for a missing reference or an invalid record."""
        if not self.records_processed:
            return 0.0
        return self.unexpected_skips / self.records_processed

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "entity": self.entity,
            "table": self.table,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "records_processed": self.records_processed,
            "records_migrated": self.records_migrated,
            "records_updated": self.records_updated,
            "records_skipped": self.records_skipped,
            "records_already_migrated": self.records_already_migrated,
            "records_excluded": self.records_excluded,
            "records_failed": self.records_failed,
            "links_written": self.links_written,
            "issues": [i.to_dict() for i in self.issues],
            "failed_batches": self.failed_batches,
            "warnings": self.warnings,
        }


@dataclass
class MigrationRun:
    """A complete migration run over one or more entity types."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    status: MigrationStatus = MigrationStatus.PENDING
    dry_run: bool = False

    # Timing
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Progress
    steps: List[MigrationStep] = field(default_factory=list)
    current_step: Optional[str] = None

    # Statistics
    total_records_processed: int = 0
    total_records_migrated: int = 0
    total_records_skipped: int = 0
    total_records_failed: int = 0

    errors: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "dry_run": self.dry_run,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "steps": [s.to_dict() for s in self.steps],
            "current_step": self.current_step,
            "total_records_processed": self.total_records_processed,
            "total_records_migrated": self.total_records_migrated,
            "total_records_skipped": self.total_records_skipped,
            "total_records_failed": self.total_records_failed,
            "errors": self.errors,
            "metadata": self.metadata,
        }

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def has_failures(self) -> bool:
        return self.total_records_failed > 0 or any(s.failed_batches for s in self.steps)

    def add_step(self, entity: str, table: str = "") -> MigrationStep:
        """Add a new step to the migration."""
        step = MigrationStep(entity=entity, table=table)
        self.steps.append(step)
        return step

    def get_step(self, entity: str) -> Optional[MigrationStep]:
        """Get a step by entity type."""
        for step in self.steps:
            if step.entity == entity:
                return step
        return None

    def update_totals(self) -> None:
        """Update total statistics from steps."""
        self.total_records_processed = sum(s.records_processed for s in self.steps)
        self.total_records_migrated = sum(s.records_migrated for s in self.steps)
        self.total_records_skipped = sum(s.records_skipped for s in self.steps)
        self.total_records_failed = sum(s.records_failed for s in self.steps)


@dataclass
class RetryConfig:
    """Bounded retry with exponential backoff."""
    max_attempts: int = 5
    backoff_factor: float = 1.0
    max_backoff: float = 30.0
    retry_statuses: List[int] = field(default_factory=lambda: [429, 500, 502, 503, 504])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "backoff_factor": self.backoff_factor,
            "max_backoff": self.max_backoff,
            "retry_statuses": self.retry_statuses,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryConfig":
        return cls(
            max_attempts=data.get("max_attempts", 5),
            backoff_factor=data.get("backoff_factor", 1.0),
            max_backoff=data.get("max_backoff", 30.0),
            retry_statuses=data.get("retry_statuses", [429, 500, 502, 503, 504]),
        )


def _env_flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class MigrationConfig:
    """Configuration for a migration or reconciliation run.

    ``exclusions`` maps an entity type to a list of rules; each rule is either
    ``{"source_id": "..."}`` or ``{"field": "...", "equals": ...}`` with an
    optional ``"reason"``. ``known_duplicates`` maps an entity type to
    ``{duplicate_source_id: canonical_source_id}``. ``ordering_overrides`` maps
    an entity type to ``{parent_source_id: [child_source_id, ...]}``, a literal
    sibling sequence that wins over the legacy order field.
    """
    name: str = "bubble-to-supabase"

    # Legacy API
    bubble_api_url: str = ""
    bubble_api_token: Optional[str] = None

    # Destination store
    supabase_url: str = ""
    supabase_key: Optional[str] = None

    # Execution options
    dry_run: bool = False
    batch_size: int = 50
    page_size: int = 100
    request_timeout: float = 30.0
    page_delay: float = 0.05
    retry: RetryConfig = field(default_factory=RetryConfig)
    max_skip_rate: Optional[float] = 0.5
    skip_rate_min_records: int = 20
    update_existing: bool = False
    fetch_missing_references: bool = False

    # Data rules
    exclusions: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    known_duplicates: Dict[str, Dict[str, str]] = field(default_factory=dict)
    ordering_overrides: Dict[str, Dict[str, List[str]]] = field(default_factory=dict)

    # Schemas and output
    schemas_file: Optional[str] = None
    output_dir: str = "./data"
    save_report: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation. Secrets are left out."""
        return {
            "name": self.name,
            "bubble_api_url": self.bubble_api_url,
            "supabase_url": self.supabase_url,
            "dry_run": self.dry_run,
            "batch_size": self.batch_size,
            "page_size": self.page_size,
            "request_timeout": self.request_timeout,
            "page_delay": self.page_delay,
            "retry": self.retry.to_dict(),
            "max_skip_rate": self.max_skip_rate,
            "skip_rate_min_records": self.skip_rate_min_records,
            "update_existing": self.update_existing,
            "fetch_missing_references": self.fetch_missing_references,
            "exclusions": self.exclusions,
            "known_duplicates": self.known_duplicates,
            "ordering_overrides": self.ordering_overrides,
            "schemas_file": self.schemas_file,
            "output_dir": self.output_dir,
            "save_report": self.save_report,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationConfig":
        """Create from dictionary representation."""
        return cls(
            name=data.get("name", "bubble-to-supabase"),
            bubble_api_url=data.get("bubble_api_url", ""),
            bubble_api_token=data.get("bubble_api_token"),
            supabase_url=data.get("supabase_url", ""),
            supabase_key=data.get("supabase_key"),
            dry_run=data.get("dry_run", False),
            batch_size=data.get("batch_size", 50),
            page_size=data.get("page_size", 100),
            request_timeout=data.get("request_timeout", 30.0),
            page_delay=data.get("page_delay", 0.05),
            retry=RetryConfig.from_dict(data.get("retry", {})),
            max_skip_rate=data.get("max_skip_rate", 0.5),
            skip_rate_min_records=data.get("skip_rate_min_records", 20),
            update_existing=data.get("update_existing", False),
            fetch_missing_references=data.get("fetch_missing_references", False),
            exclusions=data.get("exclusions", {}),
            known_duplicates=data.get("known_duplicates", {}),
            ordering_overrides=data.get("ordering_overrides", {}),
            schemas_file=data.get("schemas_file"),
            output_dir=data.get("output_dir", "./data"),
            save_report=data.get("save_report", True),
        )

    @classmethod
    def from_json_file(cls, file_path: str) -> "MigrationConfig":
        """Load configuration from a JSON file.

        Raises:
            ConfigurationError: the file is missing, unreadable or not a JSON object
        """
        try:
            with open(file_path, 'r') as f:
                data = json.load(f)
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file {file_path}: {e}") from e
        except ValueError as e:
            raise ConfigurationError(f"Config file {file_path} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {file_path} must hold a JSON object")
        try:
            return cls.from_dict(data)
        except (TypeError, ValueError, AttributeError) as e:
            raise ConfigurationError(f"Invalid config file {file_path}: {e}") from e

    @classmethod
    def from_env(
        cls,
        base: Optional["MigrationConfig"] = None,
        env_file: Optional[str] = None,
    ) -> "MigrationConfig":
        """Apply environment overrides (after loading a .env file) on top of ``base``."""
        load_dotenv(env_file)
        config = cls.from_dict(base.to_dict()) if base else cls()
        if base:
            config.bubble_api_token = base.bubble_api_token
            config.supabase_key = base.supabase_key

        env = os.environ
        if env.get("BUBBLE_API_URL"):
            config.bubble_api_url = env["BUBBLE_API_URL"]
        if env.get("BUBBLE_API_TOKEN"):
            config.bubble_api_token = env["BUBBLE_API_TOKEN"]
        if env.get("SUPABASE_URL"):
            config.supabase_url = env["SUPABASE_URL"]
        if env.get("SUPABASE_SERVICE_ROLE_KEY"):
            config.supabase_key = env["SUPABASE_SERVICE_ROLE_KEY"]
        if env.get("MIGRATION_BATCH_SIZE"):
            try:
                config.batch_size = int(env["MIGRATION_BATCH_SIZE"])
            except ValueError:
                raise ConfigurationError(
                    f"MIGRATION_BATCH_SIZE must be an integer, got {env['MIGRATION_BATCH_SIZE']!r}"
                )
        if env.get("MIGRATION_DRY_RUN"):
            config.dry_run = _env_flag(env["MIGRATION_DRY_RUN"])
        return config

    def validate(self, require_legacy: bool = True) -> List[str]:
        """Return a list of configuration problems; empty when usable."""
        problems = []
        if require_legacy:
            if not self.bubble_api_url:
                problems.append("bubble_api_url is not set (BUBBLE_API_URL)")
            if not self.bubble_api_token:
                problems.append("bubble_api_token is not set (BUBBLE_API_TOKEN)")
        if not self.supabase_url:
            problems.append("supabase_url is not set (SUPABASE_URL)")
        if not self.supabase_key:
            problems.append("supabase_key is not set (SUPABASE_SERVICE_ROLE_KEY)")
        if self.batch_size < 1:
            problems.append(f"batch_size must be positive, got {self.batch_size}")
        if not 1 <= self.page_size <= 100:
            problems.append(f"page_size must be between 1 and 100, got {self.page_size}")
        if self.retry.max_attempts < 1:
            problems.append("retry.max_attempts must be at least 1")
        if self.max_skip_rate is not None and not 0 < self.max_skip_rate <= 1:
            problems.append(f"max_skip_rate must be in (0, 1], got {self.max_skip_rate}")
        return problems
