"""Shared dependencies for the report endpoints. Override them in tests."""

from functools import lru_cache

from fastapi import Depends

from ..models.migration import MigrationConfig
from ..loaders.base import DestinationStore
from ..loaders.supabase_store import SupabaseStore
from ..services.reconciliation import ReconciliationChecks
from ..services.retry import RetryPolicy
from ..services.schema_registry import SchemaRegistry


@lru_cache()
def get_config() -> MigrationConfig:
    return MigrationConfig.from_env()


@lru_cache()
def _registry(schemas_file) -> SchemaRegistry:
    return SchemaRegistry(schemas_file)


def get_registry(config: MigrationConfig = Depends(get_config)) -> SchemaRegistry:
    return _registry(config.schemas_file)


@lru_cache()
def get_store() -> DestinationStore:
    """One Supabase client per process."""
    return SupabaseStore.from_config(get_config())


def get_checks(
    store: DestinationStore = Depends(get_store),
    registry: SchemaRegistry = Depends(get_registry),
    config: MigrationConfig = Depends(get_config),
) -> ReconciliationChecks:
    return ReconciliationChecks(
        store, registry, dry_run=config.dry_run, retry=RetryPolicy.from_config(config.retry)
    )
