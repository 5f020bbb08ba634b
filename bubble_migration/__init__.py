"""
Bubble to Supabase Migration

Migrates records from a Bubble application's Data API into a Supabase
(PostgREST) database and reconciles the result afterwards.

Supports:
- Cursor paging over the Bubble Data API with bounded retry
- Legacy id to destination id mapping, rebuildable from the bubble_id column
- Idempotent batched upserts keyed on the legacy id
- Reconciliation: orphans, duplicate content, ordering gaps, count mismatches
"""

__version__ = "0.1.0"
