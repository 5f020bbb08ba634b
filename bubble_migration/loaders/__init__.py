"""Destination store and batched writer.

Only the store interface is re-exported here. ``batch_writer`` depends on the
service layer, which itself reads through ``loaders.base``; import it from its
module.
"""

from .base import DestinationStore, Filter

__all__ = [
    "DestinationStore",
    "Filter",
]
