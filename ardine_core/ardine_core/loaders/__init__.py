"""Per-request batching caches for nested object resolution."""

from ardine_core.loaders.batch import BatchLoader
from ardine_core.loaders.registry import Loaders

__all__ = ["BatchLoader", "Loaders"]
