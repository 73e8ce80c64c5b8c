"""
flowdeck — Workflow-definition runtime.

Discovers declarative workflow documents on disk, loads and validates
them, keeps them in a live registry, and hot-reloads them as files change.
"""

from flowdeck.config import RuntimeSettings, get_settings
from flowdeck.loader import (
    ChangeWatcher,
    DefinitionRegistry,
    DefinitionSource,
    DefinitionValidator,
    LoaderOrchestrator,
)
from flowdeck.models import Definition, LoadResult, Node, ValidationResult
from flowdeck.utils.resilience import CircuitBreaker, RetryExecutor, RetryOptions
from flowdeck.version import VERSION

__version__ = VERSION

__all__ = [
    # Configuration
    "RuntimeSettings",
    "get_settings",
    # Models
    "Definition",
    "Node",
    "ValidationResult",
    "LoadResult",
    # Loader pipeline
    "LoaderOrchestrator",
    "DefinitionRegistry",
    "DefinitionSource",
    "DefinitionValidator",
    "ChangeWatcher",
    # Resilience
    "RetryExecutor",
    "RetryOptions",
    "CircuitBreaker",
]
