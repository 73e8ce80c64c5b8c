"""
Loader — discovery, loading, validation, registration and hot reload.

Public API::

    from flowdeck.loader import LoaderOrchestrator

    orchestrator = LoaderOrchestrator()
    result = await orchestrator.load_workflows()
    definition = orchestrator.registry.get("bug-fixes-workflow")
"""

from flowdeck.loader.orchestrator import LoaderOrchestrator
from flowdeck.loader.publisher import HttpPublishTarget, PublishTarget
from flowdeck.loader.registry import ChangeAction, DefinitionRegistry, RegistryChange
from flowdeck.loader.sources import (
    DefinitionLoader,
    DefinitionSource,
    JsonDefinitionLoader,
    PythonModuleLoader,
    YamlDefinitionLoader,
    derive_definition_id,
    export_name_for,
)
from flowdeck.loader.validator import DefinitionValidator, raise_for_result, validate_definition
from flowdeck.loader.watcher import ChangeEvent, ChangeKind, ChangeWatcher

__all__ = [
    "LoaderOrchestrator",
    "PublishTarget",
    "HttpPublishTarget",
    "DefinitionRegistry",
    "RegistryChange",
    "ChangeAction",
    "DefinitionSource",
    "DefinitionLoader",
    "JsonDefinitionLoader",
    "PythonModuleLoader",
    "YamlDefinitionLoader",
    "export_name_for",
    "derive_definition_id",
    "DefinitionValidator",
    "validate_definition",
    "raise_for_result",
    "ChangeWatcher",
    "ChangeEvent",
    "ChangeKind",
]
