"""
DefinitionRegistry — In-memory store of the currently accepted definitions.

The registry:
  1. Holds at most one definition per identifier (latest accepted load wins)
  2. Provides lookup helpers: by id, by tag, by name substring, active only
  3. Fans out change notifications to listeners

It is an explicit instance owned by the orchestrator, not a process-wide
singleton. Every read/write takes the lock for a single operation only;
listeners are invoked after the lock is released so a listener may call
back into the registry.
"""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass
from typing import Callable

import structlog

from flowdeck.models import Definition

logger = structlog.get_logger(__name__)


class ChangeAction(str, enum.Enum):
    REGISTERED = "registered"
    UPDATED = "updated"
    UNREGISTERED = "unregistered"


@dataclass(frozen=True)
class RegistryChange:
    """Notification delivered to registry listeners."""

    action: ChangeAction
    definition_id: str
    definition: Definition | None = None


RegistryListener = Callable[[RegistryChange], None]


class DefinitionRegistry:
    """
    Concurrency-safe map of definition id → accepted Definition.

    Usage:
        registry = DefinitionRegistry()
        registry.add_listener(lambda change: print(change.action, change.definition_id))
        registry.register(definition)

        definition = registry.get("bug-fixes-workflow")
        tagged = registry.find_by_tag("ai")
    """

    def __init__(self) -> None:
        self._definitions: dict[str, Definition] = {}
        self._listeners: list[RegistryListener] = []
        self._lock = threading.Lock()

    # ── Registration ─────────────────────────────────────────────────

    def register(self, definition: Definition) -> None:
        """Insert or replace a definition by id. Always succeeds."""
        with self._lock:
            replaced = definition.id in self._definitions
            self._definitions[definition.id] = definition

        action = ChangeAction.UPDATED if replaced else ChangeAction.REGISTERED
        logger.info(
            "definition_registered",
            definition_id=definition.id,
            name=definition.name,
            version=definition.version,
            action=action.value,
        )
        self._notify(RegistryChange(action, definition.id, definition))

    def update(self, definition: Definition) -> None:
        """Replace-or-insert; same semantics as ``register``."""
        self.register(definition)

    def unregister(self, definition_id: str) -> bool:
        """Remove a definition. Returns True if it was present."""
        with self._lock:
            removed = self._definitions.pop(definition_id, None)

        if removed is None:
            return False

        logger.info("definition_unregistered", definition_id=definition_id)
        self._notify(RegistryChange(ChangeAction.UNREGISTERED, definition_id, removed))
        return True

    def clear(self) -> None:
        with self._lock:
            self._definitions.clear()

    # ── Lookup ───────────────────────────────────────────────────────

    def get(self, definition_id: str) -> Definition | None:
        with self._lock:
            return self._definitions.get(definition_id)

    def has(self, definition_id: str) -> bool:
        with self._lock:
            return definition_id in self._definitions

    def get_all(self) -> list[Definition]:
        with self._lock:
            return list(self._definitions.values())

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._definitions.keys())

    def size(self) -> int:
        with self._lock:
            return len(self._definitions)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, definition_id: object) -> bool:
        return isinstance(definition_id, str) and self.has(definition_id)

    # ── Queries ──────────────────────────────────────────────────────

    def find_by_tag(self, tag: str) -> list[Definition]:
        return [d for d in self.get_all() if tag in d.tags]

    def find_by_name(self, name: str) -> Definition | None:
        """First definition whose name contains ``name`` (case-insensitive)."""
        needle = name.lower()
        for definition in self.get_all():
            if needle in definition.name.lower():
                return definition
        return None

    def get_active(self) -> list[Definition]:
        return [d for d in self.get_all() if d.active]

    # ── Listeners ────────────────────────────────────────────────────

    def add_listener(self, listener: RegistryListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: RegistryListener) -> bool:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
                return True
            return False

    def _notify(self, change: RegistryChange) -> None:
        """Deliver a change to every listener; one failure never blocks the others."""
        with self._lock:
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(change)
            except Exception as exc:
                logger.error(
                    "registry_listener_error",
                    definition_id=change.definition_id,
                    action=change.action.value,
                    listener=getattr(listener, "__name__", repr(listener)),
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

    def __repr__(self) -> str:
        return f"DefinitionRegistry(definitions={self.size()}, listeners={len(self._listeners)})"
