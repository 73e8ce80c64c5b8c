"""
LoaderOrchestrator — discover → load → validate → register → publish.

Owns the registry, the source, the validator, the optional publish target
and (in watch mode) the change watcher.

Three entry points share one per-file path:

  - ``load_workflows()``  full pass over the workflows directory
  - ``reload_file(path)`` hot reload after an ``added``/``modified`` event
  - ``remove_file(path)`` unregister after a ``removed`` event

Failure policy:
  - Discovery I/O errors are retried with exponential backoff; if discovery
    still fails the pass is recorded as one pseudo-file error (``"loader"``).
  - Load and validation errors are terminal for that file only.
  - Publish errors are logged and reported, never unregister a definition.
  - A failed hot reload leaves the previous registry entry in place
    (last-known-good).
  - If the watcher backend fails, the orchestrator falls back to periodic
    full rescans.
"""

from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from flowdeck.config import RuntimeSettings, get_settings
from flowdeck.errors import ConfigurationError, FlowdeckError, UnsupportedFormatError, format_error
from flowdeck.loader.publisher import HttpPublishTarget, PublishTarget, is_engine_failure
from flowdeck.loader.registry import DefinitionRegistry
from flowdeck.loader.sources import DefinitionSource, derive_definition_id
from flowdeck.loader.validator import DefinitionValidator
from flowdeck.loader.watcher import ChangeEvent, ChangeKind, ChangeWatcher
from flowdeck.models import (
    Definition,
    LoadedDefinition,
    LoaderState,
    LoadFailure,
    LoadResult,
    RuntimeStatus,
    SkippedSource,
)
from flowdeck.observability import (
    DEFINITIONS_LOADED,
    LOAD_ERRORS,
    LOAD_PASS_LATENCY,
    PUBLISH_FAILURES,
    RELOAD_LATENCY,
    VALIDATION_FAILURES,
)
from flowdeck.utils.resilience import CircuitBreaker, RetryExecutor, RetryOptions, is_transient_io_error

logger = structlog.get_logger(__name__)


class _Outcome(str, enum.Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class _FileOutcome:
    path: Path
    status: _Outcome
    definition: Definition | None = None
    errors: list[str] = field(default_factory=list)
    reason: str = ""


class LoaderOrchestrator:
    """
    Keeps a ``DefinitionRegistry`` in sync with the workflows directory.

    Usage:
        orchestrator = LoaderOrchestrator(RuntimeSettings(workflows_dir="workflows"))
        result = await orchestrator.load_workflows()
        print(len(result.loaded), "loaded,", len(result.errors), "failed")

        # Watch mode: initial pass + hot reload until stopped
        async with LoaderOrchestrator(RuntimeSettings(watch_mode=True)) as orch:
            ...
    """

    def __init__(
        self,
        settings: RuntimeSettings | None = None,
        *,
        source: DefinitionSource | None = None,
        validator: DefinitionValidator | None = None,
        registry: DefinitionRegistry | None = None,
        publish_target: PublishTarget | None = None,
        watcher: ChangeWatcher | None = None,
        retry_options: RetryOptions | None = None,
    ):
        self._settings = settings or get_settings()
        self._source = source or DefinitionSource()
        self._validate_configuration()

        self._validator = validator or DefinitionValidator()
        self._registry = registry or DefinitionRegistry()
        self._publish_target = publish_target or self._build_publish_target()
        self._retry = RetryExecutor(
            retry_options
            or RetryOptions(
                max_attempts=self._settings.discovery_max_attempts,
                base_delay=self._settings.retry_base_delay_seconds,
                max_delay=self._settings.retry_max_delay_seconds,
                backoff_multiplier=self._settings.retry_backoff_multiplier,
                should_retry=is_transient_io_error,
            ),
            name="discovery",
        )
        self._watcher = watcher

        self._state = LoaderState.IDLE
        self._path_ids: dict[str, str] = {}
        self._last_result: LoadResult | None = None
        self._loop_task: asyncio.Task | None = None
        self._rescan_task: asyncio.Task | None = None
        self._degraded = False

    # ── Construction helpers ─────────────────────────────────────────

    def _validate_configuration(self) -> None:
        extensions = self._settings.supported_extensions
        if not extensions:
            raise ConfigurationError(
                "At least one supported extension must be configured.",
                setting="supported_extensions",
            )
        handled = set(self._source.supported_extensions())
        unknown = [ext for ext in extensions if ext not in handled]
        if unknown:
            raise ConfigurationError(
                f"No loader handles extension(s): {', '.join(unknown)}. "
                f"Available: {', '.join(sorted(handled))}.",
                setting="supported_extensions",
            )
        if self._settings.retry_max_delay_seconds < self._settings.retry_base_delay_seconds:
            raise ConfigurationError(
                "retry_max_delay_seconds must not be smaller than retry_base_delay_seconds.",
                setting="retry_max_delay_seconds",
            )

    def _build_publish_target(self) -> PublishTarget | None:
        if not self._settings.publish_url:
            if self._settings.auto_publish:
                logger.warning("auto_publish_without_url")
            return None
        return HttpPublishTarget(
            self._settings.publish_url,
            self._settings.publish_api_key,
            timeout=self._settings.publish_timeout_seconds,
            breaker=CircuitBreaker(
                failure_threshold=self._settings.breaker_failure_threshold,
                reset_timeout=self._settings.breaker_reset_timeout_seconds,
                name="publish",
                is_failure=is_engine_failure,
            ),
        )

    def _build_watcher(self) -> ChangeWatcher:
        return ChangeWatcher(
            [self._settings.workflows_dir],
            self._settings.supported_extensions,
            stability_threshold_ms=self._settings.stability_threshold_ms,
            poll_interval_ms=self._settings.poll_interval_ms,
        )

    # ── Accessors ────────────────────────────────────────────────────

    @property
    def registry(self) -> DefinitionRegistry:
        return self._registry

    @property
    def state(self) -> LoaderState:
        return self._state

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def last_result(self) -> LoadResult | None:
        return self._last_result

    @property
    def _publishing(self) -> bool:
        """Full passes publish only with ``auto_publish``; hot reloads publish whenever a target exists."""
        return self._publish_target is not None and self._settings.auto_publish

    # ── Full pass ────────────────────────────────────────────────────

    async def load_workflows(self, *, prune_missing: bool = False) -> LoadResult:
        """
        Run one complete discovery pass. Never raises for partial failures.

        Args:
            prune_missing: Unregister definitions whose source file is no
                longer discovered (used by the degraded-mode rescan).
        """
        start = time.monotonic()
        result = LoadResult()
        root = self._settings.workflows_dir
        extensions = self._settings.supported_extensions

        self._state = LoaderState.SCANNING
        try:
            paths = await self._retry.run(lambda: self._source.discover(root, extensions))
        except Exception as exc:
            logger.error("discovery_failed", root=root, **_error_fields(exc))
            result.errors.append(LoadFailure(source_path="loader", errors=[f"Loader error: {format_error(exc)}"]))
            return self._finish_pass(result, start)

        semaphore = asyncio.Semaphore(self._settings.load_concurrency)

        async def _bounded(path: Path) -> _FileOutcome:
            async with semaphore:
                return await self._process_file(path, trigger="scan")

        outcomes = await asyncio.gather(*(_bounded(path) for path in paths))

        for outcome in outcomes:
            source_path = str(outcome.path)
            if outcome.status == _Outcome.ACCEPTED:
                assert outcome.definition is not None
                result.loaded.append(
                    LoadedDefinition(
                        id=outcome.definition.id,
                        name=outcome.definition.name,
                        source_path=source_path,
                    )
                )
            elif outcome.status == _Outcome.SKIPPED:
                result.skipped.append(SkippedSource(source_path=source_path, reason=outcome.reason))
            else:
                result.errors.append(LoadFailure(source_path=source_path, errors=outcome.errors))

        if prune_missing:
            await self._prune_missing({_path_key(p) for p in paths})

        if self._publishing:
            definitions = {o.definition.id: o.definition for o in outcomes if o.definition is not None}
            for entry in result.loaded:
                error = await self._publish(entry, definitions[entry.id])
                if error is None:
                    result.published.append(entry.id)
                else:
                    result.publish_errors.append(LoadFailure(source_path=entry.source_path, errors=[error]))

        return self._finish_pass(result, start)

    def _finish_pass(self, result: LoadResult, start: float) -> LoadResult:
        elapsed = time.monotonic() - start
        result.duration_ms = round(elapsed * 1000, 3)
        LOAD_PASS_LATENCY.observe(elapsed)
        self._state = LoaderState.IDLE
        self._last_result = result
        logger.info(
            "load_pass_complete",
            loaded=len(result.loaded),
            errors=len(result.errors),
            skipped=len(result.skipped),
            published=len(result.published),
            publish_errors=len(result.publish_errors),
            duration_ms=result.duration_ms,
        )
        return result

    async def _prune_missing(self, discovered: set[str]) -> None:
        for source_path in [p for p in self._path_ids if p not in discovered]:
            await self.remove_file(source_path)

    # ── Hot reload ───────────────────────────────────────────────────

    async def reload_file(self, path: str | Path) -> bool:
        """
        Re-run load → validate → update → publish for a single file.

        Returns True if the definition was accepted. On failure the previous
        registry entry for that id is left untouched.
        """
        start = time.monotonic()
        filepath = Path(path)
        outcome = await self._process_file(filepath, trigger="reload")
        self._state = LoaderState.IDLE
        RELOAD_LATENCY.observe(time.monotonic() - start)

        if outcome.status != _Outcome.ACCEPTED:
            logger.warning(
                "definition_reload_failed",
                path=str(filepath),
                outcome=outcome.status.value,
                errors=outcome.errors,
                reason=outcome.reason or None,
            )
            return False

        definition = outcome.definition
        assert definition is not None
        logger.info("definition_reloaded", path=str(filepath), definition_id=definition.id, name=definition.name)

        if self._publish_target is not None:
            entry = LoadedDefinition(id=definition.id, name=definition.name, source_path=str(filepath))
            await self._publish(entry, definition)
        return True

    async def remove_file(self, path: str | Path) -> bool:
        """Unregister the definition that was loaded from ``path``."""
        key = _path_key(path)
        definition_id = self._path_ids.pop(key, None) or derive_definition_id(path)
        if definition_id in self._path_ids.values():
            # Another file still provides this id
            logger.info("definition_source_removed", path=key, definition_id=definition_id, kept=True)
            return False
        removed = self._registry.unregister(definition_id)
        logger.info("definition_source_removed", path=key, definition_id=definition_id, removed=removed)
        return removed

    # ── Per-file pipeline ────────────────────────────────────────────

    async def _process_file(self, path: Path, *, trigger: str) -> _FileOutcome:
        self._state = LoaderState.LOADING
        try:
            if path.stat().st_size == 0:
                return _FileOutcome(path, _Outcome.SKIPPED, reason="empty file")
            definition = await self._source.load(path)
        except FileNotFoundError:
            return _FileOutcome(path, _Outcome.SKIPPED, reason="file removed before it could be loaded")
        except UnsupportedFormatError as exc:
            return _FileOutcome(path, _Outcome.SKIPPED, reason=str(exc))
        except Exception as exc:
            code = exc.error_code if isinstance(exc, FlowdeckError) else type(exc).__name__
            LOAD_ERRORS.labels(error_code=code).inc()
            logger.error("definition_load_failed", path=str(path), trigger=trigger, **_error_fields(exc))
            return _FileOutcome(path, _Outcome.FAILED, errors=[format_error(exc)])

        self._state = LoaderState.VALIDATING
        validation = self._validator.validate(definition)
        if not validation.valid:
            self._state = LoaderState.REJECTED
            VALIDATION_FAILURES.labels(trigger=trigger).inc()
            logger.warning(
                "definition_rejected",
                path=str(path),
                definition_id=definition.id or None,
                trigger=trigger,
                errors=validation.errors,
            )
            return _FileOutcome(path, _Outcome.REJECTED, definition=None, errors=validation.errors)

        self._state = LoaderState.REGISTERING
        self._accept(path, definition)
        DEFINITIONS_LOADED.labels(trigger=trigger).inc()
        return _FileOutcome(path, _Outcome.ACCEPTED, definition=definition)

    def _accept(self, path: Path, definition: Definition) -> None:
        key = _path_key(path)
        previous_id = self._path_ids.get(key)
        self._path_ids[key] = definition.id
        self._registry.update(definition)

        # The file now declares a different id: drop the stale entry
        if previous_id and previous_id != definition.id and previous_id not in self._path_ids.values():
            self._registry.unregister(previous_id)

    async def _publish(self, entry: LoadedDefinition, definition: Definition) -> str | None:
        """Publish with failure isolation. Returns the formatted error, if any."""
        assert self._publish_target is not None
        try:
            await self._publish_target.publish(entry, definition)
        except Exception as exc:
            PUBLISH_FAILURES.inc()
            logger.error("definition_publish_failed", definition_id=entry.id, **_error_fields(exc))
            return format_error(exc)
        return None

    # ── Watch mode ───────────────────────────────────────────────────

    async def start(self, *, initial_load: bool = True) -> LoadResult | None:
        """Run the initial pass and, in watch mode, start hot reloading."""
        result = await self.load_workflows() if initial_load else None

        if self._settings.watch_mode:
            if self._watcher is None:
                self._watcher = self._build_watcher()
            await self._watcher.start()
            self._loop_task = asyncio.create_task(self._reconcile(), name="flowdeck-reconcile")
            logger.info("orchestrator_watching", workflows_dir=self._settings.workflows_dir)
        return result

    async def stop(self) -> None:
        """Stop watching/rescanning and release the publish target."""
        if self._watcher is not None:
            await self._watcher.stop()
        for task in (self._loop_task, self._rescan_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._rescan_task = None
        if self._publish_target is not None:
            await self._publish_target.close()
        self._state = LoaderState.IDLE
        logger.info("orchestrator_stopped")

    async def __aenter__(self) -> "LoaderOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def _reconcile(self) -> None:
        """Single consumer of watcher events."""
        assert self._watcher is not None
        async for event in self._watcher.events():
            try:
                await self.handle_event(event)
            except Exception as exc:
                logger.error("reconcile_event_failed", kind=event.kind.value, path=event.path, **_error_fields(exc))

    async def handle_event(self, event: ChangeEvent) -> None:
        """Apply one watcher event to the registry."""
        if event.kind in (ChangeKind.ADDED, ChangeKind.MODIFIED):
            logger.info("definition_source_changed", path=event.path, kind=event.kind.value)
            await self.reload_file(event.path)
        elif event.kind == ChangeKind.REMOVED:
            await self.remove_file(event.path)
        elif event.kind == ChangeKind.ERROR:
            self._enter_degraded_mode(event.error)

    def _enter_degraded_mode(self, error: BaseException | None) -> None:
        if self._degraded:
            return
        self._degraded = True
        logger.warning(
            "orchestrator_degraded",
            reason=str(error) if error else None,
            rescan_interval_seconds=self._settings.rescan_interval_seconds,
        )
        self._rescan_task = asyncio.create_task(self._rescan_loop(), name="flowdeck-rescan")

    async def _rescan_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.rescan_interval_seconds)
            await self.load_workflows(prune_missing=True)

    # ── Status ───────────────────────────────────────────────────────

    def status(self) -> RuntimeStatus:
        last = self._last_result
        return RuntimeStatus(
            state=self._state,
            total_definitions=self._registry.size(),
            active_definitions=len(self._registry.get_active()),
            watching=self._watcher is not None and self._watcher.running,
            degraded=self._degraded,
            last_load_loaded=len(last.loaded) if last else 0,
            last_load_errors=len(last.errors) if last else 0,
            last_load_duration_ms=last.duration_ms if last else None,
        )


def _error_fields(exc: BaseException) -> dict:
    code = exc.error_code if isinstance(exc, FlowdeckError) else type(exc).__name__
    return {"error": str(exc), "error_code": code}


def _path_key(path: str | Path) -> str:
    """Watcher events carry absolute paths, discovery may not."""
    return str(Path(path).resolve())
