"""
ChangeWatcher — Turns filesystem notifications into typed change events.

Events are pushed onto an ``asyncio.Queue`` and consumed by the
orchestrator's single reconciliation loop; nothing calls back into the
registry from the watcher itself.

  - ``added`` / ``modified`` are emitted only after the file's size and
    mtime have been stable for ``stability_threshold_ms`` (half-written
    files are never reported).
  - ``removed`` is emitted immediately and cancels any pending settle.
  - ``error`` is emitted once if the OS notification backend fails
    (e.g. inotify watch limit reached); the watcher then stops.

Build/output/test/dependency directories are ignored by convention, see
``flowdeck.loader.sources.IGNORED_DIRS``.
"""

from __future__ import annotations

import asyncio
import enum
import functools
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterable

import structlog
from watchfiles import Change, DefaultFilter, awatch

from flowdeck.errors import WatchError
from flowdeck.loader.sources import is_ignored_path

logger = structlog.get_logger(__name__)

_GLOB_CHARS = ("*", "?", "[", "{")


class ChangeKind(str, enum.Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"
    ERROR = "error"


@dataclass(frozen=True)
class ChangeEvent:
    """A single typed change, as consumed by the orchestrator."""

    kind: ChangeKind
    path: str = ""
    error: BaseException | None = None


WatchFunction = Callable[..., AsyncIterator[set[tuple[Change, str]]]]


@functools.lru_cache(maxsize=64)
def _glob_regex(pattern: str) -> re.Pattern[str]:
    """
    Compile a ``/``-separated glob relative to its watch root.

    ``**/`` spans zero or more directories, ``*`` and ``?`` stay within one
    segment, ``[...]`` is a character class and ``{a,b}`` an alternation.
    """
    out: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        elif pattern[i] == "[" and "]" in pattern[i + 2 :]:
            end = pattern.index("]", i + 2)
            body = pattern[i + 1 : end].replace("\\", "\\\\")
            if body.startswith("!"):
                body = "^" + body[1:]
            out.append(f"[{body}]")
            i = end + 1
        elif pattern[i] == "{" and "}" in pattern[i:]:
            end = pattern.index("}", i)
            options = pattern[i + 1 : end].split(",")
            out.append("(?:" + "|".join(re.escape(o) for o in options) + ")")
            i = end + 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(out))


@dataclass(frozen=True)
class _WatchRoot:
    directory: Path
    pattern: str | None = None

    def matches(self, path: Path) -> bool:
        if self.pattern is None:
            return True
        try:
            relative = path.relative_to(self.directory).as_posix()
        except ValueError:
            return False
        return _glob_regex(self.pattern).fullmatch(relative) is not None


def _split_watch_path(raw: str | Path) -> _WatchRoot:
    """``workflows/**/*.json`` → root ``workflows`` + glob pattern relative to it."""
    path = Path(raw).expanduser()
    parts = path.parts
    for i, part in enumerate(parts):
        if any(ch in part for ch in _GLOB_CHARS):
            directory = Path(*parts[:i]) if i else Path(".")
            return _WatchRoot(directory.resolve(), "/".join(parts[i:]))
    return _WatchRoot(path.resolve())


class DefinitionFilter(DefaultFilter):
    """watchfiles filter: configured extensions only, convention-ignored paths dropped."""

    def __init__(self, extensions: Iterable[str], roots: Iterable[_WatchRoot]) -> None:
        self.extensions = tuple(f".{e.lstrip('.').lower()}" for e in extensions)
        self._roots = list(roots)
        super().__init__()

    def __call__(self, change: Change, path: str) -> bool:
        candidate = Path(path)
        if not path.lower().endswith(self.extensions):
            return False
        root = self._root_for(candidate)
        if root is None or not root.matches(candidate):
            return False
        if is_ignored_path(candidate, root.directory):
            return False
        return super().__call__(change, path)

    def _root_for(self, path: Path) -> _WatchRoot | None:
        for root in self._roots:
            if path == root.directory or root.directory in path.parents:
                return root
        return None


class ChangeWatcher:
    """
    Observes workflow directories and queues debounced change events.

    Usage:
        watcher = ChangeWatcher(["workflows"], ["json", "yaml", "py"])
        await watcher.start()
        async for event in watcher.events():
            ...
        await watcher.stop()

    ``watch_fn`` defaults to ``watchfiles.awatch``; any async iterator
    factory with the same call shape can be injected (tests do).
    """

    def __init__(
        self,
        paths: Iterable[str | Path],
        extensions: Iterable[str],
        *,
        stability_threshold_ms: int = 300,
        poll_interval_ms: int = 100,
        watch_fn: WatchFunction = awatch,
        watch_kwargs: dict[str, Any] | None = None,
    ):
        self._roots = [_split_watch_path(p) for p in paths]
        self._filter = DefinitionFilter(extensions, self._roots)
        self._stability_threshold = stability_threshold_ms / 1000
        self._poll_interval = max(poll_interval_ms, 1) / 1000
        self._watch_fn = watch_fn
        self._watch_kwargs = watch_kwargs or {}

        self._queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue()
        self._pending: dict[str, tuple[ChangeKind, asyncio.Task]] = {}
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._failed = False

    # ── Lifecycle ────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def directories(self) -> list[Path]:
        return [root.directory for root in self._roots]

    async def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._failed = False
        self._task = asyncio.create_task(self._run(), name="flowdeck-watcher")
        logger.info("watcher_started", paths=[str(d) for d in self.directories])

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._cancel_pending()
        self._queue.put_nowait(None)
        logger.info("watcher_stopped")

    # ── Consumption ──────────────────────────────────────────────────

    async def events(self) -> AsyncIterator[ChangeEvent]:
        """Yield events until the watcher stops or reports an error."""
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event
            if event.kind == ChangeKind.ERROR:
                return

    # ── Backend loop ─────────────────────────────────────────────────

    async def _run(self) -> None:
        try:
            async for changes in self._watch_fn(
                *self.directories,
                watch_filter=self._filter,
                stop_event=self._stop_event,
                **self._watch_kwargs,
            ):
                for change, path in sorted(changes, key=lambda c: c[1]):
                    self.handle_change(change, path)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._failed = True
            self._cancel_pending()
            error = WatchError(f"Filesystem watcher failed: {type(exc).__name__}: {exc}")
            error.__cause__ = exc
            logger.error("watcher_error", error=str(exc), error_type=type(exc).__name__)
            await self._queue.put(ChangeEvent(ChangeKind.ERROR, error=error))

    def handle_change(self, change: Change, path: str) -> None:
        """Translate one raw backend change into a (possibly debounced) event."""
        if change == Change.deleted:
            self._cancel_pending(path)
            self._queue.put_nowait(ChangeEvent(ChangeKind.REMOVED, path))
            logger.debug("watcher_removed", path=path)
            return

        kind = ChangeKind.ADDED if change == Change.added else ChangeKind.MODIFIED
        previous = self._pending.pop(path, None)
        if previous is not None:
            previous_kind, task = previous
            task.cancel()
            # A file created and then written is still reported as added
            if previous_kind == ChangeKind.ADDED:
                kind = ChangeKind.ADDED

        task = asyncio.create_task(self._settle(path, kind))
        self._pending[path] = (kind, task)

    async def _settle(self, path: str, kind: ChangeKind) -> None:
        """Wait until size+mtime stop changing for the stability threshold, then emit."""
        loop = asyncio.get_running_loop()
        previous: tuple[int, int] | None = None
        stable_since = loop.time()

        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                snapshot = self._snapshot(path)
            except FileNotFoundError:
                # The deletion event reports this one
                self._pending.pop(path, None)
                return
            except OSError as exc:
                logger.warning("watcher_settle_failed", path=path, kind=kind.value, error=str(exc))
                self._pending.pop(path, None)
                return

            if snapshot != previous:
                previous = snapshot
                stable_since = loop.time()
                continue
            if loop.time() - stable_since >= self._stability_threshold:
                break

        self._pending.pop(path, None)
        await self._queue.put(ChangeEvent(kind, path))
        logger.debug("watcher_settled", path=path, kind=kind.value)

    @staticmethod
    def _snapshot(path: str) -> tuple[int, int]:
        st = os.stat(path)
        return st.st_size, st.st_mtime_ns

    def _cancel_pending(self, path: str | None = None) -> None:
        if path is not None:
            entry = self._pending.pop(path, None)
            if entry is not None:
                entry[1].cancel()
            return
        for _, task in self._pending.values():
            task.cancel()
        self._pending.clear()

    def __repr__(self) -> str:
        return f"ChangeWatcher(paths={[str(d) for d in self.directories]}, running={self.running})"
