"""
DefinitionSource — Finds definition files on disk and turns them into Definitions.

Three on-disk formats are supported, each through a ``DefinitionLoader``
plug-in selected by file extension:

  - ``.json``          native structured document
  - ``.py``            scripted module exporting one named value
  - ``.yaml`` / ``.yml`` plain structured-data document

Discovery convention:
  workflows/
    bug-fixes.json        # loaded
    documentation.yaml    # loaded
    refactoring.py        # loaded, must export ``refactoring``
    _drafts/              # skipped (leading underscore)
    node_modules/         # skipped (dependency directory)
    tests/                # skipped (test directory)

The scripted-module export name is derived from the file's base name,
kebab/snake case converted to camelCase (``code-review.py`` → ``codeReview``).
"""

from __future__ import annotations

import abc
import asyncio
import importlib.machinery
import importlib.util
import json
import re
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any
from uuid import uuid4

import structlog
import yaml
from pydantic import ValidationError

from flowdeck.errors import (
    DefinitionParseError,
    DiscoveryError,
    MissingExportError,
    UnsupportedFormatError,
)
from flowdeck.models import Definition

logger = structlog.get_logger(__name__)


# ── Path Conventions ─────────────────────────────────────────────────

IGNORED_DIRS = frozenset(
    {
        # dependencies / environments
        "node_modules",
        ".venv",
        "venv",
        "site-packages",
        # build output
        "dist",
        "build",
        "out",
        "__pycache__",
        # tests & coverage
        "tests",
        "test",
        "__tests__",
        "coverage",
        "htmlcov",
        # tooling
        ".git",
        ".tox",
        ".mypy_cache",
        ".pytest_cache",
    }
)

_TEST_FILE_RE = re.compile(r"(\.(test|spec)\.[^.]+$)|(^test_.*\.py$)|(_test\.py$)")
_WORD_BOUNDARY_RE = re.compile(r"[-_](.)")


def is_ignored_path(path: Path, root: Path | None = None) -> bool:
    """
    True if ``path`` falls under a convention-ignored location.

    Only the part of the path below ``root`` is inspected, so the workflows
    directory itself may live anywhere.
    """
    relative = path
    if root is not None:
        try:
            relative = path.relative_to(root)
        except ValueError:
            relative = path

    for part in relative.parts[:-1]:
        if part in IGNORED_DIRS or part.startswith((".", "_")):
            return True

    name = relative.name
    if name.startswith((".", "_")):
        return True
    return bool(_TEST_FILE_RE.search(name))


def export_name_for(path: str | Path) -> str:
    """Expected export of a scripted definition: camelCase of the file's base name."""
    stem = Path(path).stem
    return _WORD_BOUNDARY_RE.sub(lambda m: m.group(1).upper(), stem)


def derive_definition_id(path: str | Path) -> str:
    """Fallback definition identity for a path whose loaded id is unknown."""
    return export_name_for(path)


def _normalize_extension(extension: str) -> str:
    return extension.strip().lstrip(".").lower()


def _build_definition(raw: Any, path: Path) -> Definition:
    """Coerce a loaded value into a fresh Definition."""
    if isinstance(raw, Definition):
        return raw.model_copy(deep=True)

    if not isinstance(raw, Mapping):
        raise DefinitionParseError(
            f"Definition in {path} must be a mapping, got {type(raw).__name__}.",
            path=str(path),
        )

    try:
        return Definition.model_validate(dict(raw))
    except ValidationError as exc:
        raise DefinitionParseError(
            f"Definition in {path} does not match the definition shape: "
            f"{exc.error_count()} problem(s); first: {exc.errors()[0]['msg']} "
            f"at {'.'.join(str(p) for p in exc.errors()[0]['loc'])}",
            path=str(path),
            detail=str(exc),
        ) from exc


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Loader Plug-ins
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class DefinitionLoader(abc.ABC):
    """
    One source format.

    Subclasses MUST define:
      - extensions: tuple of handled extensions, without the leading dot
      - load(path): read the file and return a Definition (blocking)
    """

    extensions: tuple[str, ...] = ()

    def can_handle(self, extension: str) -> bool:
        return _normalize_extension(extension) in self.extensions

    @abc.abstractmethod
    def load(self, path: Path) -> Definition:
        """Read ``path`` and return a freshly built Definition."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(extensions={self.extensions})"


class JsonDefinitionLoader(DefinitionLoader):
    """Native structured document."""

    extensions = ("json",)

    def load(self, path: Path) -> Definition:
        text = path.read_text(encoding="utf-8")
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise DefinitionParseError(
                f"Malformed JSON in {path}: {exc.msg} (line {exc.lineno}, column {exc.colno})",
                path=str(path),
            ) from exc
        return _build_definition(raw, path)


class YamlDefinitionLoader(DefinitionLoader):
    """Plain structured-data document."""

    extensions = ("yaml", "yml")

    def load(self, path: Path) -> Definition:
        with open(path, "r", encoding="utf-8") as f:
            try:
                raw = yaml.safe_load(f)
            except yaml.YAMLError as exc:
                raise DefinitionParseError(
                    f"Malformed YAML in {path}: {exc}",
                    path=str(path),
                ) from exc
        return _build_definition(raw, path)


class _UncachedSourceLoader(importlib.machinery.SourceFileLoader):
    """Compiles from source on every load; never reads or writes ``__pycache__``."""

    def path_stats(self, path: str):
        # Without source stats the bytecode cache is neither trusted nor
        # written. A cached .pyc goes stale when a file is rewritten within
        # the same second at the same size.
        raise OSError("bytecode cache disabled for definition modules")


class PythonModuleLoader(DefinitionLoader):
    """
    Scripted module exporting one definition value.

    The module is executed under a private, throwaway module name and never
    left in ``sys.modules``, so every load re-executes the current file.
    The export may be a ``Definition`` or a plain mapping.
    """

    extensions = ("py",)

    def load(self, path: Path) -> Definition:
        export_name = export_name_for(path)
        module_name = f"_flowdeck_definition_{uuid4().hex}"

        spec = importlib.util.spec_from_file_location(
            module_name, path, loader=_UncachedSourceLoader(module_name, str(path))
        )
        if spec is None or spec.loader is None:
            raise DefinitionParseError(f"Cannot import definition module {path}.", path=str(path))

        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except FileNotFoundError:
            raise
        except SystemExit as exc:
            raise DefinitionParseError(
                f"Definition module {path} exited with status {exc.code} while loading",
                path=str(path),
            ) from exc
        except Exception as exc:
            raise DefinitionParseError(
                f"Failed to execute definition module {path}: {type(exc).__name__}: {exc}",
                path=str(path),
            ) from exc

        if not hasattr(module, export_name):
            raise MissingExportError(
                f"Workflow export '{export_name}' not found in {path}",
                path=str(path),
                export_name=export_name,
            )

        return _build_definition(getattr(module, export_name), path)


def default_loaders() -> list[DefinitionLoader]:
    return [JsonDefinitionLoader(), PythonModuleLoader(), YamlDefinitionLoader()]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Source
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class DefinitionSource:
    """
    Filesystem discovery + format dispatch.

    Usage:
        source = DefinitionSource()
        paths = await source.discover("workflows", ["json", "yaml"])
        definition = await source.load(paths[0])

    Blocking work (directory walks, file reads, module execution) runs in a
    worker thread so the event loop stays responsive.
    """

    def __init__(self, loaders: Iterable[DefinitionLoader] | None = None):
        self._loaders: list[DefinitionLoader] = list(loaders) if loaders is not None else default_loaders()

    # ── Loader plug-ins ──────────────────────────────────────────────

    @property
    def loaders(self) -> list[DefinitionLoader]:
        return list(self._loaders)

    def add_loader(self, loader: DefinitionLoader) -> None:
        """Register an extra format; earlier loaders win on overlapping extensions."""
        self._loaders.append(loader)

    def supported_extensions(self) -> list[str]:
        extensions: list[str] = []
        for loader in self._loaders:
            for ext in loader.extensions:
                if ext not in extensions:
                    extensions.append(ext)
        return extensions

    def loader_for(self, path: str | Path) -> DefinitionLoader | None:
        extension = Path(path).suffix
        for loader in self._loaders:
            if loader.can_handle(extension):
                return loader
        return None

    # ── Discovery ────────────────────────────────────────────────────

    async def discover(self, root_dir: str | Path, extensions: Iterable[str]) -> list[Path]:
        """
        Enumerate definition files under ``root_dir``.

        Ordered by extension (in the given order), then by path. Each file
        appears once even if several patterns match it.

        Raises:
            DiscoveryError: ``root_dir`` is missing or not a directory.
            OSError: The walk raced with a concurrent change (retryable).
        """
        return await asyncio.to_thread(self._discover_sync, Path(root_dir), list(extensions))

    def _discover_sync(self, root: Path, extensions: list[str]) -> list[Path]:
        if not root.exists():
            raise DiscoveryError(f"Workflows directory not found: {root}", root=str(root))
        if not root.is_dir():
            raise DiscoveryError(f"Workflows path is not a directory: {root}", root=str(root))

        found: list[Path] = []
        seen: set[Path] = set()
        for extension in extensions:
            ext = _normalize_extension(extension)
            if not ext:
                continue
            for path in sorted(root.rglob(f"*.{ext}")):
                if path in seen or not path.is_file():
                    continue
                if is_ignored_path(path, root):
                    continue
                seen.add(path)
                found.append(path)

        logger.debug("definitions_discovered", root=str(root), count=len(found))
        return found

    # ── Loading ──────────────────────────────────────────────────────

    async def load(self, path: str | Path) -> Definition:
        """
        Load one definition file.

        Raises:
            UnsupportedFormatError: No loader handles the extension.
            MissingExportError: A scripted module lacks its expected export.
            DefinitionParseError: Malformed or mis-shaped content.
            FileNotFoundError: The file disappeared.
        """
        filepath = Path(path)
        loader = self.loader_for(filepath)
        if loader is None:
            raise UnsupportedFormatError(
                f"Unsupported workflow file extension: {filepath.suffix or '<none>'}",
                path=str(filepath),
                extension=filepath.suffix,
            )

        definition = await asyncio.to_thread(loader.load, filepath)
        logger.debug(
            "definition_loaded",
            path=str(filepath),
            definition_id=definition.id,
            loader=type(loader).__name__,
        )
        return definition
