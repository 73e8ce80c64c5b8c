"""
Single source of truth for the runtime version.

A source checkout answers from its own pyproject.toml, so an editable
install never reports the version it was installed at. Otherwise the
installed distribution metadata is used.
"""

from __future__ import annotations

import tomllib
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

__all__ = ["VERSION", "APP_NAME"]

APP_NAME = "flowdeck"

_PYPROJECT = Path(__file__).resolve().parent.parent / "pyproject.toml"


def _checkout_version() -> str | None:
    try:
        with open(_PYPROJECT, "rb") as f:
            project = tomllib.load(f).get("project", {})
    except (OSError, tomllib.TOMLDecodeError):
        return None
    if project.get("name") != APP_NAME:
        return None
    return project.get("version")


def _read_version() -> str:
    checkout = _checkout_version()
    if checkout:
        return checkout
    try:
        return version(APP_NAME)
    except PackageNotFoundError:
        return "0.0.0"


VERSION = _read_version()
