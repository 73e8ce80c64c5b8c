import copy
import json

import pytest

from flowdeck.config import get_settings


_BASE_DOC = {
    "id": "sample-workflow",
    "name": "Sample Workflow",
    "version": "1.0.0",
    "tags": ["ai", "sample"],
    "active": True,
    "nodes": [
        {
            "id": "start",
            "name": "Start",
            "type": "n8n-nodes-base.webhook",
            "typeVersion": 1,
            "position": [240, 300],
            "parameters": {"path": "sample"},
        },
        {
            "id": "finish",
            "name": "Finish",
            "type": "n8n-nodes-base.respondToWebhook",
            "typeVersion": 1,
            "position": [460, 300],
            "parameters": {},
        },
    ],
    "connections": {
        "Start": {"main": [[{"node": "Finish", "type": "main", "index": 0}]]},
    },
}


@pytest.fixture(autouse=True)
def fresh_settings():
    """Settings are cached process-wide; never leak them between tests."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def make_doc():
    """Factory for a structurally valid definition document (camelCase keys)."""

    def _make(**overrides) -> dict:
        doc = copy.deepcopy(_BASE_DOC)
        doc.update(overrides)
        return doc

    return _make


@pytest.fixture
def write_json(tmp_path):
    """Write a document as JSON under tmp_path and return the path."""

    def _write(name: str, doc: dict):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(doc), encoding="utf-8")
        return path

    return _write
