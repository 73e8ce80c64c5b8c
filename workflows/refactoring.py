"""Refactoring workflow, defined in code. Exported as ``refactoring``."""

from flowdeck.models import Definition

_STEPS = [
    ("webhook-trigger", "Webhook Trigger", "n8n-nodes-base.webhook", {"httpMethod": "POST", "path": "refactoring"}),
    ("assistant-execute", "Assistant Execute - Refactoring", "assistant-execute", {"prompt": "={{ $json.prompt }}", "timeout": 600}),
    ("assistant-validate", "Assistant Validate - Refactoring", "assistant-validate", {"confidenceThreshold": 0.85}),
    ("success-response", "Success Response", "n8n-nodes-base.respondToWebhook", {"respondWith": "json"}),
]

refactoring = Definition(
    id="refactoring-workflow",
    name="AI Code Refactoring",
    description="Structured refactoring with validation of the proposed changes",
    tags=["ai", "refactoring", "development"],
    active=True,
    nodes=[
        {"id": node_id, "name": name, "type": node_type, "typeVersion": 1, "position": [240 + 220 * i, 300], "parameters": params}
        for i, (node_id, name, node_type, params) in enumerate(_STEPS)
    ],
    connections={
        _STEPS[i][1]: {"main": [[{"node": _STEPS[i + 1][1], "type": "main", "index": 0}]]}
        for i in range(len(_STEPS) - 1)
    },
    settings={"executionOrder": "v1"},
)
