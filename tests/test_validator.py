"""
Tests for DefinitionValidator — structural checks on loaded definitions.

Validation never short-circuits: one call must surface every violation.
"""

import pytest

from flowdeck.errors import StructuralError
from flowdeck.loader.validator import DefinitionValidator, raise_for_result, validate_definition
from flowdeck.models import Definition


@pytest.fixture
def validator():
    return DefinitionValidator()


def _node(node_id: str, name: str, **overrides) -> dict:
    node = {"id": node_id, "name": name, "type": "noop", "position": [0, 0], "parameters": {}}
    node.update(overrides)
    return node


class TestPresenceChecks:
    def test_valid_definition_has_no_errors(self, validator, make_doc):
        result = validator.validate(Definition.model_validate(make_doc()))
        assert result.valid is True
        assert result.errors == []

    def test_zero_nodes_is_rejected(self, validator, make_doc):
        result = validator.validate(Definition.model_validate(make_doc(nodes=[], connections={})))
        assert result.valid is False
        assert "Workflow must have at least one node" in result.errors

    def test_missing_id_and_name_are_both_reported(self, validator, make_doc):
        result = validator.validate(Definition.model_validate(make_doc(id="", name="")))
        assert "Workflow ID is required" in result.errors
        assert "Workflow name is required" in result.errors

    def test_all_violations_are_collected(self, validator):
        definition = Definition(id="", name="", nodes=[], connections={}, settings={"executionOrder": "v9"})
        result = validator.validate(definition)
        assert result.errors == [
            "Workflow ID is required",
            "Workflow name is required",
            "Workflow must have at least one node",
            "Invalid executionOrder: must be v0 or v1",
        ]


class TestNodeChecks:
    def test_node_required_fields(self, validator, make_doc):
        doc = make_doc(nodes=[{"position": [0, 0]}], connections={})
        result = validator.validate(Definition.model_validate(doc))
        assert "Node ID is required" in result.errors
        assert "Node name is required" in result.errors
        assert "Node type is required" in result.errors

    def test_one_duplicate_name_error_per_extra_occurrence(self, validator, make_doc):
        nodes = [_node("a", "Same"), _node("b", "Same"), _node("c", "Same"), _node("d", "Unique")]
        result = validator.validate(Definition.model_validate(make_doc(nodes=nodes, connections={})))
        duplicates = [e for e in result.errors if e.startswith("Duplicate node name")]
        assert duplicates == ["Duplicate node name: Same", "Duplicate node name: Same"]
        assert not any("Unique" in e for e in result.errors)

    def test_duplicate_ids_are_reported_by_value(self, validator, make_doc):
        nodes = [_node("dup", "One"), _node("dup", "Two")]
        result = validator.validate(Definition.model_validate(make_doc(nodes=nodes, connections={})))
        assert result.errors == ["Duplicate node ID: dup"]

    @pytest.mark.parametrize("position", [None, [1], [1, 2, 3], ["x", 1], [True, False], "1,2"])
    def test_invalid_position(self, validator, make_doc, position):
        nodes = [_node("a", "Alpha", position=position)]
        result = validator.validate(Definition.model_validate(make_doc(nodes=nodes, connections={})))
        assert result.errors == ["Invalid node position for Alpha: must be [x, y]"]

    def test_float_position_is_accepted(self, validator, make_doc):
        nodes = [_node("a", "Alpha", position=[10.5, -3])]
        result = validator.validate(Definition.model_validate(make_doc(nodes=nodes, connections={})))
        assert result.valid

    @pytest.mark.parametrize("parameters", ["text", 42, ["a", "b"]])
    def test_scalar_parameters_are_rejected(self, validator, make_doc, parameters):
        nodes = [_node("a", "Alpha", parameters=parameters)]
        result = validator.validate(Definition.model_validate(make_doc(nodes=nodes, connections={})))
        assert result.errors == ["Invalid parameters for Alpha: must be an object"]


class TestConnectionChecks:
    def test_unknown_source_is_reported(self, validator, make_doc):
        connections = {"Ghost": {"main": [[{"node": "Finish"}]]}}
        result = validator.validate(Definition.model_validate(make_doc(connections=connections)))
        assert result.errors == ["Connection source node not found: Ghost"]

    def test_one_error_per_dangling_target(self, validator, make_doc):
        connections = {
            "Start": {
                "main": [[{"node": "Finish"}, {"node": "Missing1"}], [{"node": "Missing2"}]],
            }
        }
        result = validator.validate(Definition.model_validate(make_doc(connections=connections)))
        assert result.errors == [
            "Connection target node not found: Missing1 (from Start, channel: main)",
            "Connection target node not found: Missing2 (from Start, channel: main)",
        ]

    def test_every_channel_is_checked_the_same_way(self, validator, make_doc):
        connections = {
            "Start": {
                "main": [[{"node": "Finish"}]],
                "error": [[{"node": "Handler", "type": "error"}]],
            }
        }
        result = validator.validate(Definition.model_validate(make_doc(connections=connections)))
        assert result.errors == ["Connection target node not found: Handler (from Start, channel: error)"]


class TestSettingsChecks:
    @pytest.mark.parametrize("order", ["v0", "v1"])
    def test_known_execution_orders(self, validator, make_doc, order):
        doc = make_doc(settings={"executionOrder": order, "timezone": "Europe/Berlin"})
        assert validator.validate(Definition.model_validate(doc)).valid

    @pytest.mark.parametrize("order", ["v2", "", 1, ["v1"]])
    def test_unknown_execution_order(self, validator, make_doc, order):
        doc = make_doc(settings={"executionOrder": order})
        result = validator.validate(Definition.model_validate(doc))
        assert result.errors == ["Invalid executionOrder: must be v0 or v1"]

    def test_non_string_timezone(self, validator, make_doc):
        doc = make_doc(settings={"timezone": 3})
        result = validator.validate(Definition.model_validate(doc))
        assert result.errors == ["Invalid timezone: must be a string"]


class TestHelpers:
    def test_raise_for_result_carries_every_error(self, make_doc):
        result = validate_definition(Definition.model_validate(make_doc(id="", name="")))
        with pytest.raises(StructuralError) as exc_info:
            raise_for_result(result)
        assert exc_info.value.errors == result.errors
        assert len(exc_info.value.errors) == 2

    def test_raise_for_result_passes_valid(self, make_doc):
        raise_for_result(validate_definition(Definition.model_validate(make_doc())))
