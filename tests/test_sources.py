"""
Tests for DefinitionSource — discovery conventions and the three loaders.
"""

import json

import pytest

from flowdeck.errors import DefinitionParseError, DiscoveryError, MissingExportError, UnsupportedFormatError
from flowdeck.loader.sources import (
    DefinitionLoader,
    DefinitionSource,
    derive_definition_id,
    export_name_for,
    is_ignored_path,
)
from flowdeck.loader.validator import DefinitionValidator
from flowdeck.models import Definition


def _touch(path, content: str = "{}"):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


class TestNamingConventions:
    @pytest.mark.parametrize(
        "filename, expected",
        [
            ("bug-fixes.py", "bugFixes"),
            ("code_review.py", "codeReview"),
            ("refactoring.py", "refactoring"),
            ("multi-word-name.ts", "multiWordName"),
        ],
    )
    def test_export_name_for(self, filename, expected):
        assert export_name_for(filename) == expected

    def test_derive_definition_id_uses_base_name(self, tmp_path):
        assert derive_definition_id(tmp_path / "nested" / "bug-fixes.json") == "bugFixes"

    @pytest.mark.parametrize(
        "relative",
        [
            "node_modules/pkg/flow.json",
            "dist/flow.json",
            "tests/flow.json",
            "_drafts/flow.json",
            ".hidden/flow.json",
            "_private.json",
            "flow.test.json",
            "flow.spec.yaml",
            "test_flow.py",
            "flow_test.py",
        ],
    )
    def test_ignored_paths(self, tmp_path, relative):
        assert is_ignored_path(tmp_path / relative, tmp_path) is True

    @pytest.mark.parametrize("relative", ["flow.json", "team/flow.yaml", "contest.py"])
    def test_regular_paths(self, tmp_path, relative):
        assert is_ignored_path(tmp_path / relative, tmp_path) is False


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_ordered_by_extension_then_path(self, tmp_path):
        for name in ["b.json", "a.json", "c.yaml", "sub/d.json", "e.py"]:
            _touch(tmp_path / name)
        for name in ["_drafts/x.json", "tests/y.json", "node_modules/z.json", "w.test.json", "notes.txt"]:
            _touch(tmp_path / name)

        paths = await DefinitionSource().discover(tmp_path, ["json", ".YAML"])

        assert paths == [tmp_path / "a.json", tmp_path / "b.json", tmp_path / "sub" / "d.json", tmp_path / "c.yaml"]

    @pytest.mark.asyncio
    async def test_each_file_listed_once(self, tmp_path):
        _touch(tmp_path / "a.json")
        paths = await DefinitionSource().discover(tmp_path, ["json", "json"])
        assert paths == [tmp_path / "a.json"]

    @pytest.mark.asyncio
    async def test_missing_root_raises(self, tmp_path):
        with pytest.raises(DiscoveryError) as exc_info:
            await DefinitionSource().discover(tmp_path / "nope", ["json"])
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_root_must_be_directory(self, tmp_path):
        file_root = _touch(tmp_path / "file.json")
        with pytest.raises(DiscoveryError):
            await DefinitionSource().discover(file_root, ["json"])


class TestLoaders:
    @pytest.mark.asyncio
    async def test_json_round_trip_is_valid(self, tmp_path, make_doc):
        path = _touch(tmp_path / "flow.json", json.dumps(make_doc()))
        definition = await DefinitionSource().load(path)

        assert definition.id == "sample-workflow"
        assert definition.nodes[0].type_version == 1
        assert DefinitionValidator().validate(definition).valid

    @pytest.mark.asyncio
    async def test_yaml_round_trip_is_valid(self, tmp_path):
        content = """
id: yaml-flow
name: YAML Flow
nodes:
  - {id: a, name: A, type: noop, position: [0, 0], parameters: {}}
  - {id: b, name: B, type: noop, position: [200, 0]}
connections:
  A:
    main:
      - - {node: B, type: main, index: 0}
settings:
  executionOrder: v1
"""
        path = _touch(tmp_path / "flow.yml", content)
        definition = await DefinitionSource().load(path)

        assert definition.id == "yaml-flow"
        assert definition.settings.execution_order == "v1"
        assert DefinitionValidator().validate(definition).valid

    @pytest.mark.asyncio
    async def test_python_module_round_trip_is_valid(self, tmp_path, make_doc):
        doc = make_doc(id="scripted-flow")
        path = _touch(tmp_path / "scripted-flow.py", f"scriptedFlow = {doc!r}\n")
        definition = await DefinitionSource().load(path)

        assert definition.id == "scripted-flow"
        assert DefinitionValidator().validate(definition).valid

    @pytest.mark.asyncio
    async def test_python_module_may_export_a_definition(self, tmp_path):
        content = (
            "from flowdeck.models import Definition\n"
            "built = Definition(id='built', name='Built', nodes=[{'id': 'a', 'name': 'A', 'type': 'noop', 'position': [0, 0]}])\n"
        )
        path = _touch(tmp_path / "built.py", content)
        definition = await DefinitionSource().load(path)
        assert definition.id == "built"

    @pytest.mark.asyncio
    async def test_python_module_is_re_executed_on_every_load(self, tmp_path):
        path = _touch(tmp_path / "flow.py", "flow = {'id': 'one', 'name': 'One'}\n")
        source = DefinitionSource()
        assert (await source.load(path)).name == "One"

        path.write_text("flow = {'id': 'one', 'name': 'One, revised'}\n", encoding="utf-8")
        assert (await source.load(path)).name == "One, revised"

    @pytest.mark.asyncio
    async def test_missing_export(self, tmp_path):
        path = _touch(tmp_path / "my-flow.py", "somethingElse = {}\n")
        with pytest.raises(MissingExportError) as exc_info:
            await DefinitionSource().load(path)
        assert exc_info.value.export_name == "myFlow"
        assert "Workflow export 'myFlow' not found" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_failing_module_is_a_parse_error(self, tmp_path):
        path = _touch(tmp_path / "broken.py", "raise RuntimeError('nope')\n")
        with pytest.raises(DefinitionParseError, match="RuntimeError: nope"):
            await DefinitionSource().load(path)

    @pytest.mark.asyncio
    async def test_module_calling_sys_exit_is_a_parse_error(self, tmp_path):
        path = _touch(tmp_path / "quitter.py", "import sys\nsys.exit(3)\n")
        with pytest.raises(DefinitionParseError, match="exited with status 3"):
            await DefinitionSource().load(path)

    @pytest.mark.asyncio
    async def test_python_module_leaves_no_bytecode_cache(self, tmp_path, make_doc):
        path = _touch(tmp_path / "cached.py", f"cached = {make_doc(id='cached')!r}\n")
        await DefinitionSource().load(path)
        assert not (tmp_path / "__pycache__").exists()

    @pytest.mark.asyncio
    async def test_unsupported_extension(self, tmp_path):
        path = _touch(tmp_path / "flow.toml", "")
        with pytest.raises(UnsupportedFormatError) as exc_info:
            await DefinitionSource().load(path)
        assert exc_info.value.extension == ".toml"

    @pytest.mark.asyncio
    async def test_malformed_json(self, tmp_path):
        path = _touch(tmp_path / "flow.json", "{not json")
        with pytest.raises(DefinitionParseError, match="Malformed JSON"):
            await DefinitionSource().load(path)

    @pytest.mark.asyncio
    async def test_malformed_yaml(self, tmp_path):
        path = _touch(tmp_path / "flow.yaml", "id: [unclosed\n")
        with pytest.raises(DefinitionParseError, match="Malformed YAML"):
            await DefinitionSource().load(path)

    @pytest.mark.asyncio
    async def test_non_mapping_document(self, tmp_path):
        path = _touch(tmp_path / "flow.yaml", "- just\n- a list\n")
        with pytest.raises(DefinitionParseError, match="must be a mapping"):
            await DefinitionSource().load(path)

    @pytest.mark.asyncio
    async def test_wrongly_shaped_document(self, tmp_path):
        path = _touch(tmp_path / "flow.json", json.dumps({"id": "x", "nodes": "not-a-list"}))
        with pytest.raises(DefinitionParseError, match="does not match the definition shape"):
            await DefinitionSource().load(path)

    @pytest.mark.asyncio
    async def test_missing_file_propagates(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            await DefinitionSource().load(tmp_path / "gone.json")


class TestLoaderPlugins:
    def test_default_extensions(self):
        assert DefinitionSource().supported_extensions() == ["json", "py", "yaml", "yml"]

    @pytest.mark.asyncio
    async def test_custom_loader(self, tmp_path):
        class TextLoader(DefinitionLoader):
            extensions = ("txt",)

            def load(self, path):
                return Definition(id=path.stem, name=path.read_text().strip())

        source = DefinitionSource()
        source.add_loader(TextLoader())
        path = _touch(tmp_path / "plain.txt", "Plain Flow\n")

        assert "txt" in source.supported_extensions()
        definition = await source.load(path)
        assert definition.id == "plain"
        assert definition.name == "Plain Flow"


class TestShippedSamples:
    @pytest.mark.asyncio
    async def test_every_sample_loads_and_validates(self):
        from pathlib import Path

        root = Path(__file__).resolve().parent.parent / "workflows"
        source = DefinitionSource()
        paths = await source.discover(root, source.supported_extensions())

        assert [p.name for p in paths] == ["bug-fixes.json", "refactoring.py", "documentation.yaml"]
        for path in paths:
            definition = await source.load(path)
            result = DefinitionValidator().validate(definition)
            assert result.valid, (path.name, result.errors)
