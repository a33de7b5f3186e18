"""
Tests for extension hook dispatch.
"""

import pytest

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from graphprompt.services.extensions import Extension, ExtensionRegistry


class Greeter(Extension):
    name = "test.greeter"

    def setup(self, ctx):
        return f"hello {ctx}"

    async def before_register_node_def(self, definition, ctx):
        definition["seen_by"] = self.name
        return "async"


class Broken(Extension):
    name = "test.broken"

    def setup(self, ctx):
        raise RuntimeError("extension bug")

    async def before_register_node_def(self, definition, ctx):
        raise RuntimeError("async extension bug")


class Silent(Extension):
    name = "test.silent"


@pytest.fixture
def extensions():
    registry = ExtensionRegistry(context="ctx")
    for extension in (Greeter(), Broken(), Silent()):
        registry.register(extension)
    return registry


class TestExtensionRegistry:
    def test_duplicate_names_rejected(self, extensions):
        with pytest.raises(ValueError):
            extensions.register(Greeter())

    def test_unnamed_extension_rejected(self):
        registry = ExtensionRegistry()

        with pytest.raises(ValueError, match="must have a 'name'"):
            registry.register(Extension())

        assert len(registry) == 0

    def test_invoke_skips_missing_hooks_and_failures(self, extensions, caplog):
        results = extensions.invoke("setup")

        assert results == ["hello ctx"]
        assert "Error calling extension 'test.broken' method 'setup'" in caplog.text

    @pytest.mark.asyncio
    async def test_invoke_async(self, extensions, caplog):
        definition = {}

        results = await extensions.invoke_async("before_register_node_def", definition)

        assert results == ["async", None, None]
        assert definition["seen_by"] == "test.greeter"
        assert "async extension bug" in caplog.text

    @pytest.mark.asyncio
    async def test_invoke_async_accepts_sync_hooks(self, extensions):
        results = await extensions.invoke_async("setup")

        assert results[0] == "hello ctx"
