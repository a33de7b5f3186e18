"""
Tests for compiling a graph into a backend prompt.
"""

import pytest

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from graph_helpers import add_node, make_registry
from graphprompt.errors import CyclicGraph
from graphprompt.graph.graph import Graph
from graphprompt.graph.nodes import (
    GroupNode,
    InputSlot,
    NodeMode,
    OutputSlot,
    PrimitiveNode,
    RerouteNode,
)
from graphprompt.models.prompt import CompiledStep, is_reference
from graphprompt.models.workflow import GroupSlotRef
from graphprompt.services.link_resolver import LinkResolver
from graphprompt.services.prompt_compiler import graph_to_prompt, prune_dangling_references


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def registry():
    return make_registry()


def build_txt2img(registry):
    """The standard checkpoint -> sampler -> decode -> save workflow."""
    graph = Graph()
    ckpt = add_node(graph, registry, "CheckpointLoaderSimple")
    positive = add_node(graph, registry, "CLIPTextEncode")
    negative = add_node(graph, registry, "CLIPTextEncode")
    latent = add_node(graph, registry, "EmptyLatentImage")
    sampler = add_node(graph, registry, "KSampler")
    decode = add_node(graph, registry, "VAEDecode")
    save = add_node(graph, registry, "SaveImage")

    positive.get_widget("text").value = "a bottle"
    negative.get_widget("text").value = "watermark"
    sampler.get_widget("seed").value = 1234

    graph.connect(ckpt, 0, sampler, 0)
    graph.connect(ckpt, 1, positive, 0)
    graph.connect(ckpt, 1, negative, 0)
    graph.connect(positive, 0, sampler, 1)
    graph.connect(negative, 0, sampler, 2)
    graph.connect(latent, 0, sampler, 3)
    graph.connect(sampler, 0, decode, 0)
    graph.connect(ckpt, 2, decode, 1)
    graph.connect(decode, 0, save, 0)
    return graph


def references(output):
    return {
        (node_id, name): tuple(value)
        for node_id, step in output.items()
        for name, value in step.inputs.items()
        if is_reference(value)
    }


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------

class TestWireFormat:
    @pytest.mark.asyncio
    async def test_txt2img_output(self, registry):
        graph = build_txt2img(registry)

        prompt = await graph_to_prompt(graph)
        payload = prompt.output_payload()

        assert list(payload) == ["1", "4", "2", "3", "5", "6", "7"]
        assert payload["5"] == {
            "class_type": "KSampler",
            "inputs": {
                "seed": 1234,
                "steps": 20,
                "cfg": 8.0,
                "sampler_name": "euler",
                "scheduler": "normal",
                "denoise": 1.0,
                "model": ["1", 0],
                "positive": ["2", 0],
                "negative": ["3", 0],
                "latent_image": ["4", 0],
            },
        }
        assert payload["6"]["inputs"] == {"samples": ["5", 0], "vae": ["1", 2]}
        assert payload["2"]["inputs"] == {"text": "a bottle", "clip": ["1", 1]}

    @pytest.mark.asyncio
    async def test_control_widget_is_not_sent(self, registry):
        graph = build_txt2img(registry)

        prompt = await graph_to_prompt(graph)

        assert "control_after_generate" not in prompt.output["5"].inputs

    @pytest.mark.asyncio
    async def test_meta_only_in_dev_mode(self, registry):
        graph = build_txt2img(registry)

        plain = await graph_to_prompt(graph)
        dev = await graph_to_prompt(graph, dev_mode=True)

        assert "_meta" not in plain.output_payload()["1"]
        assert dev.output_payload()["1"]["_meta"] == {"title": "CheckpointLoaderSimple"}

    @pytest.mark.asyncio
    async def test_workflow_document_is_included(self, registry):
        graph = build_txt2img(registry)

        prompt = await graph_to_prompt(graph)

        assert len(prompt.workflow.nodes) == 7
        assert [1, 1, 0, 5, 0, "MODEL"] in prompt.workflow.links


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------

class TestCompileProperties:
    @pytest.mark.asyncio
    async def test_idempotent(self, registry):
        graph = build_txt2img(registry)

        first = await graph_to_prompt(graph)
        second = await graph_to_prompt(graph)

        assert list(first.output) == list(second.output)
        assert first.output_payload() == second.output_payload()

    @pytest.mark.asyncio
    async def test_references_match_resolved_graph(self, registry):
        graph = build_txt2img(registry)
        sampler = graph.get_node_by_id(5)
        positive = graph.get_node_by_id(2)
        # Route the positive prompt through a reroute and a bypassed node.
        reroute = graph.add(RerouteNode())
        bypassed = add_node(graph, registry, "ConditioningAverage", mode=NodeMode.BYPASSED)
        graph.connect(positive, 0, bypassed, 0)
        graph.connect(bypassed, 0, reroute, 0)
        graph.connect(reroute, 0, sampler, 1)

        prompt = await graph_to_prompt(graph)

        resolver = LinkResolver()
        expected = set()
        for node in graph.nodes:
            if node.is_virtual_node or str(node.id) not in prompt.output:
                continue
            for slot_index, slot in enumerate(node.inputs):
                resolved = resolver.resolve(node, slot_index)
                if resolved and str(resolved.node.id) in prompt.output:
                    expected.add((str(node.id), slot.name, (str(resolved.node.id), resolved.slot)))

        actual = {(node_id, name, ref) for (node_id, name), ref in references(prompt.output).items()}
        assert actual == expected
        assert prompt.output["5"].inputs["positive"] == ["2", 0]
        assert str(reroute.id) not in prompt.output
        assert str(bypassed.id) not in prompt.output

    @pytest.mark.asyncio
    async def test_no_dangling_references(self, registry):
        graph = build_txt2img(registry)
        graph.get_node_by_id(6).mode = NodeMode.MUTED

        prompt = await graph_to_prompt(graph)

        for (_, _), (origin_id, _) in references(prompt.output).items():
            assert origin_id in prompt.output
        assert "images" not in prompt.output["7"].inputs

    @pytest.mark.asyncio
    async def test_cyclic_graph_raises(self, registry):
        graph = Graph()
        a = add_node(graph, registry, "ImageScale")
        b = add_node(graph, registry, "ImageScale")
        graph.connect(a, 0, b, 0)
        graph.connect(b, 0, a, 0)

        with pytest.raises(CyclicGraph):
            await graph_to_prompt(graph)


# ---------------------------------------------------------------------------
# Node kinds
# ---------------------------------------------------------------------------

class TestNodeKinds:
    @pytest.mark.asyncio
    async def test_muted_and_bypassed_nodes_are_skipped(self, registry):
        graph = Graph()
        load = add_node(graph, registry, "LoadImage")
        scale = add_node(graph, registry, "ImageScale", mode=NodeMode.BYPASSED)
        save = add_node(graph, registry, "SaveImage")
        muted = add_node(graph, registry, "SaveImage", mode=NodeMode.MUTED)
        graph.connect(load, 0, scale, 0)
        graph.connect(scale, 0, save, 0)
        graph.connect(load, 0, muted, 0)

        prompt = await graph_to_prompt(graph)

        assert set(prompt.output) == {str(load.id), str(save.id)}
        assert prompt.output[str(save.id)].inputs["images"] == [str(load.id), 0]

    @pytest.mark.asyncio
    async def test_widget_hooks(self, registry):
        graph = Graph()
        load = add_node(graph, registry, "LoadImage")
        calls = []
        widget = load.get_widget("image")
        widget.before_queued = lambda: calls.append("before")

        async def serialize_value(node, index):
            calls.append(("serialize", node.id, index))
            return "uploads/" + widget.value

        widget.serialize_value = serialize_value

        prompt = await graph_to_prompt(graph)

        assert calls == ["before", ("serialize", load.id, 0)]
        assert prompt.output[str(load.id)].inputs["image"] == "uploads/example.png"

    @pytest.mark.asyncio
    async def test_unserializable_widget_is_excluded(self, registry):
        graph = Graph()
        scale = add_node(graph, registry, "ImageScale")
        scale.get_widget("upscale_method").options["serialize"] = False

        prompt = await graph_to_prompt(graph)

        assert prompt.output[str(scale.id)].inputs == {}

    @pytest.mark.asyncio
    async def test_primitive_value_is_applied(self, registry):
        graph = build_txt2img(registry)
        sampler = graph.get_node_by_id(5)
        sampler.inputs.append(InputSlot(name="seed", type="INT", widget="seed"))
        primitive = graph.add(PrimitiveNode())
        graph.connect(primitive, 0, sampler, len(sampler.inputs) - 1)
        primitive.on_after_graph_configured()
        primitive.widgets[0].value = 42

        prompt = await graph_to_prompt(graph)

        assert str(primitive.id) not in prompt.output
        assert prompt.output["5"].inputs["seed"] == 42
        assert sampler.get_widget("seed").value == 42
        assert primitive.outputs[0].type == "INT"


class TestGroupNodes:
    def build(self, registry, mode=NodeMode.NORMAL):
        subgraph = Graph()
        first = add_node(subgraph, registry, "ImageScale")
        second = add_node(subgraph, registry, "ImageScale")
        subgraph.connect(first, 0, second, 0)

        graph = Graph()
        load = add_node(graph, registry, "LoadImage")
        group = graph.add(
            GroupNode(
                "workflow/upscale twice",
                subgraph=subgraph,
                group_inputs=[GroupSlotRef(node_id=first.id, slot=0)],
                group_outputs=[GroupSlotRef(node_id=second.id, slot=0)],
                inputs=[InputSlot(name="image", type="IMAGE")],
                outputs=[OutputSlot(name="IMAGE", type="IMAGE")],
                mode=mode,
            )
        )
        save = add_node(graph, registry, "SaveImage")
        graph.connect(load, 0, group, 0)
        graph.connect(group, 0, save, 0)
        return graph

    @pytest.mark.asyncio
    async def test_group_expands_to_inner_nodes(self, registry):
        graph = self.build(registry)

        prompt = await graph_to_prompt(graph)

        assert list(prompt.output) == ["1", "2:1", "2:2", "3"]
        assert prompt.output["2:1"].class_type == "ImageScale"
        assert prompt.output["2:1"].inputs["image"] == ["1", 0]
        assert prompt.output["2:2"].inputs["image"] == ["2:1", 0]
        assert prompt.output["3"].inputs["images"] == ["2:2", 0]

    @pytest.mark.asyncio
    async def test_before_queued_runs_on_inner_widgets(self, registry):
        graph = self.build(registry)
        inner = graph.get_node_by_id(2).subgraph.get_node_by_id(1)
        method = inner.get_widget("upscale_method")
        method.before_queued = lambda: method.set_value("bilinear")

        prompt = await graph_to_prompt(graph)

        assert prompt.output["2:1"].inputs["upscale_method"] == "bilinear"
        assert prompt.output["2:2"].inputs["upscale_method"] == "nearest-exact"

    @pytest.mark.asyncio
    async def test_muted_group_is_not_expanded(self, registry):
        graph = self.build(registry, mode=NodeMode.MUTED)

        prompt = await graph_to_prompt(graph)

        assert list(prompt.output) == ["1", "3"]
        assert "images" not in prompt.output["3"].inputs


class TestPruneDanglingReferences:
    def test_removes_only_dangling(self):
        output = {
            "1": CompiledStep(class_type="LoadImage", inputs={"image": "a.png"}),
            "2": CompiledStep(class_type="ImageBlend", inputs={"image1": ["1", 0], "image2": ["9", 0]}),
        }

        removed = prune_dangling_references(output)

        assert removed == 1
        assert output["2"].inputs == {"image1": ["1", 0]}
        assert output["1"].inputs == {"image": "a.png"}
