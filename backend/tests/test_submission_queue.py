"""
Tests for the single-flight submission queue.

Submissions are recorded by a fake backend; the drain loop, batch handling
and error attribution are exercised end to end through the AppContext.
"""

import asyncio

import pytest

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from graph_helpers import MAX_SEED, FakeBackend, add_node, make_context
from graphprompt.errors import CyclicGraph, SubmissionRejected
from graphprompt.models.prompt import ExecutionErrorDetail, NodeError
from graphprompt.services.submission_queue import format_execution_error, format_prompt_error


SCENARIO_INFO = {
    "LoadImage": {
        "input": {"required": {"image": [["example.png"]]}},
        "output": ["IMAGE", "MASK"],
        "output_name": ["IMAGE", "MASK"],
    },
    "KSampler": {
        "input": {
            "required": {
                "image": ["IMAGE"],
                "seed": ["INT", {"default": 5, "min": 0, "max": MAX_SEED}],
            }
        },
        "output": ["LATENT"],
        "output_name": ["LATENT"],
    },
}

REJECTION = {
    "error": {"type": "prompt_outputs_failed_validation", "message": "Prompt outputs failed validation", "details": ""},
    "node_errors": {
        "2": {
            "class_type": "KSampler",
            "errors": [{"type": "value_not_in_list", "message": "Value not in list", "details": "seed: -1"}],
            "dependent_outputs": ["2"],
        }
    },
}


class SlowBackend(FakeBackend):
    """Yields to the event loop during every submission and tracks overlap."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.in_flight = 0
        self.max_in_flight = 0

    async def queue_prompt(self, number, prompt):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            return await super().queue_prompt(number, prompt)
        finally:
            self.in_flight -= 1


def scenario_context(backend=None):
    ctx = make_context(backend=backend or FakeBackend(object_info=SCENARIO_INFO), object_info=SCENARIO_INFO)
    load = add_node(ctx.graph, ctx.registry, "LoadImage")
    sampler = add_node(ctx.graph, ctx.registry, "KSampler")
    ctx.graph.connect(load, 0, sampler, 0)
    sampler.get_widget("control_after_generate").value = "increment"
    return ctx, load, sampler


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------

class TestBatches:
    @pytest.mark.asyncio
    async def test_batch_of_two_advances_seed(self):
        ctx, load, sampler = scenario_context()

        await ctx.queue_prompt(0, 2)

        submissions = ctx.backend.submissions
        assert len(submissions) == 2
        for number, prompt in submissions:
            assert number == 0
            assert set(prompt.output) == {"1", "2"}
            assert prompt.output["2"].inputs["image"] == ["1", 0]
        assert submissions[0][1].output["2"].inputs["seed"] == 5
        assert submissions[1][1].output["2"].inputs["seed"] == 6
        assert sampler.get_widget("seed").value == 7

    @pytest.mark.asyncio
    async def test_rejection_aborts_rest_of_batch(self):
        backend = FakeBackend(
            object_info=SCENARIO_INFO,
            failures={1: SubmissionRejected("rejected", response=REJECTION, status_code=400)},
        )
        ctx, _, sampler = scenario_context(backend)

        await ctx.queue_prompt(0, 3)

        assert len(backend.submissions) == 1
        assert set(ctx.last_node_errors) == {"2"}
        assert isinstance(ctx.last_node_errors["2"], NodeError)
        assert ctx.last_node_errors["2"].errors[0].message == "Value not in list"
        assert ctx.surface.dialogs == [
            "Prompt outputs failed validation\nKSampler:\n    - Value not in list: seed: -1"
        ]
        # Post-submit callbacks still run for the failed unit.
        assert sampler.get_widget("seed").value == 6

    @pytest.mark.asyncio
    async def test_unexpected_backend_failure_aborts_batch(self):
        backend = FakeBackend(object_info=SCENARIO_INFO, failures={2: ConnectionError("backend went away")})
        ctx, _, _ = scenario_context(backend)

        await ctx.queue_prompt(0, 3)

        assert len(backend.submissions) == 2
        assert ctx.surface.dialogs == ["ConnectionError: backend went away"]
        assert not ctx.queue.draining

    @pytest.mark.asyncio
    async def test_returned_node_errors_are_recorded(self):
        class WarningBackend(FakeBackend):
            async def queue_prompt(self, number, prompt):
                response = await super().queue_prompt(number, prompt)
                response.node_errors = {"2": NodeError(class_type="KSampler")}
                return response

        ctx, _, _ = scenario_context(WarningBackend(object_info=SCENARIO_INFO))

        await ctx.queue_prompt(0, 1)

        assert set(ctx.last_node_errors) == {"2"}

    @pytest.mark.asyncio
    async def test_front_of_queue_number_is_forwarded(self):
        ctx, _, _ = scenario_context()

        await ctx.queue_prompt(-1, 1)

        assert ctx.backend.submissions[0][0] == -1


# ---------------------------------------------------------------------------
# Single flight
# ---------------------------------------------------------------------------

class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_overlapping_enqueues_share_one_drain(self):
        backend = SlowBackend(object_info=SCENARIO_INFO)
        ctx, _, _ = scenario_context(backend)

        await asyncio.gather(ctx.queue_prompt(0, 2), ctx.queue_prompt(-1, 1))

        assert [number for number, _ in backend.submissions] == [0, 0, -1]
        assert backend.max_in_flight == 1
        assert ctx.surface.events == [("prompt_queued", {"number": 0, "batch_count": 2})]
        assert ctx.queue.state().status == "idle"
        assert ctx.queue.pending == []

    @pytest.mark.asyncio
    async def test_failed_request_does_not_block_later_requests(self):
        backend = SlowBackend(
            object_info=SCENARIO_INFO,
            failures={1: SubmissionRejected("rejected", response=REJECTION, status_code=400)},
        )
        ctx, _, _ = scenario_context(backend)

        await asyncio.gather(ctx.queue_prompt(0, 3), ctx.queue_prompt(0, 2))

        assert len(backend.submissions) == 3

    @pytest.mark.asyncio
    async def test_compile_error_drops_only_its_request(self):
        backend = SlowBackend(object_info=SCENARIO_INFO)
        ctx, _, _ = scenario_context(backend)
        compile_prompt = ctx.graph_to_prompt
        calls = 0

        async def flaky_compile():
            nonlocal calls
            calls += 1
            if calls == 2:
                raise CyclicGraph([1, 2])
            return await compile_prompt()

        ctx.graph_to_prompt = flaky_compile

        await asyncio.gather(ctx.queue_prompt(0, 1), ctx.queue_prompt(0, 3), ctx.queue_prompt(-1, 1))

        assert [number for number, _ in backend.submissions] == [0, -1]
        assert ctx.surface.dialogs == ["CyclicGraph: Cycle detected involving nodes: 1, 2"]

    @pytest.mark.asyncio
    async def test_failing_after_queued_hook_does_not_strand_queued_requests(self):
        backend = SlowBackend(object_info=SCENARIO_INFO)
        ctx, _, sampler = scenario_context(backend)
        control = sampler.get_widget("control_after_generate")
        advance = control.after_queued
        calls = 0

        def fail_once():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("callback failed")
            advance()

        control.after_queued = fail_once

        results = await asyncio.gather(ctx.queue_prompt(0, 1), ctx.queue_prompt(-1, 1))

        assert results == [None, None]
        assert [number for number, _ in backend.submissions] == [0, -1]
        assert ctx.queue.pending == []
        assert not ctx.queue.draining
        assert sampler.get_widget("seed").value == 6

    @pytest.mark.asyncio
    async def test_failing_surface_drops_only_its_request(self):
        backend = SlowBackend(object_info=SCENARIO_INFO)
        ctx, _, _ = scenario_context(backend)
        updates = 0

        async def update_queue():
            nonlocal updates
            updates += 1
            if updates == 1:
                raise RuntimeError("queue view unavailable")

        ctx.surface.update_queue = update_queue

        await asyncio.gather(ctx.queue_prompt(0, 2), ctx.queue_prompt(-1, 1))

        assert [number for number, _ in backend.submissions] == [0, -1]
        assert ctx.queue.pending == []
        assert ctx.queue.state().status == "idle"

    @pytest.mark.asyncio
    async def test_node_errors_cleared_when_drain_starts(self):
        ctx, _, _ = scenario_context()
        ctx.last_node_errors = {"9": NodeError(class_type="Old")}

        await ctx.queue_prompt(0, 1)

        assert ctx.last_node_errors is None

    @pytest.mark.asyncio
    async def test_redraw_and_queue_view_after_every_unit(self):
        ctx, _, _ = scenario_context()

        await ctx.queue_prompt(0, 2)

        assert ctx.surface.queue_updates == 2
        assert ctx.surface.redraws >= 2


# ---------------------------------------------------------------------------
# Error formatting
# ---------------------------------------------------------------------------

class TestErrorFormatting:
    def test_prompt_error_variants(self):
        assert format_prompt_error(None) == "(unknown error)"
        assert format_prompt_error("plain text") == "plain text"
        assert format_prompt_error(ValueError("bad")) == "ValueError: bad"

    def test_rejection_with_details(self):
        response = {
            "error": {"message": "Invalid prompt", "details": "missing output"},
            "node_errors": {},
        }
        error = SubmissionRejected("rejected", response=response)

        assert format_prompt_error(error) == "Invalid prompt: missing output"

    def test_execution_error(self):
        detail = ExecutionErrorDetail(
            prompt_id="p1",
            node_id="3",
            node_type="KSampler",
            exception_message="CUDA out of memory",
            traceback=["line 1\n", "line 2\n"],
        )

        assert format_execution_error(detail) == (
            "Error occurred when executing KSampler:\n\nCUDA out of memory\n\nline 1\nline 2\n"
        )
        assert format_execution_error(None) == "(unknown error)"

    def test_context_records_execution_error(self):
        ctx, _, _ = scenario_context()

        ctx.handle_execution_error({"node_type": "KSampler", "exception_message": "boom"})

        assert ctx.last_execution_error.node_type == "KSampler"
        assert ctx.surface.dialogs[0].startswith("Error occurred when executing KSampler:")
        ctx.clean()
        assert ctx.last_execution_error is None
