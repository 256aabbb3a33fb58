"""
Tests for tigra.streaming — delta fold, failure fallback and detach.

Covers:
  - Order-preserving concatenation with no separators
  - The model message is absent until the first non-empty delta
  - Identity matching by the per-stream id
  - Fallback apology after partial content
  - Detach stops consumption and closes the provider iterator
"""

from __future__ import annotations

import pytest

from tigra.models import Message
from tigra.streaming import FALLBACK_MESSAGE, StreamAggregator, StreamHandle

from .conftest import FakeProvider


async def _deltas(*parts):
    for part in parts:
        yield part


@pytest.fixture
def base():
    return (Message.create("user", "Say hello"),)


# ========================================================================
# Fold
# ========================================================================


class TestFold:
    @pytest.mark.asyncio
    async def test_published_contents_are_prefix_concatenations(self, base):
        aggregator = StreamAggregator(base)
        snapshots = [snap async for snap in aggregator.run(_deltas("Hel", "lo, ", "world"))]

        assert [snap[-1].content for snap in snapshots] == ["Hel", "Hello, ", "Hello, world"]
        assert aggregator.text == "Hello, world"
        assert aggregator.messages[-1].content == "Hello, world"
        assert aggregator.finished
        assert not aggregator.failed

    @pytest.mark.asyncio
    async def test_one_model_message_matched_by_id(self, base):
        aggregator = StreamAggregator(base, message_id="m-1")
        snapshots = [snap async for snap in aggregator.run(_deltas("a", "b"))]

        for snap in snapshots:
            assert len(snap) == 2
            assert snap[0] == base[0]
            assert snap[1].id == "m-1"
            assert snap[1].role == "model"

    @pytest.mark.asyncio
    async def test_empty_deltas_publish_nothing(self, base):
        aggregator = StreamAggregator(base)
        snapshots = [snap async for snap in aggregator.run(_deltas("", "Hi", ""))]

        assert len(snapshots) == 1
        assert snapshots[0][-1].content == "Hi"

    @pytest.mark.asyncio
    async def test_no_deltas_leaves_buffer_unchanged(self, base):
        aggregator = StreamAggregator(base)
        snapshots = [snap async for snap in aggregator.run(_deltas())]
        assert snapshots == []
        assert aggregator.messages == base

    def test_snapshots_are_not_mutated(self, base):
        aggregator = StreamAggregator(base)
        first = aggregator.apply("Hel")
        aggregator.apply("lo")
        assert first[-1].content == "Hel"


# ========================================================================
# Failure
# ========================================================================


class TestFailure:
    @pytest.mark.asyncio
    async def test_fallback_after_partial_content(self, base):
        provider = FakeProvider(deltas=["Par", "tial"], error=RuntimeError("quota"))
        aggregator = StreamAggregator(base)

        snapshots = [snap async for snap in aggregator.run(provider.stream(base, "sys", "x"))]

        final = snapshots[-1]
        assert aggregator.failed
        assert [m.content for m in final] == ["Say hello", "Partial", FALLBACK_MESSAGE]
        assert final[-1].role == "model"

    @pytest.mark.asyncio
    async def test_fallback_without_content(self, base, caplog):
        provider = FakeProvider(deltas=[], error=ConnectionError("offline"))
        aggregator = StreamAggregator(base)

        snapshots = [snap async for snap in aggregator.run(provider.stream(base, "sys", "x"))]

        assert len(snapshots) == 1
        assert [m.content for m in snapshots[0]] == ["Say hello", FALLBACK_MESSAGE]
        assert "Provider failure" in caplog.text


# ========================================================================
# Detach
# ========================================================================


class TestDetach:
    @pytest.mark.asyncio
    async def test_detach_stops_and_closes_provider(self, base):
        provider = FakeProvider(deltas=["one", "two", "three"])
        handle = StreamHandle("session-1")
        aggregator = StreamAggregator(base, handle=handle)

        seen = []
        async for snap in aggregator.run(provider.stream(base, "sys", "x")):
            seen.append(snap[-1].content)
            handle.detach()

        assert seen == ["one"]
        assert provider.closed
        assert aggregator.finished
        assert aggregator.text == "one"

    @pytest.mark.asyncio
    async def test_detached_before_start_consumes_nothing(self, base):
        provider = FakeProvider(deltas=["one"])
        handle = StreamHandle("session-1")
        handle.detach()

        snapshots = [snap async for snap in StreamAggregator(base, handle=handle).run(provider.stream(base, "s", "x"))]

        assert snapshots == []
        assert provider.calls == []

    def test_handle_repr(self):
        handle = StreamHandle("s")
        handle.detach()
        assert handle.detached
        assert "detached=True" in repr(handle)
