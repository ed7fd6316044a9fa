"""Tests for the paginated retriever."""

import asyncio

import httpx
import pytest
from conftest import FakeSubgraph, agent_row, feedback_row, no_sleep

from subgraph_sync.connectors.subgraph import SubgraphClient
from subgraph_sync.core.cursor import ORIGIN, Cursor
from subgraph_sync.core.retriever import FetchStats, Retriever, Strategy
from subgraph_sync.errors import SchemaMismatchError, TransientError, UpstreamError, is_transient
from subgraph_sync.sections import get_section

AGENTS = get_section("agents")
FEEDBACKS = get_section("feedbacks")


def _collect(retriever: Retriever, section, since=ORIGIN, page_size=500, partition="sepolia"):
    stats = FetchStats()

    async def run() -> list:
        return [r async for r in retriever.fetch_all(partition, section, since, page_size, stats)]

    return asyncio.run(run()), stats


class TestPaging:
    """Page boundaries and strategies."""

    def test_short_page_ends_the_pass(self) -> None:
        """Test that 1120 rows at page size 500 take exactly three requests."""
        fake = FakeSubgraph({"agents": [agent_row(str(i), 1000 + i) for i in range(1120)]})
        client = fake.client()
        records, stats = _collect(Retriever(client, sleep=no_sleep), AGENTS)

        assert len(records) == 1120
        assert client.requests_sent == 3
        assert stats.pages == 3
        assert stats.stopped == "complete"
        assert stats.strategy == Strategy.CURSOR
        assert [r.cursor for r in records] == sorted(r.cursor for r in records)

    def test_exact_multiple_needs_empty_page(self) -> None:
        """Test that a full last page is followed by one empty page."""
        fake = FakeSubgraph({"agents": [agent_row(str(i), 10 + i) for i in range(4)]})
        client = fake.client()
        records, stats = _collect(Retriever(client, sleep=no_sleep), AGENTS, page_size=2)
        assert len(records) == 4
        assert client.requests_sent == 3

    def test_since_is_exclusive(self) -> None:
        """Test that only records strictly after the checkpoint come back."""
        rows = [agent_row("a", 5), agent_row("b", 5), agent_row("c", 6), agent_row("d", 4)]
        fake = FakeSubgraph({"agents": rows})
        records, _ = _collect(Retriever(fake.client(), sleep=no_sleep), AGENTS, since=Cursor(5, "a"))
        assert [r.id for r in records] == ["b", "c"]

    def test_ties_on_ordering_value_are_not_lost(self) -> None:
        """Test page boundaries inside a group of equal ordering values."""
        rows = [agent_row("a", 99)] + [agent_row(f"id-{i}", 100) for i in range(5)] + [agent_row("z", 101)]
        expected = ["a"] + [f"id-{i}" for i in range(5)] + ["z"]

        for cursor_supported, strategy in ((True, Strategy.CURSOR), (False, Strategy.OFFSET)):
            fake = FakeSubgraph({"agents": rows}, cursor_supported=cursor_supported)
            records, stats = _collect(Retriever(fake.client(), sleep=no_sleep), AGENTS, page_size=2)
            assert [r.id for r in records] == expected
            assert stats.strategy == strategy

    def test_resume_inside_a_tie_group(self) -> None:
        """Test that a checkpoint between tied rows yields only the rest of the group."""
        rows = [agent_row(f"id-{i}", 100) for i in range(5)] + [agent_row("z", 101)]

        for cursor_supported in (True, False):
            fake = FakeSubgraph({"agents": rows}, cursor_supported=cursor_supported)
            records, _ = _collect(
                Retriever(fake.client(), sleep=no_sleep), AGENTS, since=Cursor(100, "id-1"), page_size=2
            )
            assert [r.id for r in records] == ["id-2", "id-3", "id-4", "z"]

    def test_offset_fallback(self) -> None:
        """Test that a rejected keyset query falls back to first/skip."""
        fake = FakeSubgraph({"agents": [agent_row(str(i), 1 + i) for i in range(7)]}, cursor_supported=False)
        records, stats = _collect(Retriever(fake.client(), sleep=no_sleep), AGENTS, page_size=3)
        assert len(records) == 7
        assert stats.strategy == Strategy.OFFSET
        assert [req["variables"].get("skip") for req in fake.requests[1:]] == [0, 3, 6]

    def test_offset_since_drops_already_seen(self) -> None:
        """Test that the inclusive offset filter still yields strictly newer records."""
        rows = [agent_row("a", 5), agent_row("b", 5), agent_row("c", 6)]
        fake = FakeSubgraph({"agents": rows}, cursor_supported=False)
        records, stats = _collect(Retriever(fake.client(), sleep=no_sleep), AGENTS, since=Cursor(5, "a"))
        assert [r.id for r in records] == ["b", "c"]
        assert stats.stale == 1

    def test_pagination_limit_keeps_partial_results(self) -> None:
        """Test that the skip limit ends the pass with what was fetched."""
        fake = FakeSubgraph({"agents": [agent_row(str(i), 1 + i) for i in range(2000)]}, cursor_supported=False)
        records, stats = _collect(Retriever(fake.client(), max_skip=500, sleep=no_sleep), AGENTS)
        assert len(records) == 1000
        assert stats.stopped == "pagination-limit"

    def test_upstream_skip_error_keeps_partial_results(self) -> None:
        """Test that an upstream skip refusal is a pagination limit, not a failure."""
        fake = FakeSubgraph({"agents": [agent_row(str(i), 1 + i) for i in range(6)]}, cursor_supported=False)
        client = fake.client()
        retriever = Retriever(client, sleep=no_sleep)

        async def run() -> tuple[list, FetchStats]:
            stats = FetchStats()
            records = []
            async for record in retriever.fetch_all("sepolia", AGENTS, ORIGIN, 3, stats):
                records.append(record)
                if len(records) == 3:
                    message = "The `skip` argument must be between 0 and 5000"
                    fake.queued.append(httpx.Response(200, json={"errors": [{"message": message}]}))
            return records, stats

        records, stats = asyncio.run(run())
        assert len(records) == 3
        assert stats.stopped == "pagination-limit"

    def test_max_items_bounds_a_pass(self) -> None:
        """Test the per-pass item limit."""
        fake = FakeSubgraph({"agents": [agent_row(str(i), 1 + i) for i in range(10)]})
        records, stats = _collect(Retriever(fake.client(), max_items=4, sleep=no_sleep), AGENTS, page_size=3)
        assert len(records) == 4
        assert stats.stopped == "max-items"


class TestRetries:
    """Transient failures and backoff."""

    def test_transient_errors_back_off(self) -> None:
        """Test that two 503s are retried with increasing delays."""
        fake = FakeSubgraph({"agents": [agent_row("1", 1)]})
        fake.queued = [httpx.Response(503, text="unavailable"), httpx.Response(503, text="unavailable")]
        sleeps: list[float] = []

        async def sleep(delay: float) -> None:
            sleeps.append(delay)

        records, _ = _collect(Retriever(fake.client(), sleep=sleep), AGENTS)
        assert len(records) == 1
        assert len(sleeps) == 2
        assert sleeps[0] < sleeps[1]

    def test_exhausted_retries_raise_for_required(self) -> None:
        """Test that a required section surfaces exhausted retries."""
        fake = FakeSubgraph({"agents": [agent_row("1", 1)]})
        fake.queued = [httpx.Response(503) for _ in range(4)]
        with pytest.raises(TransientError):
            _collect(Retriever(fake.client(), sleep=no_sleep), AGENTS)

    def test_exhausted_retries_end_optional(self) -> None:
        """Test that an optional section gives up quietly."""
        fake = FakeSubgraph({"repFeedbacks": [feedback_row("f1", 1)]})
        fake.queued = [httpx.Response(503) for _ in range(4)]
        records, stats = _collect(Retriever(fake.client(), sleep=no_sleep), FEEDBACKS)
        assert records == []
        assert stats.stopped == "retries-exhausted"

    def test_rate_limit_unbounded_for_optional(self) -> None:
        """Test that throttling of an optional section is outlasted."""
        fake = FakeSubgraph({"repFeedbacks": [feedback_row("f1", 1)]})
        fake.queued = [httpx.Response(429, headers={"Retry-After": "0"}) for _ in range(6)]
        records, _ = _collect(Retriever(fake.client(), sleep=no_sleep), FEEDBACKS)
        assert len(records) == 1


class TestCapabilities:
    """Missing collections and partial rows."""

    def test_missing_optional_logged_once(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that an absent optional collection yields nothing, logged once."""
        fake = FakeSubgraph({"agents": []})
        logged: set = set()
        retriever = Retriever(fake.client(), logged_missing=logged, sleep=no_sleep)

        with caplog.at_level("WARNING", logger="subgraph_sync.core.retriever"):
            first, stats = _collect(retriever, FEEDBACKS)
            second, _ = _collect(retriever, FEEDBACKS)

        assert first == second == []
        assert stats.stopped == "capability-missing"
        assert logged == {("sepolia", "feedbacks")}
        assert sum("not available upstream" in r.getMessage() for r in caplog.records) == 1

    def test_known_fields_skip_request(self) -> None:
        """Test that introspected fields avoid querying a missing collection."""
        fake = FakeSubgraph({"agents": []})
        client = fake.client()
        records, stats = _collect(Retriever(client, known_fields={"agents"}, sleep=no_sleep), FEEDBACKS)
        assert records == []
        assert client.requests_sent == 0

    def test_missing_required_is_schema_mismatch(self) -> None:
        """Test that a missing required collection is fatal."""
        fake = FakeSubgraph({"repFeedbacks": []})
        with pytest.raises(SchemaMismatchError, match="Query.agents"):
            _collect(Retriever(fake.client(), known_fields={"repFeedbacks"}, sleep=no_sleep), AGENTS)

    def test_missing_required_without_introspection(self) -> None:
        """Test the same failure discovered from the query error."""
        fake = FakeSubgraph({"repFeedbacks": []})
        with pytest.raises(SchemaMismatchError):
            _collect(Retriever(fake.client(), sleep=no_sleep), AGENTS)

    def test_rows_named_by_errors_are_skipped(self) -> None:
        """Test that partial data keeps the good rows."""
        fake = FakeSubgraph()
        rows = [feedback_row("f1", 1), feedback_row("f2", 2), feedback_row("f3", 3)]
        fake.queued = [
            httpx.Response(
                200,
                json={
                    "data": {"repFeedbacks": rows},
                    "errors": [{"message": "bad agent", "path": ["repFeedbacks", 1, "agent"]}],
                },
            )
        ]
        records, stats = _collect(Retriever(fake.client(), sleep=no_sleep), FEEDBACKS)
        assert [r.id for r in records] == ["f1", "f3"]
        assert stats.skipped == 1

    def test_invalid_rows_are_skipped(self) -> None:
        """Test that rows failing validation are counted and dropped."""
        rows = [agent_row("1", 1), {"id": "2", "mintedAt": "1.5"}, agent_row("3", 3)]
        fake = FakeSubgraph()
        fake.queued = [httpx.Response(200, json={"data": {"agents": rows}})]
        records, stats = _collect(Retriever(fake.client(), sleep=no_sleep), AGENTS)
        assert [r.id for r in records] == ["1", "3"]
        assert stats.skipped == 1


class TestMalformedBodies:
    """Answers that are valid JSON but not a GraphQL response object."""

    def test_non_object_bodies_are_upstream_errors(self) -> None:
        """Test that odd 200 bodies raise a permanent UpstreamError."""
        for payload in (["not", "an", "object"], {"data": []}, "text"):
            client = SubgraphClient(
                "https://subgraph.test",
                transport=httpx.MockTransport(lambda request, body=payload: httpx.Response(200, json=body)),
            )

            async def run() -> None:
                try:
                    await client.post("{ agents(first: 1) { id } }")
                finally:
                    await client.close()

            with pytest.raises(UpstreamError, match="not an object") as info:
                asyncio.run(run())
            assert not is_transient(info.value)

    def test_malformed_page_fails_without_retries(self) -> None:
        """Test that the retriever surfaces a malformed page instead of crashing."""
        fake = FakeSubgraph({"repFeedbacks": [feedback_row("f1", 1)]})
        fake.queued = [httpx.Response(200, json=["not", "an", "object"]) for _ in range(2)]
        sleeps: list[float] = []

        async def sleep(delay: float) -> None:
            sleeps.append(delay)

        with pytest.raises(UpstreamError, match="not an object"):
            _collect(Retriever(fake.client(), sleep=sleep), FEEDBACKS)
        assert sleeps == []
