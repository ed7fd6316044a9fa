"""Tests for the GraphDB client and the graph sink."""

import asyncio
from urllib.parse import unquote

import httpx
import pytest
from conftest import agent_row, feedback_row, no_sleep

from subgraph_sync.connectors.graphdb import GraphDBClient, UploadMode, split_turtle
from subgraph_sync.core.graph_sink import (
    PREFIXES,
    GraphSink,
    context_iri,
    encode_segment,
    escape_turtle,
    raw_record_turtle,
    record_iri,
)
from subgraph_sync.core.retry import RetryPolicy
from subgraph_sync.errors import GraphDBError, StoreTransientError
from subgraph_sync.sections import get_section


class Recorder:
    """MockTransport handler that records requests and replays responses."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        return httpx.Response(204)

    def client(self, **kwargs) -> GraphDBClient:
        return GraphDBClient(
            "https://graphdb.test/",
            "kg repo",
            transport=httpx.MockTransport(self),
            **kwargs,
        )


class TestGraphDBClient:
    """Tests for GraphDBClient."""

    def test_upload_into_context(self) -> None:
        """Test the statements URL, context and body."""
        recorder = Recorder()
        client = recorder.client()
        sent = asyncio.run(
            client.upload_turtle("<a> <b> <c> .\n", context="https://g/1", prefixes="@prefix x: <y> .")
        )

        request = recorder.requests[0]
        assert request.method == "POST"
        assert str(request.url).startswith("https://graphdb.test/repositories/kg%20repo/statements?context=")
        assert unquote(request.url.query.decode()) == "context=<https://g/1>"
        assert request.headers["Content-Type"] == "text/turtle"
        assert request.content.decode() == "@prefix x: <y> .\n<a> <b> <c> .\n"
        assert sent == len(request.content)

    def test_replace_clears_first(self) -> None:
        """Test that replace mode deletes the context before uploading."""
        recorder = Recorder()
        client = recorder.client()
        asyncio.run(client.upload_turtle("<a> <b> <c> .", context="https://g/1", mode=UploadMode.REPLACE))
        assert [r.method for r in recorder.requests] == ["DELETE", "POST"]

    def test_auth_headers(self) -> None:
        """Test basic auth and Cloudflare Access headers."""
        recorder = Recorder()
        client = recorder.client(
            username="u",
            password="p",
            cf_access_client_id="cid",
            cf_access_client_secret="secret",
        )
        asyncio.run(client.clear_context("https://g/1"))
        headers = recorder.requests[0].headers
        assert headers["Authorization"].startswith("Basic ")
        assert headers["CF-Access-Client-Id"] == "cid"
        assert headers["CF-Access-Client-Secret"] == "secret"

    def test_query_cache(self) -> None:
        """Test that a repeated read query is answered from cache until a write."""
        body = {"results": {"bindings": []}}
        recorder = Recorder(
            httpx.Response(200, json=body),
            httpx.Response(204),
            httpx.Response(200, json=body),
        )
        client = recorder.client()

        async def run() -> None:
            await client.query("SELECT * WHERE { ?s ?p ?o }")
            await client.query("SELECT * WHERE { ?s ?p ?o }")
            await client.clear_context("https://g/1")
            await client.query("SELECT * WHERE { ?s ?p ?o }")

        asyncio.run(run())
        assert [r.method for r in recorder.requests] == ["POST", "DELETE", "POST"]

    def test_error_classification(self) -> None:
        """Test transient and permanent failures."""
        transient = Recorder(httpx.Response(503))
        with pytest.raises(StoreTransientError):
            asyncio.run(transient.client().clear_context("https://g/1"))

        permanent = Recorder(httpx.Response(400, text="bad turtle"))
        with pytest.raises(GraphDBError, match="bad turtle"):
            asyncio.run(permanent.client().upload_turtle("<a> <b> <c> ."))

    def test_split_turtle(self) -> None:
        """Test chunking on blank lines with the prefix block repeated."""
        blocks = [f"<s{i}> <p> \"{'x' * 40}\" ." for i in range(6)]
        chunks = split_turtle("\n\n".join(blocks), "@prefix x: <y> .", max_bytes=120)
        assert len(chunks) > 1
        assert all(chunk.startswith("@prefix x: <y> .\n") for chunk in chunks)
        assert sum(chunk.count("<p>") for chunk in chunks) == 6
        assert split_turtle("   ", "", 100) == []


class TestGraphSink:
    """Tests for raw record documents and publishing."""

    def test_escaping_and_segments(self) -> None:
        """Test literal escaping and IRI segment encoding."""
        assert escape_turtle('a"b\\c\nd') == 'a\\"b\\\\c\\nd'
        assert encode_segment("0xab-1") == "0xab-1"
        assert encode_segment("a/b c") == "a_2Fb_20c"
        assert context_iri(1, "feedbacks") == "https://www.agentictrust.io/graph/data/subgraph/1/feedbacks"
        assert record_iri(1, "agents", "7") == "<https://www.agentictrust.io/id/subgraph-record/1/agents/7>"

    def test_raw_record_turtle(self) -> None:
        """Test the document for a feedback record."""
        section = get_section("feedbacks")
        turtle = raw_record_turtle(1, section, section.parse(feedback_row("f1", 5)))

        assert turtle.startswith("<https://www.agentictrust.io/id/subgraph-record/1/feedbacks/f1> a ")
        assert 'erc8004:subgraphCursorValue "5:f1" ;' in turtle
        assert 'erc8004:subgraphTxHash "0xtxf1" ;' in turtle
        assert "erc8004:subgraphBlockNumber 5 ;" in turtle
        assert turtle.rstrip().endswith("erc8004:subgraphTimestamp 1700000005 .")
        # Raw JSON is embedded as an escaped literal on a single line
        assert 'erc8004:subgraphRawJson "{\\"agent\\": {\\"id\\": \\"1\\"}' in turtle
        assert len(turtle.splitlines()) == 9

    def test_agent_without_block_fields(self) -> None:
        """Test that optional lines are left out and the last line ends the block."""
        section = get_section("agents")
        turtle = raw_record_turtle(1, section, section.parse(agent_row("7", 10)))
        assert "subgraphBlockNumber" not in turtle
        last = turtle.rstrip().splitlines()[-1]
        assert last.startswith("  erc8004:subgraphRawJson ")
        assert last.endswith('" .')

    def test_publish_and_reset(self) -> None:
        """Test that publish uploads to the section context and reset clears it."""
        recorder = Recorder()
        sink = GraphSink(recorder.client(), sleep=no_sleep)
        section = get_section("feedbacks")
        records = [section.parse(feedback_row("f1", 5)), section.parse(feedback_row("f2", 6))]

        async def run() -> int:
            published = await sink.publish(1, section, records)
            await sink.publish(1, section, [])
            await sink.reset(1, [section])
            return published

        assert asyncio.run(run()) == 2
        upload, clear = recorder.requests
        assert upload.content.decode().startswith(PREFIXES)
        assert "feedbacks/f2>" in upload.content.decode()
        assert clear.method == "DELETE"
        assert unquote(clear.url.query.decode()).endswith("/subgraph/1/feedbacks>")

    def test_publish_retries_then_raises(self) -> None:
        """Test that a persistent outage surfaces after retries."""
        recorder = Recorder(*[httpx.Response(503) for _ in range(3)])
        sink = GraphSink(recorder.client(), retry_policy=RetryPolicy(max_retries=2), sleep=no_sleep)
        section = get_section("feedbacks")
        with pytest.raises(StoreTransientError):
            asyncio.run(sink.publish(1, section, [section.parse(feedback_row("f1", 5))]))
        assert len(recorder.requests) == 3
