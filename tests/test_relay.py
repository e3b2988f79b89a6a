"""
Unit tests for the response relay.

The relay is driven directly: upstream responses are httpx.Response objects
backed by async byte iterators, and the client is a recording ASGI send.
"""

import asyncio
import json
from typing import List

import httpx
import pytest

from metered_proxy.core.attribution import CallContext
from metered_proxy.core.errors import GatewayFailure
from metered_proxy.core.relay import ClientSink, ResponseRelay, iter_lines, relay_response
from metered_proxy.core.request_shape import ChatShape, DecodedRequest, PromptShape

SSE_HEADERS = {"content-type": "text/event-stream"}
CONTEXT = CallContext(remote="127.0.0.1:5000", user_id=1, user_name="alice",
                      project_id=1, project_name="<default>", model_id=1, model_name="gpt-x")


def _event(payload) -> List[bytes]:
    if not isinstance(payload, str):
        payload = json.dumps(payload)
    return [f"data: {payload}\n".encode(), b"\n"]


def _delta(content) -> dict:
    return {"choices": [{"index": 0, "delta": {"content": content}}]}


def _request(stream, fragments=("hi there", "how are you")) -> DecodedRequest:
    return DecodedRequest(model="gpt-x", stream=stream,
                          prompt_fragments=tuple(fragments), raw_body=b"{}")


class RecordingClient:
    """ASGI send that records messages, optionally failing after some sends."""

    def __init__(self, log=None, fail_after=None):
        self.messages = []
        self.log = log if log is not None else []
        self.fail_after = fail_after

    async def send(self, message):
        if self.fail_after is not None and len(self.messages) >= self.fail_after:
            raise OSError("connection reset by peer")
        self.messages.append(message)
        if message["type"] == "http.response.body" and message["body"]:
            self.log.append(("write", message["body"]))

    @property
    def status(self):
        return self.messages[0]["status"]

    @property
    def headers(self):
        return dict(self.messages[0]["headers"])

    @property
    def body(self):
        return b"".join(m.get("body", b"") for m in self.messages[1:])

    @property
    def ended(self):
        last = self.messages[-1]
        return last["type"] == "http.response.body" and not last["more_body"]


def _upstream(status, chunks, headers=None, log=None, error=None):
    """Build an upstream response yielding ``chunks``, then raising ``error``."""

    async def body():
        for chunk in chunks:
            if log is not None:
                log.append(("read", chunk))
            yield chunk
        if error is not None:
            raise error

    return httpx.Response(status, headers=headers or {}, content=body())


def _run(tokenizer, upstream, request, client, shape=None):
    relay = ResponseRelay(shape or ChatShape(), tokenizer, CONTEXT)
    return asyncio.run(relay_response(relay, upstream, request, ClientSink(client.send)))


class TestIterLines:
    def test_splits_and_keeps_terminators(self):
        async def chunks():
            for chunk in [b"ab", b"c\nde\n", b"\n", b"f\r\n", b"tail"]:
                yield chunk

        async def collect():
            return [line async for line in iter_lines(chunks())]

        assert asyncio.run(collect()) == [b"abc\n", b"de\n", b"\n", b"f\r\n", b"tail"]


class TestNonOkPassThrough:
    """Non-200 responses are copied verbatim and never accounted."""

    @pytest.mark.parametrize("stream", [False, True])
    def test_body_forwarded_without_tokenization(self, word_tokenizer, stream):
        chunks = [b'{"error": {"message": "rate ', b'limited"}}']
        upstream = _upstream(429, chunks, headers={"content-type": "application/json",
                                                   "retry-after": "3"})
        client = RecordingClient()

        total = _run(word_tokenizer, upstream, _request(stream), client)

        assert total is None
        assert word_tokenizer.calls == []
        assert client.status == 429
        assert client.headers[b"retry-after"] == b"3"
        assert client.body == b"".join(chunks)
        assert client.ended

    def test_even_sse_looking_bodies_are_not_parsed(self, word_tokenizer):
        chunks = _event(_delta("one two")) + _event("not json")
        client = RecordingClient()

        total = _run(word_tokenizer, _upstream(500, chunks), _request(True), client)

        assert total is None
        assert word_tokenizer.calls == []
        assert client.body == b"".join(chunks)


class TestPlainResponse:
    """Non-streaming 200 responses."""

    def test_total_tokens_and_verbatim_body(self, word_tokenizer):
        # Unusual spacing and key order must survive untouched
        body = b'{ "id":"x",\n  "usage" : {"total_tokens": 7, "prompt_tokens": 3} }'
        upstream = _upstream(200, [body[:10], body[10:]],
                             headers={"content-type": "application/json", "x-request-id": "r1"})
        client = RecordingClient()

        total = _run(word_tokenizer, upstream, _request(False), client)

        assert total == 7
        assert word_tokenizer.calls == []
        assert client.status == 200
        assert client.headers[b"x-request-id"] == b"r1"
        assert client.body == body
        assert client.ended

    def test_missing_usage_counts_zero(self, word_tokenizer):
        client = RecordingClient()

        total = _run(word_tokenizer, _upstream(200, [b'{"id": "x"}']), _request(False), client)

        assert total == 0
        assert client.body == b'{"id": "x"}'

    @pytest.mark.parametrize("body", [b"not json", b"[1, 2, 3]", b""])
    def test_unparseable_body_is_gateway_failure(self, word_tokenizer, body):
        client = RecordingClient()

        total = _run(word_tokenizer, _upstream(200, [body]), _request(False), client)

        assert total is None
        assert client.status == 502
        assert b"failed to parse response" in client.body
        assert client.ended

    def test_body_already_in_memory(self, word_tokenizer):
        body = b'{"usage": {"total_tokens": 4}}'
        upstream = httpx.Response(200, content=body)
        assert upstream.is_stream_consumed
        client = RecordingClient()

        total = _run(word_tokenizer, upstream, _request(False), client)

        assert total == 4
        assert client.body == body

    def test_stream_already_consumed_is_gateway_failure(self, word_tokenizer):
        upstream = _upstream(200, [b'{"usage": {}}'])

        async def go():
            async for _ in upstream.aiter_raw():
                pass
            relay = ResponseRelay(ChatShape(), word_tokenizer, CONTEXT)
            client = RecordingClient()
            total = await relay_response(relay, upstream, _request(False), ClientSink(client.send))
            return total, client

        total, client = asyncio.run(go())

        assert total is None
        assert client.status == 502
        assert b"failed to read response" in client.body

    def test_read_error_before_headers_is_gateway_failure(self, word_tokenizer):
        upstream = _upstream(200, [b'{"usage"'], error=httpx.ReadError("boom"))
        client = RecordingClient()

        total = _run(word_tokenizer, upstream, _request(False), client)

        assert total is None
        assert client.status == 502
        assert b"failed to read response" in client.body


class TestStreamingResponse:
    """Streaming 200 responses (server-sent events)."""

    def _stream(self, *payloads):
        chunks = []
        for payload in payloads:
            chunks.extend(_event(payload))
        return chunks

    def test_prompt_plus_delta_tokens(self, word_tokenizer):
        chunks = self._stream(
            {"choices": [{"index": 0, "delta": {"role": "assistant"}}]},
            _delta("hello big"),
            _delta(" world"),
            "[DONE]",
        )
        client = RecordingClient()

        total = _run(word_tokenizer, _upstream(200, chunks, headers=SSE_HEADERS),
                     _request(True), client)

        # prompt: 2 + 3, deltas: 0 + 2 + 1
        assert total == 8
        assert client.status == 200
        assert client.headers[b"content-type"] == b"text/event-stream"
        assert client.body == b"".join(chunks)
        assert client.ended

    def test_lines_written_before_next_read(self, word_tokenizer):
        log = []
        chunks = self._stream(_delta("a"), _delta("b c"), "[DONE]")
        client = RecordingClient(log=log)

        _run(word_tokenizer, _upstream(200, chunks, headers=SSE_HEADERS, log=log),
             _request(True), client)

        expected = []
        for chunk in chunks:
            expected += [("read", chunk), ("write", chunk)]
        assert log == expected

    def test_multiple_lines_in_one_chunk_are_written_separately(self, word_tokenizer):
        chunks = [b"".join(self._stream(_delta("a b"), "[DONE]"))]
        client = RecordingClient()

        total = _run(word_tokenizer, _upstream(200, chunks), _request(True, ()), client)

        writes = [m["body"] for m in client.messages[1:] if m["body"]]
        assert writes == [b'data: {"choices": [{"index": 0, "delta": {"content": "a b"}}]}\n',
                          b"\n", b"data: [DONE]\n", b"\n"]
        assert total == 2

    def test_crlf_framing_and_comments(self, word_tokenizer):
        chunks = [
            b": keep-alive\r\n",
            b"\r\n",
            b'data: {"choices": [{"delta": {"content": "x y z"}}]}\r\n',
            b"\r\n",
            b"data: [DONE]\r\n",
            b"\r\n",
        ]
        client = RecordingClient()

        total = _run(word_tokenizer, _upstream(200, chunks), _request(True, ()), client)

        assert total == 3
        assert client.body == b"".join(chunks)

    def test_prompt_shape_counts_choice_text(self, word_tokenizer):
        chunks = self._stream(
            {"choices": [{"index": 0, "text": "lived a king"}]},
            "[DONE]",
        )
        client = RecordingClient()
        request = _request(True, ("once upon a time",))

        total = _run(word_tokenizer, _upstream(200, chunks), request, client, shape=PromptShape())

        assert total == 7

    def test_bytes_after_sentinel_are_not_read(self, word_tokenizer):
        log = []
        chunks = self._stream(_delta("a"), "[DONE]") + [b"data: trailing\n"]

        _run(word_tokenizer, _upstream(200, chunks, log=log), _request(True), RecordingClient())

        assert ("read", b"data: trailing\n") not in log

    @pytest.mark.parametrize("bad_event", [
        "not json",
        {"choices": []},
        {"choices": [{"delta": {"content": "a"}}, {"delta": {"content": "b"}}]},
        {"choices": [{"delta": {"content": 7}}]},
        {"id": "no choices"},
    ])
    def test_structural_mismatch_aborts_stream(self, word_tokenizer, bad_event):
        chunks = self._stream(_delta("a"), bad_event, _delta("never sent"), "[DONE]")
        client = RecordingClient()

        total = _run(word_tokenizer, _upstream(200, chunks), _request(True), client)

        assert total is None
        # Status was already sent and cannot change
        assert client.status == 200
        bad_block = b"".join(_event(bad_event))
        assert client.body == b"".join(_event(_delta("a"))) + bad_block
        assert client.ended

    def test_read_error_mid_stream_aborts(self, word_tokenizer):
        chunks = self._stream(_delta("a"))
        upstream = _upstream(200, chunks, error=httpx.RemoteProtocolError("peer closed"))
        client = RecordingClient()

        total = _run(word_tokenizer, upstream, _request(True), client)

        assert total is None
        assert client.status == 200
        assert client.body == b"".join(chunks)
        assert client.ended

    def test_stream_ending_without_sentinel_aborts(self, word_tokenizer):
        chunks = self._stream(_delta("a"))
        client = RecordingClient()

        total = _run(word_tokenizer, _upstream(200, chunks), _request(True), client)

        assert total is None
        assert client.ended

    def test_tokenizer_failure_before_headers_is_502(self):
        class BrokenTokenizer:
            def count(self, text):
                raise ValueError("cannot encode")

        client = RecordingClient()

        total = _run(BrokenTokenizer(), _upstream(200, self._stream("[DONE]")),
                     _request(True), client)

        assert total is None
        assert client.status == 502
        assert b"failed to tokenize prompt" in client.body

    def test_client_disconnect_does_not_stop_accounting(self, word_tokenizer):
        chunks = self._stream(_delta("one two"), _delta("three"), "[DONE]")
        # Start message and first line succeed, then the client is gone
        client = RecordingClient(fail_after=2)
        relay = ResponseRelay(ChatShape(), word_tokenizer, CONTEXT)
        sink = ClientSink(client.send)

        total = asyncio.run(relay_response(relay, _upstream(200, chunks), _request(True), sink))

        assert total == 5 + 3
        assert sink.connected is False
        assert len(client.messages) == 2


class TestClientSink:
    def test_start_only_once(self):
        client = RecordingClient()
        sink = ClientSink(client.send)

        async def go():
            await sink.start(200, [])
            with pytest.raises(RuntimeError):
                await sink.start(200, [])

        asyncio.run(go())
        assert len(client.messages) == 1

    def test_finish_is_idempotent(self):
        client = RecordingClient()
        sink = ClientSink(client.send)

        async def go():
            await sink.start(204, [])
            await sink.finish()
            await sink.finish()

        asyncio.run(go())
        assert len(client.messages) == 2

    def test_error_response(self):
        client = RecordingClient()

        asyncio.run(ClientSink(client.send).error(GatewayFailure.status_code, "upstream broke"))

        assert client.status == 502
        assert client.headers[b"content-type"].startswith(b"text/plain")
        assert client.body == b"upstream broke"
        assert client.ended
