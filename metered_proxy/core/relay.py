"""
Response relay.

Forwards an upstream response to the client while deriving the call's token
count from the same bytes.

- Non-200 responses are copied through untouched and never accounted.
- Plain 200 responses are buffered, their ``usage.total_tokens`` read, then
  sent verbatim.
- Streamed 200 responses (server-sent events) are sent line by line as they
  arrive; each completed event is decoded and its text tokenized on top of
  the prompt's own token count.

Once the status line has gone out a failure can no longer change it: the
relay logs it and ends the body early.
"""

import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, List, MutableMapping, Optional, Tuple

import httpx
from starlette.requests import ClientDisconnect

from .attribution import CallContext
from .errors import GatewayFailure
from .request_shape import DecodedRequest, RequestShape
from .token_counter import Tokenizer, TokenUsage

logger = logging.getLogger(__name__)

DATA_PREFIX = b"data:"
END_OF_STREAM = b"[DONE]"

Message = MutableMapping[str, Any]
Send = Callable[[Message], Awaitable[None]]
RawHeaders = List[Tuple[bytes, bytes]]


class ClientSink:
    """Writes one HTTP response through an ASGI ``send`` callable.

    The status line goes out at most once. If the client disconnects,
    further writes are dropped so the upstream can still be drained and
    accounted.
    """

    def __init__(self, send: Send):
        self._send = send
        self.started = False
        self.finished = False
        self.connected = True

    async def _emit(self, message: Message) -> None:
        if not self.connected:
            return
        try:
            await self._send(message)
        except (OSError, ClientDisconnect) as e:
            self.connected = False
            logger.warning("Client went away, continuing without it: %r", e)

    async def start(self, status: int, headers: RawHeaders) -> None:
        if self.started:
            raise RuntimeError("response already started")
        self.started = True
        await self._emit({"type": "http.response.start", "status": status, "headers": headers})

    async def write(self, chunk: bytes) -> None:
        if chunk:
            await self._emit({"type": "http.response.body", "body": chunk, "more_body": True})

    async def finish(self) -> None:
        if self.finished:
            return
        self.finished = True
        await self._emit({"type": "http.response.body", "body": b"", "more_body": False})

    async def error(self, status: int, text: str) -> None:
        body = text.encode("utf-8")
        await self.start(status, [
            (b"content-type", b"text/plain; charset=utf-8"),
            (b"content-length", str(len(body)).encode("ascii")),
        ])
        await self.write(body)
        await self.finish()


async def abort(sink: ClientSink, error: GatewayFailure, context: CallContext) -> None:
    """Terminate a relay that failed.

    Before the status line is sent the client gets a regular error response;
    afterwards the failure is only logged and the body is cut short.
    """
    if sink.started:
        logger.error("Relay aborted after response start for %s: %s", context, error)
        await sink.finish()
    else:
        logger.error("Relay failed for %s: %s", context, error)
        await sink.error(error.status_code, error.message)


def upstream_headers(upstream: httpx.Response) -> RawHeaders:
    return [(name.lower(), value) for name, value in upstream.headers.raw]


async def iter_lines(chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    """Split a byte stream into lines, keeping each line's terminator.

    A line is yielded as soon as its newline arrives. Trailing bytes without
    a newline are yielded last.
    """
    pending = b""
    async for chunk in chunks:
        pending += chunk
        start = 0
        while True:
            end = pending.find(b"\n", start)
            if end < 0:
                break
            yield pending[start:end + 1]
            start = end + 1
        pending = pending[start:]
    if pending:
        yield pending


class ResponseRelay:
    """Relays one upstream response for a request of a given shape."""

    def __init__(self, shape: RequestShape, tokenizer: Tokenizer, context: CallContext):
        self.shape = shape
        self.tokenizer = tokenizer
        self.context = context

    async def _chunks(self, upstream: httpx.Response) -> AsyncIterator[bytes]:
        try:
            if upstream.is_stream_consumed:
                # Body was already read into memory by the transport
                if upstream.content:
                    yield upstream.content
                return
            async for chunk in upstream.aiter_raw():
                yield chunk
        except (httpx.HTTPError, httpx.StreamError) as e:
            raise GatewayFailure(f"failed to read response: {e}") from e

    async def run(
        self, upstream: httpx.Response, request: DecodedRequest, sink: ClientSink
    ) -> Optional[int]:
        """Relay ``upstream`` into ``sink``.

        Returns:
            The call's total token count, or None for non-200 responses

        Raises:
            GatewayFailure: If the response cannot be relayed or accounted
        """
        if upstream.status_code != 200:
            await self._copy_through(upstream, sink)
            return None
        if request.stream:
            return await self._relay_stream(upstream, request, sink)
        return await self._relay_plain(upstream, sink)

    async def _copy_through(self, upstream: httpx.Response, sink: ClientSink) -> None:
        await sink.start(upstream.status_code, upstream_headers(upstream))
        async for chunk in self._chunks(upstream):
            await sink.write(chunk)
        await sink.finish()
        logger.info("Error response sent. %d, %s", upstream.status_code, self.context)

    async def _relay_plain(self, upstream: httpx.Response, sink: ClientSink) -> int:
        body = b"".join([chunk async for chunk in self._chunks(upstream)])
        try:
            data = json.loads(body)
        except ValueError as e:
            raise GatewayFailure(f"failed to parse response: {e}") from e
        if not isinstance(data, dict):
            raise GatewayFailure("failed to parse response: not a JSON object")

        usage = data.get("usage")
        total = usage.get("total_tokens") if isinstance(usage, dict) else None
        if not isinstance(total, int) or isinstance(total, bool):
            logger.warning("No usage.total_tokens in response for %s, counting 0", self.context)
            total = 0
        logger.info("200 response read. %s, tokens %d", self.context, total)

        await sink.start(upstream.status_code, upstream_headers(upstream))
        await sink.write(body)
        await sink.finish()
        logger.info("200 response sent. %s", self.context)
        return total

    def _count(self, text: str, what: str) -> int:
        try:
            return self.tokenizer.count(text)
        except ValueError as e:
            raise GatewayFailure(f"failed to tokenize {what}: {e}") from e

    def _count_event(self, payload: bytes) -> int:
        try:
            event = json.loads(payload)
        except ValueError as e:
            raise GatewayFailure(f"failed to unmarshal response: {e}") from e
        choices = event.get("choices") if isinstance(event, dict) else None
        if not isinstance(choices, list) or len(choices) != 1:
            raise GatewayFailure("0 or more than 1 choices in response")
        try:
            text = self.shape.chunk_text(choices[0])
        except ValueError as e:
            raise GatewayFailure(f"unexpected choice in response: {e}") from e
        return self._count(text, "message")

    async def _relay_stream(
        self, upstream: httpx.Response, request: DecodedRequest, sink: ClientSink
    ) -> int:
        usage = TokenUsage(prompt_tokens=sum(
            self._count(fragment, "prompt") for fragment in request.prompt_fragments
        ))
        logger.info("Tokenized prompt for %s: %d tokens", self.context, usage.prompt_tokens)

        await sink.start(upstream.status_code, upstream_headers(upstream))

        data: List[bytes] = []
        async for line in iter_lines(self._chunks(upstream)):
            await sink.write(line)

            if line.strip():
                if line.startswith(DATA_PREFIX):
                    data.append(line[len(DATA_PREFIX):].strip())
                continue

            # Blank line: the event is complete
            payload, data = b"\n".join(data), []
            if not payload:
                continue
            if payload == END_OF_STREAM:
                break
            logger.debug("Event for %s: %r", self.context, payload)
            usage.completion_tokens += self._count_event(payload)
        else:
            raise GatewayFailure("response stream ended before [DONE]")

        await sink.finish()
        logger.info("SSE response read. %s, tokens %d", self.context, usage.total_tokens)
        return usage.total_tokens


async def relay_response(
    relay: ResponseRelay, upstream: httpx.Response, request: DecodedRequest, sink: ClientSink
) -> Optional[int]:
    """Run ``relay`` and turn its failures into the right client-visible outcome.

    Returns:
        The token total to record, or None if nothing should be recorded
    """
    try:
        return await relay.run(upstream, request, sink)
    except GatewayFailure as e:
        await abort(sink, e, relay.context)
        return None
