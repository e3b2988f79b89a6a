"""Metering proxy: FastAPI application.

One route, at the path of the deployment's upstream endpoint. Each call goes
through these steps, and any failure ends it with a single error status:

    method check -> auth -> project -> body decode -> model -> forward
    -> relay -> record usage

From body decode onward the call runs on its own deadline rather than the
client's: a client that disconnects early is still metered once the upstream
call completes.

Usage::

    OPENAI_KEY=sk-... metered-proxy serve 127.0.0.1:8080 --config proxy.yaml
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import AsyncIterator, Optional, Set

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response
from starlette.requests import ClientDisconnect
from starlette.types import Receive, Scope, Send

from metered_proxy.config.loader import ProxyConfig
from metered_proxy.core.attribution import AttributionResolver, CallContext, UsageRecorder
from metered_proxy.core.errors import BadRequest, GatewayFailure, InternalError, ProxyError, Unauthorized
from metered_proxy.core.relay import ClientSink, ResponseRelay, abort, relay_response
from metered_proxy.core.request_shape import DecodedRequest, RequestShape, get_request_shape
from metered_proxy.core.token_counter import TokenizerFactory, tokenizer_for_model
from metered_proxy.server.forwarder import UpstreamForwarder
from metered_proxy.storage.repository import UsageRepository

logger = logging.getLogger(__name__)

# Every standard method reaches the handler so that non-POST calls get a 400
PROXY_ROUTE_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE"]


@dataclass
class ProxyState:
    """Per-process dependencies shared by every call."""
    config: ProxyConfig
    shape: RequestShape
    resolver: AttributionResolver
    recorder: UsageRecorder
    forwarder: UpstreamForwarder
    tokenizer_factory: TokenizerFactory
    inflight: Set["asyncio.Task[None]"] = field(default_factory=set)


class MeteredResponse(Response):
    """Streams an upstream response to the client, then records usage.

    The relay runs in its own task, shielded from cancellation of the
    inbound request, and is bounded only by the call's deadline.
    """

    def __init__(
        self,
        state: ProxyState,
        relay: ResponseRelay,
        upstream: httpx.Response,
        request: DecodedRequest,
        deadline: float,
    ):
        super().__init__()
        self.state = state
        self.relay = relay
        self.upstream = upstream
        self.request = request
        self.deadline = deadline

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        task = asyncio.ensure_future(self._run(ClientSink(send)))
        self.state.inflight.add(task)
        task.add_done_callback(self.state.inflight.discard)
        await asyncio.shield(task)
        if self.background is not None:
            await self.background()

    async def _run(self, sink: ClientSink) -> None:
        context = self.relay.context
        remaining = self.deadline - asyncio.get_running_loop().time()
        try:
            total = await asyncio.wait_for(
                relay_response(self.relay, self.upstream, self.request, sink),
                timeout=max(remaining, 0),
            )
        except asyncio.TimeoutError:
            await abort(sink, GatewayFailure("deadline exceeded while relaying response"), context)
            total = None
        finally:
            await self.upstream.aclose()

        if total is not None:
            await self.state.recorder.record(context, total)


def _remote(request: Request) -> str:
    if request.client is None:
        return "-"
    return f"{request.client.host}:{request.client.port}"


class ProxyCall:
    """Drives one inbound call up to the point where relaying starts."""

    def __init__(self, state: ProxyState, request: Request):
        self.state = state
        self.request = request
        self.context = CallContext(remote=_remote(request))

    def _remaining(self, deadline: float) -> float:
        return max(deadline - asyncio.get_running_loop().time(), 0)

    async def run(self) -> Response:
        state, request = self.state, self.request
        settings = state.config.proxy

        if request.method != "POST":
            raise BadRequest("Only POST requests are supported")
        if request.url.query:
            raise BadRequest("Query parameters are not supported")

        key = request.headers.get("authorization", "")
        if key.startswith("Bearer "):
            key = key[len("Bearer "):]
        user = await state.resolver.resolve_user(key)
        if user is None:
            raise Unauthorized("Invalid API key")
        self.context = replace(self.context, user_id=user.id, user_name=user.name)

        project_name = request.headers.get(settings.project_header) or settings.default_project
        project_id = await state.resolver.resolve_project(user.id, project_name)
        self.context = replace(self.context, project_id=project_id, project_name=project_name)

        # The call's own clock; the client's lifetime does not bound it
        deadline = asyncio.get_running_loop().time() + state.config.upstream.timeout_seconds

        try:
            raw_body = await asyncio.wait_for(request.body(), timeout=self._remaining(deadline))
        except (ClientDisconnect, asyncio.TimeoutError) as e:
            raise InternalError("failed to read request body") from e
        decoded = state.shape.decode(raw_body)
        self.context = replace(self.context, model_name=decoded.model)

        try:
            # First use of an encoding may load it from disk or network
            tokenizer = await asyncio.to_thread(state.tokenizer_factory, decoded.model)
        except KeyError:
            raise BadRequest(f"failed to find model {decoded.model}") from None
        model_id = await state.resolver.resolve_model(decoded.model)
        self.context = replace(self.context, model_id=model_id)

        logger.info("Proxying. %s", self.context)
        try:
            upstream = await asyncio.wait_for(
                state.forwarder.forward(
                    state.shape.path,
                    raw_body,
                    request.headers.raw,
                    timeout=self._remaining(deadline),
                ),
                timeout=self._remaining(deadline),
            )
        except asyncio.TimeoutError:
            raise GatewayFailure("deadline exceeded waiting for upstream") from None

        relay = ResponseRelay(state.shape, tokenizer, self.context)
        return MeteredResponse(state, relay, upstream, decoded, deadline)


async def proxy_endpoint(request: Request) -> Response:
    call = ProxyCall(request.app.state.proxy, request)
    try:
        return await call.run()
    except ProxyError as e:
        logger.error("%s: %s", call.context, e)
        raise


async def _proxy_error_handler(request: Request, exc: ProxyError) -> Response:
    return PlainTextResponse(exc.message, status_code=exc.status_code)


def create_app(
    config: ProxyConfig,
    repository: Optional[UsageRepository] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    tokenizer_factory: TokenizerFactory = tokenizer_for_model,
) -> FastAPI:
    """Build the proxy application.

    Dependencies not supplied are created at startup and closed at
    shutdown; supplied ones are left to the caller to close.
    """
    shape = get_request_shape(config.proxy.request_shape)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        repo = repository
        if repo is None:
            repo = UsageRepository(config.storage.path, config.storage.pool_size)
            await asyncio.to_thread(repo.initialize_schema)
        client = http_client
        if client is None:
            client = httpx.AsyncClient(
                timeout=httpx.Timeout(config.upstream.timeout_seconds, connect=10.0)
            )

        api_key = config.upstream.api_key
        if not api_key:
            logger.warning("%s is not set; upstream calls will be unauthenticated",
                           config.upstream.api_key_env)

        state = ProxyState(
            config=config,
            shape=shape,
            resolver=AttributionResolver(repo),
            recorder=UsageRecorder(repo),
            forwarder=UpstreamForwarder(client, config.upstream.base_url, api_key),
            tokenizer_factory=tokenizer_factory,
        )
        app.state.proxy = state
        logger.info("Proxying %s%s (%s requests)", config.upstream.base_url, shape.path, shape.name)
        try:
            yield
        finally:
            if state.inflight:
                logger.info("Waiting for %d in-flight responses", len(state.inflight))
                await asyncio.gather(*state.inflight, return_exceptions=True)
            if http_client is None:
                await client.aclose()
            if repository is None:
                repo.close()

    app = FastAPI(title="Metered Proxy", lifespan=lifespan)
    app.add_exception_handler(ProxyError, _proxy_error_handler)
    app.add_api_route(
        shape.path,
        proxy_endpoint,
        methods=PROXY_ROUTE_METHODS,
        include_in_schema=False,
    )
    return app
