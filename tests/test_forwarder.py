"""
Unit tests for the upstream forwarder.
"""

import asyncio

import httpx
import pytest

from metered_proxy.core.errors import GatewayFailure
from metered_proxy.server.forwarder import UpstreamForwarder


class TestUpstreamForwarder:
    def test_outbound_headers_replace_credentials(self):
        forwarder = UpstreamForwarder(httpx.AsyncClient(), "https://api.example.com/", "sk-up")
        inbound = [
            (b"host", b"proxy.local:8080"),
            (b"authorization", b"Bearer user-key"),
            (b"Content-Length", b"42"),
            (b"accept-encoding", b"gzip, br"),
            (b"content-type", b"application/json"),
            (b"x-project", b"web"),
        ]

        headers = forwarder.outbound_headers(inbound)

        assert headers == [
            (b"content-type", b"application/json"),
            (b"x-project", b"web"),
            (b"authorization", b"Bearer sk-up"),
            (b"accept-encoding", b"identity"),
        ]
        assert forwarder.base_url == "https://api.example.com"

    def test_forward_returns_unread_response(self):
        def handler(request):
            async def body():
                yield request.content[::-1]

            return httpx.Response(201, content=body())

        async def go():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                forwarder = UpstreamForwarder(client, "http://upstream.test", "sk-up")
                response = await forwarder.forward("/v1/chat/completions", b"abc", [], timeout=5)
                try:
                    assert not response.is_stream_consumed
                    return response.status_code, await response.aread()
                finally:
                    await response.aclose()

        assert asyncio.run(go()) == (201, b"cba")

    def test_transport_errors_become_gateway_failures(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        async def go():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                forwarder = UpstreamForwarder(client, "http://upstream.test", "sk-up")
                await forwarder.forward("/v1/completions", b"{}", [], timeout=5)

        with pytest.raises(GatewayFailure, match="Failed to read response from upstream") as exc_info:
            asyncio.run(go())
        assert exc_info.value.status_code == 502
