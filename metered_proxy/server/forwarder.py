"""Forwarding of inbound calls to the upstream API."""

import logging
from typing import Iterable, List, Tuple

import httpx

from metered_proxy.core.errors import GatewayFailure

logger = logging.getLogger(__name__)

# Replaced or recomputed for the outbound request
_DROPPED_HEADERS = {b"host", b"content-length", b"authorization", b"accept-encoding"}


class UpstreamForwarder:
    """Issues the outbound POST for a proxied call.

    Headers are cloned from the inbound request except the credential,
    which is replaced with the deployment's own. Compression is disabled so
    the relayed bytes are the bytes that get decoded for accounting.
    """

    def __init__(self, client: httpx.AsyncClient, base_url: str, api_key: str):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    def outbound_headers(self, inbound: Iterable[Tuple[bytes, bytes]]) -> List[Tuple[bytes, bytes]]:
        headers = [(k, v) for k, v in inbound if k.lower() not in _DROPPED_HEADERS]
        headers.append((b"authorization", b"Bearer " + self.api_key.encode("latin-1")))
        headers.append((b"accept-encoding", b"identity"))
        return headers

    async def forward(
        self,
        path: str,
        body: bytes,
        inbound_headers: Iterable[Tuple[bytes, bytes]],
        timeout: float,
    ) -> httpx.Response:
        """Send ``body`` to the upstream endpoint at ``path``.

        Returns:
            The upstream response with its body not yet read; the caller
            must close it

        Raises:
            GatewayFailure: On DNS, connection or timeout failures
        """
        url = self.base_url + path
        logger.debug("Forwarding %d bytes to %s", len(body), url)
        request = self.client.build_request(
            "POST",
            url,
            content=body,
            headers=self.outbound_headers(inbound_headers),
            timeout=timeout,
        )
        try:
            return await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise GatewayFailure(f"Failed to read response from upstream: {e}") from e
