"""
Single-shot Fetch

Issues one buffered outbound request and returns the complete response.
Used by the /proxy and /curl HTTP endpoints; this is the non-streaming
counterpart of a stream session.
"""

from __future__ import annotations

import logging

import httpx

from relay.outbound.request import OutboundRequest

logger = logging.getLogger(__name__)


def single_shot_client_factory(timeout: float = 30.0):
    """httpx clients for buffered fetches, with an overall timeout."""
    def factory(outbound: OutboundRequest) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            verify=not outbound.insecure,
            timeout=timeout,
        )
    return factory


async def fetch(
    outbound: OutboundRequest,
    client_factory,
    only_body_methods: bool = False,
) -> httpx.Response:
    """
    Fetch a request descriptor and read the whole response body.

    Redirects are followed. Headers are sent as given, without the
    proxy-header sanitization applied to stream sessions.

    Args:
        outbound: Request to issue
        client_factory: Builds the httpx client
        only_body_methods: Send ``data`` only for POST, PUT and PATCH

    Raises:
        httpx.HTTPError: Transport failure
        OutboundRequestError: Unusable URL
    """
    kwargs = outbound.to_httpx_kwargs(sanitize=False, only_body_methods=only_body_methods)
    logger.info(f"Fetching {kwargs['method']} {outbound.url}")

    async with client_factory(outbound) as client:
        request = client.build_request(**kwargs)
        response = await client.send(
            request,
            auth=outbound.basic_auth(),
            follow_redirects=True,
        )
    logger.info(f"Fetched {outbound.url} -> {response.status_code}")
    return response
