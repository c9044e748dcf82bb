from __future__ import annotations

from typing import Any

import httpx

from foreman.capabilities.base import (
    Capability,
    CapabilityResult,
    ParameterSpec,
    TransientCapabilityError,
)
from foreman.context import ExecutionContext
from foreman.processes import CancelToken

FETCH_TIMEOUT = 30.0
MAX_BODY_CHARS = 100_000


class FetchUrl(Capability):
    name = "fetch_url"
    description = "Fetches a URL over HTTP(S) and returns the response body as text."
    parameters = (
        ParameterSpec("url", "string", "Absolute http(s) URL.", required=True),
    )
    permission_group = "internet_access"
    is_default = False

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.transport = transport

    async def execute(
        self, params: dict[str, Any], context: ExecutionContext, token: CancelToken
    ) -> CapabilityResult:
        url = params["url"]
        if not url.startswith(("http://", "https://")):
            return CapabilityResult.fail(f"Unsupported URL scheme: {url}")
        try:
            async with httpx.AsyncClient(
                timeout=FETCH_TIMEOUT, follow_redirects=True, transport=self.transport
            ) as client:
                response = await token.run(client.get(url))
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status >= 500 or status == 429:
                raise TransientCapabilityError(f"HTTP {status} from {url}") from exc
            return CapabilityResult.fail(f"HTTP {status} from {url}")
        except httpx.TransportError as exc:
            raise TransientCapabilityError(f"Request to {url} failed: {exc}") from exc

        body = response.text
        if len(body) > MAX_BODY_CHARS:
            body = body[:MAX_BODY_CHARS] + "\n... [truncated]"
        return CapabilityResult.ok(f"URL: {url}\nStatus: {response.status_code}\n\n{body}")
