import asyncio
import json
from dataclasses import dataclass, field

import aiohttp

from ..errors import PermanentHTTPError, TransientHTTPError


@dataclass
class HttpResponse:
    status: int
    text: str
    url: str = ""
    set_cookies: list[str] = field(default_factory=list)

    def json(self):
        return json.loads(self.text)


class HttpTransport:
    """Thin aiohttp wrapper that turns network failures into TransientHTTPError.

    Status codes are returned untouched; ``check_status`` decides whether a
    status is retryable.
    """

    def __init__(self, session: aiohttp.ClientSession, timeout: float = 15.0):
        self._session = session
        self.timeout = timeout

    async def get(
        self,
        url: str,
        *,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> HttpResponse:
        return await self.request("GET", url, params=params, headers=headers)

    async def post(
        self,
        url: str,
        *,
        json_body: dict | None = None,
        headers: dict | None = None,
    ) -> HttpResponse:
        return await self.request("POST", url, json_body=json_body, headers=headers)

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict | None = None,
        json_body: dict | None = None,
        headers: dict | None = None,
    ) -> HttpResponse:
        try:
            async with self._session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                text = await resp.text(errors="replace")
                return HttpResponse(
                    status=resp.status,
                    text=text,
                    url=str(resp.url),
                    set_cookies=resp.headers.getall("Set-Cookie", []),
                )
        except asyncio.TimeoutError as e:
            raise TransientHTTPError(f"Timed out after {self.timeout}s: {url}") from e
        except aiohttp.ClientError as e:
            raise TransientHTTPError(f"{type(e).__name__}: {e}") from e


def check_status(resp: HttpResponse, url: str) -> HttpResponse:
    """Raise for non-2xx: 4xx is permanent, everything else transient."""
    if 200 <= resp.status < 300:
        return resp
    if 400 <= resp.status < 500:
        raise PermanentHTTPError(f"Client error: {resp.status} for {url}", status=resp.status)
    raise TransientHTTPError(f"Server error: {resp.status} for {url}", status=resp.status)
