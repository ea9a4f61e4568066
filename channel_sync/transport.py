from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import aiohttp

HTTPVerb = Literal["GET", "POST", "PATCH", "DELETE"]

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ModerationForbiddenError(TransportError):
    pass


@dataclass(frozen=True, slots=True)
class TransportResponse:
    status: int
    text: str


class Transport(Protocol):
    async def execute(
        self,
        verb: HTTPVerb,
        server: str,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> TransportResponse: ...


def join_url(server: str, path: str) -> str:
    return f"{server.rstrip('/')}/{path.lstrip('/')}"


class AiohttpTransport:
    """HTTP transport over aiohttp.

    Query parameters go in the URL for GET/DELETE and in a JSON body for
    POST/PATCH. Use as an async context manager so the session gets closed.
    """

    def __init__(self, *, auth_token: str | None = None, timeout_seconds: float = 30.0) -> None:
        self._auth_token = auth_token
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> AiohttpTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        return headers

    async def execute(
        self,
        verb: HTTPVerb,
        server: str,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> TransportResponse:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        url = join_url(server, path)
        kwargs: dict[str, Any] = {"headers": self._headers()}
        if params:
            if verb in ("GET", "DELETE"):
                kwargs["params"] = {k: str(v) for k, v in params.items()}
            else:
                kwargs["json"] = params
        logger.debug("%s %s", verb, url)
        try:
            async with self._session.request(verb, url, **kwargs) as resp:
                text = await resp.text()
                status = resp.status
        except aiohttp.ClientError as e:
            raise TransportError(f"{verb} {url} failed: {e}") from e
        except TimeoutError as e:
            raise TransportError(f"{verb} {url} timed out") from e
        if not 200 <= status < 300:
            raise TransportError(f"{verb} {url} returned HTTP {status}", status=status)
        return TransportResponse(status=status, text=text)
