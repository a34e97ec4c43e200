"""Transport boundary through which signed requests leave the process.

The execution core only depends on :class:`Transport`.  Proxy routing, TLS
relaxation and redirect tuning belong to whichever implementation is
injected; :class:`AiohttpTransport` is the plain direct variant.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol

import aiohttp

from ..errors import TransportError


@dataclass(frozen=True)
class TransportRequest:
    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None


@dataclass(frozen=True)
class TransportResponse:
    status: int
    body: Any = None
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class Transport(Protocol):
    async def send(self, request: TransportRequest) -> TransportResponse: ...


def encode_body(body: Any) -> str:
    """Serialize ``body`` exactly as it goes on the wire (and into HMAC headers)."""
    if isinstance(body, str):
        return body
    return json.dumps(body, separators=(",", ":"))


def _decode(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


class AiohttpTransport:
    """:class:`Transport` on top of an ``aiohttp.ClientSession``.

    Parameters
    ----------
    session:
        Optional shared session.  When omitted one is created lazily and
        owned (closed by :meth:`close`).
    timeout:
        Total request timeout in seconds.
    max_redirects:
        Redirect hops before the request counts as a redirect loop.
    """

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 10.0,
        max_redirects: int = 10,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self.timeout = timeout
        self.max_redirects = max_redirects

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def send(self, request: TransportRequest) -> TransportResponse:
        session = await self._get_session()
        kwargs: Dict[str, Any] = {
            "headers": dict(request.headers),
            "max_redirects": self.max_redirects,
            "timeout": aiohttp.ClientTimeout(total=self.timeout),
        }
        if request.body is not None:
            kwargs["data"] = encode_body(request.body)
            kwargs["headers"].setdefault("Content-Type", "application/json")
        try:
            async with session.request(request.method, request.url, **kwargs) as resp:
                text = await resp.text()
                return TransportResponse(resp.status, _decode(text), dict(resp.headers))
        except aiohttp.TooManyRedirects as exc:
            raise TransportError(
                f"exceeded {self.max_redirects} redirects for {request.url}", reason="redirect_loop"
            ) from exc
        except asyncio.TimeoutError as exc:
            raise TransportError(f"timed out after {self.timeout}s: {request.url}", reason="timeout") from exc
        except aiohttp.ClientConnectorError as exc:
            raise TransportError(
                f"cannot connect to {request.url}: {exc}", reason="network", request_sent=False
            ) from exc
        except aiohttp.ClientError as exc:
            raise TransportError(f"{type(exc).__name__}: {exc}", reason="network") from exc

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "AiohttpTransport":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


__all__ = ["Transport", "TransportRequest", "TransportResponse", "AiohttpTransport", "encode_body"]
