"""Minimal async JSON-RPC transport and the provider boundary."""

from __future__ import annotations

import itertools
from typing import Any, Optional, Protocol, Sequence, Union

import httpx


class RpcError(RuntimeError):
    """Raised when a JSON-RPC endpoint returns an error or is unreachable."""

    def __init__(self, message: str, *, code: Optional[int] = None, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class Eip1193Provider(Protocol):
    """Wallet-style provider exposing a single ``request`` coroutine."""

    async def request(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:  # pragma: no cover - protocol
        """Perform ``method`` and return its JSON-RPC result."""


ProviderLike = Union[str, Eip1193Provider]

_REQUEST_IDS = itertools.count(1)


class HttpProvider:
    """JSON-RPC 2.0 client over HTTP implementing :class:`Eip1193Provider`."""

    def __init__(
        self,
        url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self._headers = headers or {}
        self._timeout = timeout
        self._transport = transport

    def __repr__(self) -> str:
        return f"HttpProvider({self.url!r})"

    async def request(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(_REQUEST_IDS),
            "method": method,
            "params": list(params or []),
        }
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                headers=self._headers,
                transport=self._transport,
            ) as client:
                response = await client.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            raise RpcError(f"{method} request to {self.url} failed: {exc}") from exc
        if response.status_code >= 400:
            raise RpcError(
                f"{self.url} responded with HTTP {response.status_code}",
                code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise RpcError(f"{self.url} returned a non-JSON payload") from exc
        if not isinstance(data, dict):
            raise RpcError(f"{self.url} returned an invalid JSON-RPC envelope")
        if data.get("error"):
            error = data["error"] if isinstance(data["error"], dict) else {"message": str(data["error"])}
            raise RpcError(
                str(error.get("message") or "JSON-RPC error"),
                code=error.get("code"),
                data=error.get("data"),
            )
        return data.get("result")


def as_provider(provider_or_url: ProviderLike, *, timeout: float = 10.0) -> Eip1193Provider:
    """Wrap bare RPC URLs in an :class:`HttpProvider`; pass providers through."""

    if isinstance(provider_or_url, str):
        return HttpProvider(provider_or_url, timeout=timeout)
    return provider_or_url
