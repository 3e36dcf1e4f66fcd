"""Async HTTP transport shared by every chain adapter.

One ``httpx.AsyncClient`` carries JSON-RPC (single and batched) and plain
REST calls.  Timeouts are enforced here; retry policy is left to the
aggregation engine.
"""

from __future__ import annotations

import itertools
import logging
from typing import Any, Optional, Sequence, Union

import httpx

from book_of_profits.errors import ChainError, NetworkError, RpcError

logger = logging.getLogger("book_of_profits.transport")

DEFAULT_TIMEOUT = 15.0


def _retry_after(response: httpx.Response) -> Optional[float]:
    if response.status_code != 429:
        return None
    try:
        return float(response.headers.get("retry-after", ""))
    except ValueError:
        return None


class HttpTransport:
    """Request/response helper around a single ``httpx.AsyncClient``.

    Parameters
    ----------
    timeout:
        Per-request timeout in seconds.
    client:
        Optional pre-built client (tests pass one backed by
        ``httpx.MockTransport``).  A client created here is closed by
        :meth:`aclose`; an injected one is left to its owner.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def __aenter__(self) -> HttpTransport:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Low level
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        try:
            response = await self._client.request(method, url, json=json, headers=headers)
        except httpx.HTTPError as exc:
            raise NetworkError(f"{method} {url} failed: {exc}") from exc

        if response.status_code >= 400:
            raise NetworkError(
                f"{method} {url} returned HTTP {response.status_code}",
                retry_after=_retry_after(response),
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ChainError(f"{url} returned a non-JSON body") from exc

    @staticmethod
    def _unwrap(reply: Any) -> Any:
        if not isinstance(reply, dict):
            raise ChainError(f"Malformed JSON-RPC reply: {reply!r}")
        if reply.get("error") is not None:
            error = reply["error"]
            if isinstance(error, dict):
                raise RpcError(str(error.get("message", error)), code=error.get("code"))
            raise RpcError(str(error))
        if "result" not in reply:
            raise ChainError(f"JSON-RPC reply without result: {reply!r}")
        return reply["result"]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send_json_rpc(
        self,
        endpoint_url: str,
        method: str,
        params: Any,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        """Issue one JSON-RPC 2.0 call and return its ``result``."""
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        logger.debug(f"-> {endpoint_url} {method}")
        reply = await self._request("POST", endpoint_url, json=payload, headers=headers)
        return self._unwrap(reply)

    async def send_json_rpc_batch(
        self,
        endpoint_url: str,
        calls: Sequence[tuple[str, Any]],
        headers: Optional[dict[str, str]] = None,
    ) -> list[Union[Any, ChainError]]:
        """Issue a JSON-RPC batch.

        Returns one entry per call, in call order: the call's ``result`` or
        the :class:`ChainError` describing why that entry failed.  Only a
        failure of the batch as a whole raises.
        """
        if not calls:
            return []
        ids = [next(self._ids) for _ in calls]
        payload = [
            {"jsonrpc": "2.0", "id": call_id, "method": method, "params": params}
            for call_id, (method, params) in zip(ids, calls)
        ]
        logger.debug(f"-> {endpoint_url} batch of {len(calls)}")
        replies = await self._request("POST", endpoint_url, json=payload, headers=headers)
        if not isinstance(replies, list):
            # Some nodes answer a batch with a single error object
            self._unwrap(replies)
            raise ChainError(f"{endpoint_url} does not support JSON-RPC batches")

        by_id = {r.get("id"): r for r in replies if isinstance(r, dict)}
        results: list[Union[Any, ChainError]] = []
        for call_id in ids:
            reply = by_id.get(call_id)
            if reply is None:
                results.append(ChainError("missing reply in batch"))
                continue
            try:
                results.append(self._unwrap(reply))
            except ChainError as exc:
                results.append(exc)
        return results

    async def send_rest(
        self, url: str, headers: Optional[dict[str, str]] = None
    ) -> Any:
        """GET *url* and return the decoded JSON body."""
        logger.debug(f"-> GET {url}")
        return await self._request("GET", url, headers=headers)
