"""Token prices from the DexScreener public API."""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Sequence

from book_of_profits.errors import ChainError, PriceUnavailable
from book_of_profits.transport import HttpTransport

logger = logging.getLogger("book_of_profits.pricing")

DEXSCREENER_API_URL = "https://api.dexscreener.com"
BATCH_SIZE = 30  # Max addresses per /tokens/v1 request


def _same_address(a: str, b: str) -> bool:
    if a.startswith("0x") and b.startswith("0x"):
        return a.lower() == b.lower()
    return a == b


def _liquidity(pair: dict) -> float:
    liquidity = pair.get("liquidity") or {}
    try:
        return float(liquidity.get("usd") or 0)
    except (TypeError, ValueError):
        return 0.0


def best_pair(pairs: Sequence[dict], address: str) -> Optional[dict]:
    """The most liquid pair whose base token is *address*."""
    candidates = [
        p for p in pairs
        if isinstance(p, dict)
        and _same_address((p.get("baseToken") or {}).get("address", ""), address)
    ]
    if not candidates:
        return None
    return max(candidates, key=_liquidity)


class DexScreenerPrices:
    """Price lookup used by the aggregation engine.

    Calling the instance resolves a single price; :meth:`get_prices` resolves
    many tokens of one chain with as few requests as possible.
    """

    def __init__(
        self, transport: HttpTransport, api_url: str = DEXSCREENER_API_URL
    ) -> None:
        self.transport = transport
        self.api_url = api_url.rstrip("/")

    async def _pairs(self, chain_id: str, addresses: Sequence[str]) -> list[dict]:
        url = f"{self.api_url}/tokens/v1/{chain_id}/{','.join(addresses)}"
        reply: Any = await self.transport.send_rest(url)
        if isinstance(reply, dict):
            # Legacy endpoints wrap the list in {"pairs": [...]}
            reply = reply.get("pairs") or []
        if not isinstance(reply, list):
            raise ChainError(f"Unexpected DexScreener reply for {chain_id}")
        return reply

    async def get_prices(
        self, chain_id: str, addresses: Sequence[str]
    ) -> dict[str, Decimal]:
        """Return ``{address: usd price}`` for every address that has a market.

        Addresses without a priced pair, or whose batch request failed, are
        simply absent from the result.
        """
        chunks = [
            list(addresses[i:i + BATCH_SIZE])
            for i in range(0, len(addresses), BATCH_SIZE)
        ]
        replies = await asyncio.gather(
            *(self._pairs(chain_id, chunk) for chunk in chunks),
            return_exceptions=True,
        )
        prices: dict[str, Decimal] = {}
        for chunk, reply in zip(chunks, replies):
            if isinstance(reply, ChainError):
                logger.warning(f"Price request for {len(chunk)} {chain_id} token(s) failed: {reply}")
                continue
            if isinstance(reply, BaseException):
                raise reply
            for address in chunk:
                pair = best_pair(reply, address)
                if pair is None or pair.get("priceUsd") is None:
                    continue
                try:
                    prices[address] = Decimal(str(pair["priceUsd"]))
                except InvalidOperation:
                    logger.debug(f"Unparseable price for {address}: {pair['priceUsd']!r}")
        return prices

    async def get_price(self, chain_id: str, token_address: str) -> Decimal:
        """Price of one token. Raises ``PriceUnavailable`` if it has none."""
        prices = await self.get_prices(chain_id, [token_address])
        if token_address not in prices:
            raise PriceUnavailable(f"No price for {token_address} on {chain_id}")
        return prices[token_address]

    __call__ = get_price

    async def lookup_symbol(self, chain_id: str, token_address: str) -> Optional[str]:
        """Ticker of a token as listed on DexScreener, if it is listed."""
        try:
            pairs = await self._pairs(chain_id, [token_address])
        except ChainError as exc:
            logger.debug(f"Symbol lookup failed for {token_address}: {exc}")
            return None
        pair = best_pair(pairs, token_address)
        if pair is None:
            return None
        return (pair.get("baseToken") or {}).get("symbol") or None
