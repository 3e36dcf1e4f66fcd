"""TON: balances and jettons through the tonapi.io REST API.

The chain's ``rpc_url`` is the API base (``https://tonapi.io/v2``) and its
``api_key``, when set, is sent as a bearer token.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

from book_of_profits.chains.base import Discovery, TokenBalances, TokenRef
from book_of_profits.chains.codec import format_ton_address, parse_ton_address
from book_of_profits.errors import ChainError
from book_of_profits.models import Chain, Token
from book_of_profits.transport import HttpTransport

logger = logging.getLogger("book_of_profits.chains.ton")


def _render(address: str, *, bounceable: bool) -> Optional[str]:
    parsed = parse_ton_address(address)
    if parsed is None:
        return None
    return format_ton_address(
        parsed.workchain, parsed.hash, bounceable=bounceable, testnet=parsed.testnet
    )


class TonAdapter:
    """Adapter for The Open Network."""

    def __init__(self, transport: HttpTransport) -> None:
        self.transport = transport

    # ------------------------------------------------------------------
    # Addresses
    # ------------------------------------------------------------------

    def validate_address(self, address: str) -> bool:
        return parse_ton_address(address) is not None

    def normalize_address(self, address: str) -> Optional[str]:
        """Wallets are shown non-bounceable (``UQ...``)."""
        return _render(address, bounceable=False)

    def normalize_token_address(self, address: str) -> Optional[str]:
        """Jetton masters are shown bounceable (``EQ...``)."""
        return _render(address, bounceable=True)

    # ------------------------------------------------------------------
    # REST helpers
    # ------------------------------------------------------------------

    async def _get(self, chain: Chain, route: str) -> Any:
        url = f"{chain.rpc_url.rstrip('/')}/{route}"
        return await self.transport.send_rest(url, headers=chain.headers)

    async def _jettons(self, chain: Chain, address: str) -> dict[str, tuple[int, TokenRef]]:
        reply = await self._get(chain, f"accounts/{address}/jettons")
        holdings: dict[str, tuple[int, TokenRef]] = {}
        try:
            for entry in reply["balances"]:
                jetton = entry["jetton"]
                token_address = self.normalize_token_address(jetton["address"])
                if token_address is None:
                    logger.debug(f"skipping jetton with bad address {jetton['address']!r}")
                    continue
                ref = TokenRef(
                    address=token_address,
                    decimals=int(jetton["decimals"]),
                    symbol=jetton.get("symbol") or None,
                )
                holdings[token_address] = (int(entry["balance"]), ref)
        except (KeyError, TypeError, ValueError) as exc:
            raise ChainError(f"{chain.name}: malformed jettons reply") from exc
        return holdings

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def get_native_balance(self, chain: Chain, address: str) -> int:
        reply = await self._get(chain, f"accounts/{address}")
        try:
            return int(reply["balance"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ChainError(f"{chain.name}: malformed account reply") from exc

    async def get_token_balances(
        self, chain: Chain, address: str, tokens: Sequence[Token]
    ) -> TokenBalances:
        if not tokens:
            return TokenBalances()
        holdings = await self._jettons(chain, address)
        return TokenBalances(
            balances={
                t.address: holdings[t.address][0] if t.address in holdings else 0
                for t in tokens
            }
        )

    async def discover_tokens(self, chain: Chain, address: str) -> Discovery:
        holdings = await self._jettons(chain, address)
        return [ref for amount, ref in holdings.values() if amount > 0]

    async def get_token_metadata(self, chain: Chain, token_address: str) -> TokenRef:
        reply = await self._get(chain, f"jettons/{token_address}")
        try:
            metadata = reply["metadata"]
            decimals = int(metadata["decimals"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ChainError(f"{token_address} is not a jetton master") from exc
        return TokenRef(
            address=token_address, decimals=decimals, symbol=metadata.get("symbol") or None
        )
