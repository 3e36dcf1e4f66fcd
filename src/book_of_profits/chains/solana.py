"""Solana: lamport balances and SPL token accounts over JSON-RPC."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Sequence

from book_of_profits.chains.base import Discovery, TokenBalances, TokenRef
from book_of_profits.chains.codec import decode_solana_key, is_on_ed25519_curve
from book_of_profits.errors import ChainError
from book_of_profits.models import Chain, Token
from book_of_profits.transport import HttpTransport

logger = logging.getLogger("book_of_profits.chains.solana")

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
TOKEN_PROGRAMS = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)


class SolanaAdapter:
    """Adapter for Solana clusters."""

    def __init__(self, transport: HttpTransport) -> None:
        self.transport = transport

    # ------------------------------------------------------------------
    # Addresses
    # ------------------------------------------------------------------

    def validate_address(self, address: str) -> bool:
        """A wallet is a base58 32-byte Ed25519 public key lying on the curve."""
        raw = decode_solana_key(address)
        return raw is not None and is_on_ed25519_curve(raw)

    def normalize_address(self, address: str) -> Optional[str]:
        return address if self.validate_address(address) else None

    def normalize_token_address(self, address: str) -> Optional[str]:
        # Mints are often program-derived (off-curve), only the length matters
        return address if decode_solana_key(address) is not None else None

    # ------------------------------------------------------------------
    # RPC helpers
    # ------------------------------------------------------------------

    async def _rpc(self, chain: Chain, method: str, params: list) -> Any:
        return await self.transport.send_json_rpc(
            chain.rpc_url, method, params, headers=chain.headers
        )

    async def _token_accounts(self, chain: Chain, address: str) -> dict[str, tuple[int, int]]:
        """Return ``{mint: (raw amount, decimals)}`` across both token programs."""
        replies = await asyncio.gather(*(
            self._rpc(
                chain,
                "getTokenAccountsByOwner",
                [address, {"programId": program}, {"encoding": "jsonParsed"}],
            )
            for program in TOKEN_PROGRAMS
        ))
        holdings: dict[str, tuple[int, int]] = {}
        try:
            for reply in replies:
                for entry in reply["value"]:
                    info = entry["account"]["data"]["parsed"]["info"]
                    mint = info["mint"]
                    amount = int(info["tokenAmount"]["amount"])
                    decimals = int(info["tokenAmount"]["decimals"])
                    previous, _ = holdings.get(mint, (0, decimals))
                    # One owner can hold several token accounts of a mint
                    holdings[mint] = (previous + amount, decimals)
        except (KeyError, TypeError, ValueError) as exc:
            raise ChainError(f"{chain.name}: malformed getTokenAccountsByOwner reply") from exc
        return holdings

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def get_native_balance(self, chain: Chain, address: str) -> int:
        result = await self._rpc(chain, "getBalance", [address])
        try:
            return int(result["value"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ChainError(f"{chain.name}: malformed getBalance reply") from exc

    async def get_token_balances(
        self, chain: Chain, address: str, tokens: Sequence[Token]
    ) -> TokenBalances:
        """Tracked mints without a token account are reported as zero."""
        if not tokens:
            return TokenBalances()
        holdings = await self._token_accounts(chain, address)
        return TokenBalances(
            balances={t.address: holdings.get(t.address, (0, 0))[0] for t in tokens}
        )

    async def discover_tokens(self, chain: Chain, address: str) -> Discovery:
        holdings = await self._token_accounts(chain, address)
        return [
            TokenRef(address=mint, decimals=decimals)
            for mint, (amount, decimals) in sorted(holdings.items())
            if amount > 0
        ]

    async def get_token_metadata(self, chain: Chain, token_address: str) -> TokenRef:
        result = await self._rpc(
            chain, "getAccountInfo", [token_address, {"encoding": "jsonParsed"}]
        )
        try:
            value = result["value"]
            if value is None:
                raise ChainError(f"{token_address} does not exist on {chain.name}")
            decimals = int(value["data"]["parsed"]["info"]["decimals"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ChainError(f"{token_address} is not an SPL mint") from exc
        return TokenRef(address=token_address, decimals=decimals)
