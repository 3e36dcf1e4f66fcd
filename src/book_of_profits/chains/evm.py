"""EVM chains: JSON-RPC ``eth_getBalance`` and batched ERC-20 ``balanceOf``."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError

from book_of_profits.chains.base import UNSUPPORTED, Discovery, TokenBalances, TokenRef
from book_of_profits.chains.codec import evm_word, parse_hex_quantity, to_evm_checksum
from book_of_profits.errors import ChainError
from book_of_profits.models import Chain, Token
from book_of_profits.transport import HttpTransport

logger = logging.getLogger("book_of_profits.chains.evm")

# ERC-20 function selectors
BALANCE_OF = "0x70a08231"
DECIMALS = "0x313ce567"
SYMBOL = "0x95d89b41"


def _call(to: str, data: str) -> tuple[str, list]:
    return ("eth_call", [{"to": to, "data": data}, "latest"])


def _decode_symbol(value: str) -> str:
    try:
        raw = bytes.fromhex(value[2:])
    except ValueError:
        return ""
    try:
        (symbol,) = abi_decode(["string"], raw)
        return symbol
    except (DecodingError, UnicodeDecodeError):
        # Pre-ERC-20 contracts (MKR, SAI) return a bytes32
        return raw[:32].rstrip(b"\x00").decode("utf-8", errors="replace")


class EvmAdapter:
    """Adapter for Ethereum and every EVM-compatible network."""

    def __init__(self, transport: HttpTransport) -> None:
        self.transport = transport

    # ------------------------------------------------------------------
    # Addresses
    # ------------------------------------------------------------------

    def validate_address(self, address: str) -> bool:
        return to_evm_checksum(address) is not None

    def normalize_address(self, address: str) -> Optional[str]:
        return to_evm_checksum(address)

    def normalize_token_address(self, address: str) -> Optional[str]:
        return to_evm_checksum(address)

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def get_native_balance(self, chain: Chain, address: str) -> int:
        result = await self.transport.send_json_rpc(
            chain.rpc_url, "eth_getBalance", [address, "latest"], headers=chain.headers
        )
        try:
            return parse_hex_quantity(result)
        except ValueError as exc:
            raise ChainError(f"{chain.name}: malformed eth_getBalance result") from exc

    async def get_token_balances(
        self, chain: Chain, address: str, tokens: Sequence[Token]
    ) -> TokenBalances:
        """Read every ERC-20 balance in a single JSON-RPC batch.

        A reverted or malformed ``balanceOf`` only marks that token as failed.
        """
        out = TokenBalances()
        if not tokens:
            return out
        calls = [_call(t.address, BALANCE_OF + evm_word(address)) for t in tokens]
        results = await self.transport.send_json_rpc_batch(
            chain.rpc_url, calls, headers=chain.headers
        )
        for token, result in zip(tokens, results):
            if isinstance(result, ChainError):
                out.errors[token.address] = str(result)
                continue
            try:
                out.balances[token.address] = parse_hex_quantity(result)
            except ValueError:
                out.errors[token.address] = f"malformed balanceOf result: {result!r}"
        if out.errors:
            logger.warning(
                f"{chain.name}: {len(out.errors)} token balance(s) failed for {address}"
            )
        return out

    async def discover_tokens(self, chain: Chain, address: str) -> Discovery:
        # Enumerating ERC-20 holdings needs an indexer, plain nodes can't do it
        return UNSUPPORTED

    async def get_token_metadata(self, chain: Chain, token_address: str) -> TokenRef:
        decimals, symbol = await self.transport.send_json_rpc_batch(
            chain.rpc_url,
            [_call(token_address, DECIMALS), _call(token_address, SYMBOL)],
            headers=chain.headers,
        )
        if isinstance(decimals, ChainError):
            raise ChainError(f"{token_address} is not an ERC-20 token: {decimals}")
        # Accounts without code answer eth_call with an empty "0x"
        if not isinstance(decimals, str) or decimals in ("0x", ""):
            raise ChainError(f"{token_address} is not an ERC-20 token")
        try:
            (ref_decimals,) = abi_decode(["uint8"], bytes.fromhex(decimals[2:]))
        except (ValueError, DecodingError) as exc:
            raise ChainError(f"{token_address} returned malformed decimals") from exc
        ref_symbol = None
        if isinstance(symbol, str) and len(symbol) > 2:
            ref_symbol = _decode_symbol(symbol) or None
        return TokenRef(address=token_address, decimals=ref_decimals, symbol=ref_symbol)
