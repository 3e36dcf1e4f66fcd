"""Chain-family adapters, selected by the ``family`` tag of a chain."""

from __future__ import annotations

from book_of_profits.chains.base import (
    UNSUPPORTED,
    ChainAdapter,
    TokenBalances,
    TokenRef,
)
from book_of_profits.chains.evm import EvmAdapter
from book_of_profits.chains.solana import SolanaAdapter
from book_of_profits.chains.ton import TonAdapter
from book_of_profits.models import ChainFamily
from book_of_profits.transport import HttpTransport

ADAPTERS: dict[ChainFamily, type] = {
    ChainFamily.EVM: EvmAdapter,
    ChainFamily.SOLANA: SolanaAdapter,
    ChainFamily.TON: TonAdapter,
}


def get_adapter(family: ChainFamily, transport: HttpTransport) -> ChainAdapter:
    """Return the adapter implementing *family*'s RPC dialect."""
    return ADAPTERS[family](transport)


def build_adapters(transport: HttpTransport) -> dict[ChainFamily, ChainAdapter]:
    """One adapter per family, sharing *transport*."""
    return {family: get_adapter(family, transport) for family in ADAPTERS}


__all__ = [
    "ADAPTERS",
    "UNSUPPORTED",
    "ChainAdapter",
    "EvmAdapter",
    "SolanaAdapter",
    "TokenBalances",
    "TokenRef",
    "TonAdapter",
    "build_adapters",
    "get_adapter",
]
