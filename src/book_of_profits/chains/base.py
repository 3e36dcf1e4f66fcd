"""The capability set every chain-family adapter implements."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol, Sequence, Union

from book_of_profits.models import Chain, Token


class _Unsupported(Enum):
    UNSUPPORTED = "unsupported"

    def __bool__(self) -> bool:
        return False


UNSUPPORTED = _Unsupported.UNSUPPORTED
"""Returned by adapters for capabilities their chain family cannot offer."""


@dataclass(frozen=True)
class TokenRef:
    """A token as reported by a chain: address, decimals and (maybe) symbol."""

    address: str
    decimals: int
    symbol: Optional[str] = None

    def to_token(self, chain_id: str, source: str = "discovered") -> Token:
        symbol = self.symbol or f"{self.address[:4]}..{self.address[-4:]}"
        return Token(
            chain_id=chain_id,
            address=self.address,
            symbol=symbol,
            decimals=self.decimals,
            source=source,
        )


@dataclass
class TokenBalances:
    """Raw token balances of one account, keyed by token address.

    ``errors`` holds the tokens whose balance could not be read; they are
    absent from ``balances``.
    """

    balances: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)


Discovery = Union[list[TokenRef], _Unsupported]


class ChainAdapter(Protocol):
    """Uniform call surface over one chain family's RPC dialect.

    Adapters issue requests through the shared transport and never retry;
    failures surface as :class:`~book_of_profits.errors.ChainError`.
    """

    def validate_address(self, address: str) -> bool: ...

    def normalize_address(self, address: str) -> Optional[str]: ...

    def normalize_token_address(self, address: str) -> Optional[str]: ...

    async def get_native_balance(self, chain: Chain, address: str) -> int: ...

    async def get_token_balances(
        self, chain: Chain, address: str, tokens: Sequence[Token]
    ) -> TokenBalances: ...

    async def discover_tokens(self, chain: Chain, address: str) -> Discovery: ...

    async def get_token_metadata(self, chain: Chain, token_address: str) -> TokenRef: ...
