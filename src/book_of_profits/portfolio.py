"""Derived, never-persisted results of an aggregation pass."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal, localcontext
from typing import Optional

# Enough significant digits for any uint256 amount
_PRECISION = 80


@dataclass(frozen=True)
class Holding:
    """One (account, asset) balance.

    ``token_address`` is ``None`` for the chain's native asset.  ``amount`` is
    the raw on-chain integer; it is ``None`` when the fetch failed, in which
    case ``error`` says why.
    """

    chain_id: str
    chain_name: str
    account: str
    alias: Optional[str]
    token_address: Optional[str]
    symbol: str
    decimals: int
    amount: Optional[int]
    price: Optional[Decimal] = None
    value: Optional[Decimal] = None
    error: Optional[str] = None

    @property
    def is_native(self) -> bool:
        return self.token_address is None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def quantity(self) -> Optional[Decimal]:
        """Amount in whole units (``amount / 10**decimals``)."""
        if self.amount is None:
            return None
        with localcontext() as ctx:
            ctx.prec = _PRECISION
            return Decimal(self.amount).scaleb(-self.decimals)

    def priced(self, price: Decimal) -> Holding:
        with localcontext() as ctx:
            ctx.prec = _PRECISION
            return replace(self, price=price, value=self.quantity * price)


@dataclass
class PortfolioSnapshot:
    """The complete result of one aggregation pass.

    ``total`` only sums priced holdings; ``unresolved`` counts non-zero
    holdings whose price could not be found, so a non-zero value means the
    total is a lower bound.
    """

    holdings: list[Holding] = field(default_factory=list)
    total: Decimal = Decimal(0)
    unresolved: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def errors(self) -> list[Holding]:
        return [h for h in self.holdings if not h.ok]

    @property
    def is_lower_bound(self) -> bool:
        return self.unresolved > 0
