"""Balance aggregation engine.

One pass fans out native and token balance calls for every (enabled chain,
account) pair, waits for all of them, prices every distinct asset once and
merges the results into a :class:`PortfolioSnapshot`.  A failing call only
produces an error-marked holding; it never cancels its siblings.  The engine
reads the state it is given and never mutates or persists it.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

from book_of_profits.chains.base import UNSUPPORTED, ChainAdapter, TokenBalances
from book_of_profits.errors import ChainError, PriceUnavailable
from book_of_profits.models import Account, Chain, ChainFamily, Token
from book_of_profits.portfolio import Holding, PortfolioSnapshot

logger = logging.getLogger("book_of_profits.aggregator")

PriceLookup = Callable[[str, str], Awaitable[Optional[Decimal]]]
"""``(price chain id, token address) -> price``; may raise ``PriceUnavailable``."""

DEFAULT_CONCURRENCY = 20


@dataclass
class _Outcome:
    value: Any = None
    error: Optional[str] = None


@dataclass
class _PairResult:
    chain_index: int
    account_index: int
    chain: Chain
    account: Account
    native: _Outcome
    tokens: list[Token] = field(default_factory=list)
    balances: _Outcome = field(default_factory=_Outcome)
    warnings: list[str] = field(default_factory=list)


async def _settle(awaitable: Awaitable[Any]) -> _Outcome:
    """Run *awaitable*, turning any failure into an error outcome."""
    try:
        return _Outcome(value=await awaitable)
    except (ChainError, PriceUnavailable) as exc:
        return _Outcome(error=str(exc) or type(exc).__name__)
    except Exception as exc:
        logger.exception("Unexpected failure while fetching balances")
        return _Outcome(error=f"{type(exc).__name__}: {exc}")


class _Runner:
    """Bounded concurrency plus the retry policy for adapter calls."""

    def __init__(self, concurrency: int, retries: int, retry_backoff: float) -> None:
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self.retries = max(0, retries)
        self.retry_backoff = retry_backoff

    async def call(self, factory: Callable[[], Awaitable[Any]]) -> Any:
        attempt = 0
        while True:
            async with self._semaphore:
                try:
                    return await factory()
                except ChainError as exc:
                    if attempt >= self.retries:
                        raise
                    delay = exc.retry_after
                    if delay is None:
                        delay = self.retry_backoff * (attempt + 1)
                    logger.debug(f"Retrying in {delay:.1f}s after: {exc}")
            attempt += 1
            await asyncio.sleep(delay)


# ---------------------------------------------------------------------------
# Balance fan-out
# ---------------------------------------------------------------------------


async def _fetch_tokens(
    runner: _Runner,
    adapter: ChainAdapter,
    chain: Chain,
    account: Account,
    tracked: list[Token],
    auto_discover: bool,
) -> tuple[list[Token], _Outcome, list[str]]:
    warnings: list[str] = []
    tokens = list(tracked)
    if auto_discover:
        found = await _settle(
            runner.call(lambda: adapter.discover_tokens(chain, account.address))
        )
        if found.error:
            warnings.append(
                f"{chain.name}: token discovery failed for {account.label}: {found.error}"
            )
        elif found.value is not UNSUPPORTED:
            known = {t.address for t in tracked}
            tokens.extend(
                ref.to_token(chain.id) for ref in found.value if ref.address not in known
            )
    if not tokens:
        return tokens, _Outcome(value=TokenBalances()), warnings
    balances = await _settle(
        runner.call(lambda: adapter.get_token_balances(chain, account.address, tokens))
    )
    return tokens, balances, warnings


async def _fetch_pair(
    runner: _Runner,
    adapter: ChainAdapter,
    chain_index: int,
    chain: Chain,
    account_index: int,
    account: Account,
    tracked: list[Token],
    auto_discover: bool,
) -> _PairResult:
    native, (tokens, balances, warnings) = await asyncio.gather(
        _settle(runner.call(lambda: adapter.get_native_balance(chain, account.address))),
        _fetch_tokens(runner, adapter, chain, account, tracked, auto_discover),
    )
    if native.error:
        logger.warning(f"{chain.name}: native balance failed for {account.address}: {native.error}")
    if balances.error:
        logger.warning(f"{chain.name}: token balances failed for {account.address}: {balances.error}")
    return _PairResult(
        chain_index, account_index, chain, account, native, tokens, balances, warnings
    )


def _pair_holdings(result: _PairResult) -> list[Holding]:
    chain, account = result.chain, result.account
    common = dict(
        chain_id=chain.id,
        chain_name=chain.name,
        account=account.address,
        alias=account.alias,
    )
    holdings = [
        Holding(
            **common,
            token_address=None,
            symbol=chain.native.symbol,
            decimals=chain.native.decimals,
            amount=result.native.value,
            error=result.native.error,
        )
    ]
    balances: Optional[TokenBalances] = result.balances.value
    for token in sorted(result.tokens, key=lambda t: (t.symbol.lower(), t.address)):
        error = result.balances.error
        amount = None
        if balances is not None:
            error = balances.errors.get(token.address)
            if error is None:
                amount = balances.balances.get(token.address, 0)
        holdings.append(
            Holding(
                **common,
                token_address=token.address,
                symbol=token.symbol,
                decimals=token.decimals,
                amount=amount,
                error=error,
            )
        )
    return holdings


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


def _price_key(holding: Holding, chains: Mapping[str, Chain]) -> Optional[tuple[str, str]]:
    chain = chains[holding.chain_id]
    if not holding.is_native:
        return chain.price_chain_id, holding.token_address
    native = chain.native
    if not native.price_address:
        return None
    if native.price_chain:
        other = chains.get(native.price_chain)
        price_chain = other.price_chain_id if other is not None else native.price_chain
    else:
        price_chain = chain.price_chain_id
    return price_chain, native.price_address


async def _fetch_prices(
    keys: set[tuple[str, str]], price_lookup: PriceLookup
) -> dict[tuple[str, str], Decimal]:
    """Resolve every key once, concurrently, batching per chain when possible."""
    prices: dict[tuple[str, str], Decimal] = {}
    batch = getattr(price_lookup, "get_prices", None)
    if batch is not None:
        by_chain: dict[str, list[str]] = defaultdict(list)
        for price_chain, address in sorted(keys):
            by_chain[price_chain].append(address)
        outcomes = await asyncio.gather(
            *(_settle(batch(price_chain, addresses)) for price_chain, addresses in by_chain.items())
        )
        for price_chain, outcome in zip(by_chain, outcomes):
            if outcome.error:
                logger.warning(f"Price lookup failed for {price_chain}: {outcome.error}")
                continue
            for address, price in (outcome.value or {}).items():
                if price is not None:
                    prices[(price_chain, address)] = Decimal(price)
        return prices

    ordered = sorted(keys)
    outcomes = await asyncio.gather(*(_settle(price_lookup(*key)) for key in ordered))
    for key, outcome in zip(ordered, outcomes):
        if outcome.error is None and outcome.value is not None:
            prices[key] = Decimal(outcome.value)
    return prices


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def aggregate(
    chains: Sequence[Chain],
    accounts: Sequence[Account],
    tokens: Sequence[Token],
    price_lookup: PriceLookup,
    *,
    adapters: Mapping[ChainFamily, ChainAdapter],
    auto_discover: bool = True,
    retries: int = 0,
    retry_backoff: float = 1.0,
    concurrency: int = DEFAULT_CONCURRENCY,
) -> PortfolioSnapshot:
    """Build a portfolio snapshot of every account on every enabled chain.

    Holdings are ordered by chain, then account (both in the order given),
    then the native asset followed by tokens sorted by symbol and address, so
    repeated passes over unchanged balances produce identical output.
    """
    runner = _Runner(concurrency, retries, retry_backoff)
    chain_map = {c.id: c for c in chains}

    jobs = []
    for ci, chain in enumerate(chains):
        if not chain.enabled:
            continue
        tracked = [t for t in tokens if t.chain_id == chain.id]
        for ai, account in enumerate(accounts):
            if account.family != chain.family or account.chain_id not in (None, chain.id):
                continue
            jobs.append(
                _fetch_pair(
                    runner, adapters[chain.family], ci, chain, ai, account, tracked, auto_discover
                )
            )
    logger.info(f"Aggregating {len(jobs)} chain/account pair(s)")

    # Barrier: every pair has completed or failed past this point
    results = await asyncio.gather(*jobs)
    results.sort(key=lambda r: (r.chain_index, r.account_index))

    holdings: list[Holding] = []
    warnings: list[str] = []
    for result in results:
        holdings.extend(_pair_holdings(result))
        warnings.extend(result.warnings)

    # Only non-zero balances are worth a price request
    keys: set[tuple[str, str]] = set()
    for holding in holdings:
        if holding.ok and holding.amount:
            key = _price_key(holding, chain_map)
            if key is not None:
                keys.add(key)
    prices = await _fetch_prices(keys, price_lookup) if keys else {}

    total = Decimal(0)
    unresolved = 0
    priced: list[Holding] = []
    for holding in holdings:
        if holding.ok and holding.amount:
            key = _price_key(holding, chain_map)
            price = prices.get(key) if key is not None else None
            if price is None:
                unresolved += 1
            else:
                holding = holding.priced(price)
                total += holding.value
        priced.append(holding)

    return PortfolioSnapshot(
        holdings=priced, total=total, unresolved=unresolved, warnings=warnings
    )
