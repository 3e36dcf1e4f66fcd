import asyncio
from decimal import Decimal

import pytest

from book_of_profits.aggregator import aggregate
from book_of_profits.chains.base import UNSUPPORTED, TokenBalances, TokenRef
from book_of_profits.errors import ChainError, NetworkError, PriceUnavailable
from book_of_profits.models import Account, ChainFamily, Token
from tests.conftest import make_chain

ALICE = Account(family=ChainFamily.EVM, address="0xA11ce", alias="alice")
BOB = Account(family=ChainFamily.EVM, address="0xB0b")


class Attempts(list):
    """Successive answers for repeated calls; the last one sticks."""


class FakeAdapter:
    """Serves canned balances; values that are exceptions are raised."""

    def __init__(self, native=None, tokens=None, discovered=None, delays=None):
        self.native = native or {}
        self.tokens = tokens or {}
        self.discovered = discovered or {}
        self.delays = delays or {}
        self.calls = []

    async def _answer(self, table, key, default):
        self.calls.append(key)
        await asyncio.sleep(self.delays.get(key, 0))
        value = table.get(key, default)
        if isinstance(value, Attempts):
            value = value.pop(0) if len(value) > 1 else value[0]
        if isinstance(value, Exception):
            raise value
        return value

    async def get_native_balance(self, chain, address):
        return await self._answer(self.native, (chain.id, address), 0)

    async def get_token_balances(self, chain, address, tokens):
        balances = await self._answer(self.tokens, (chain.id, address, "tokens"), {})
        if isinstance(balances, TokenBalances):
            return balances
        return TokenBalances(balances={t.address: balances.get(t.address, 0) for t in tokens})

    async def discover_tokens(self, chain, address):
        return await self._answer(self.discovered, (chain.id, address, "discover"), UNSUPPORTED)

    async def get_token_metadata(self, chain, token_address):
        raise NotImplementedError


class CountingPrices:
    def __init__(self, prices):
        self.prices = prices
        self.calls = []

    async def __call__(self, chain_id, address):
        self.calls.append((chain_id, address))
        if (chain_id, address) not in self.prices:
            raise PriceUnavailable(address)
        return self.prices[(chain_id, address)]


async def _run(chains, accounts, tokens, adapter, prices, **kwargs):
    return await aggregate(
        chains, accounts, tokens, prices, adapters={ChainFamily.EVM: adapter}, **kwargs
    )


@pytest.mark.asyncio
async def test_one_failing_pair_does_not_abort_the_pass():
    alpha = make_chain("alpha")
    adapter = FakeAdapter(native={
        ("alpha", ALICE.address): NetworkError("timeout"),
        ("alpha", BOB.address): 2 * 10**18,
    })
    prices = CountingPrices({("alpha", "wETH"): Decimal("1000")})

    snapshot = await _run([alpha], [ALICE, BOB], [], adapter, prices)

    assert len(snapshot.holdings) == 2
    failed, ok = snapshot.holdings
    assert failed.account == ALICE.address and failed.error == "timeout"
    assert failed.amount is None and failed.value is None
    assert ok.value == Decimal("2000")
    assert snapshot.total == Decimal("2000")
    assert snapshot.errors == [failed]


@pytest.mark.asyncio
async def test_unpriced_holding_is_excluded_from_total():
    alpha = make_chain("alpha")
    tokens = [
        Token(chain_id="alpha", address="0xpriced", symbol="AAA", decimals=6),
        Token(chain_id="alpha", address="0xunpriced", symbol="BBB", decimals=0),
    ]
    adapter = FakeAdapter(
        native={("alpha", ALICE.address): 10**18},
        tokens={("alpha", ALICE.address, "tokens"): {"0xpriced": 3_000_000, "0xunpriced": 7}},
    )
    prices = CountingPrices({
        ("alpha", "wETH"): Decimal("10"),
        ("alpha", "0xpriced"): Decimal("2"),
    })

    snapshot = await _run([alpha], [ALICE], tokens, adapter, prices)

    by_symbol = {h.symbol: h for h in snapshot.holdings}
    assert by_symbol["BBB"].amount == 7
    assert by_symbol["BBB"].value is None
    assert by_symbol["BBB"].error is None
    assert snapshot.total == Decimal("16")
    assert snapshot.total == sum(h.value for h in snapshot.holdings if h.value is not None)
    assert snapshot.unresolved == 1
    assert snapshot.is_lower_bound


@pytest.mark.asyncio
async def test_order_is_deterministic_regardless_of_completion_order():
    alpha, beta = make_chain("alpha"), make_chain("beta")
    tokens = [
        Token(chain_id="alpha", address="0xz", symbol="ZED", decimals=0),
        Token(chain_id="alpha", address="0xa", symbol="abc", decimals=0),
    ]
    adapter = FakeAdapter(
        native={("alpha", ALICE.address): 1, ("beta", BOB.address): 1},
        # The first pair finishes last
        delays={("alpha", ALICE.address): 0.05, ("beta", BOB.address): 0.0},
    )
    prices = CountingPrices({})

    first = await _run([alpha, beta], [ALICE, BOB], tokens, adapter, prices)
    adapter.delays = {("beta", BOB.address): 0.05}
    second = await _run([alpha, beta], [ALICE, BOB], tokens, adapter, prices)

    order = [(h.chain_id, h.account, h.symbol) for h in first.holdings]
    assert order == [(h.chain_id, h.account, h.symbol) for h in second.holdings]
    assert order == [
        ("alpha", ALICE.address, "ETH"),
        ("alpha", ALICE.address, "abc"),
        ("alpha", ALICE.address, "ZED"),
        ("alpha", BOB.address, "ETH"),
        ("alpha", BOB.address, "abc"),
        ("alpha", BOB.address, "ZED"),
        ("beta", ALICE.address, "ETH"),
        ("beta", BOB.address, "ETH"),
    ]


@pytest.mark.asyncio
async def test_each_asset_is_priced_once():
    alpha = make_chain("alpha")
    token = Token(chain_id="alpha", address="0xshared", symbol="SHR", decimals=0)
    adapter = FakeAdapter(
        native={("alpha", ALICE.address): 1, ("alpha", BOB.address): 1},
        tokens={
            ("alpha", ALICE.address, "tokens"): {"0xshared": 5},
            ("alpha", BOB.address, "tokens"): {"0xshared": 5},
        },
    )
    prices = CountingPrices({("alpha", "0xshared"): Decimal("1"), ("alpha", "wETH"): Decimal("1")})

    await _run([alpha], [ALICE, BOB], [token], adapter, prices)

    assert sorted(prices.calls) == [("alpha", "0xshared"), ("alpha", "wETH")]


@pytest.mark.asyncio
async def test_zero_balances_are_not_priced():
    alpha = make_chain("alpha")
    adapter = FakeAdapter(native={("alpha", ALICE.address): 0})
    prices = CountingPrices({})

    snapshot = await _run([alpha], [ALICE], [], adapter, prices)

    assert prices.calls == []
    assert snapshot.unresolved == 0
    assert snapshot.holdings[0].amount == 0
    assert snapshot.total == 0


@pytest.mark.asyncio
async def test_batch_price_lookup_is_used_per_chain():
    alpha = make_chain("alpha")

    class BatchPrices:
        def __init__(self):
            self.batches = []

        async def get_prices(self, chain_id, addresses):
            self.batches.append((chain_id, list(addresses)))
            return {"wETH": Decimal("4")}

        async def __call__(self, chain_id, address):
            raise AssertionError("single lookups should not be used")

    adapter = FakeAdapter(native={("alpha", ALICE.address): 10**18})
    prices = BatchPrices()
    snapshot = await _run([alpha], [ALICE], [], adapter, prices)

    assert prices.batches == [("alpha", ["wETH"])]
    assert snapshot.total == Decimal("4")


@pytest.mark.asyncio
async def test_native_priced_on_another_chain():
    eth = make_chain("ethereum")
    ton = make_chain("ton", ChainFamily.TON, symbol="TON")
    ton.native.price_address = "0xbridged"
    ton.native.price_chain = "ethereum"
    ton.native.decimals = 9
    wallet = Account(family=ChainFamily.TON, address="UQwallet")
    adapter = FakeAdapter(native={("ton", "UQwallet"): 2 * 10**9})
    prices = CountingPrices({("ethereum", "0xbridged"): Decimal("5")})

    snapshot = await aggregate(
        [eth, ton], [wallet], [], prices,
        adapters={ChainFamily.EVM: FakeAdapter(), ChainFamily.TON: adapter},
    )

    assert snapshot.total == Decimal("10")
    assert prices.calls == [("ethereum", "0xbridged")]


@pytest.mark.asyncio
async def test_disabled_chains_and_pinned_accounts():
    alpha, beta = make_chain("alpha"), make_chain("beta")
    beta.enabled = False
    pinned = Account(family=ChainFamily.EVM, address="0xPinned", chain_id="gamma")
    gamma = make_chain("gamma")
    adapter = FakeAdapter()

    snapshot = await _run([alpha, beta, gamma], [ALICE, pinned], [], adapter, CountingPrices({}))

    pairs = [(h.chain_id, h.account) for h in snapshot.holdings]
    assert pairs == [("alpha", ALICE.address), ("gamma", ALICE.address), ("gamma", "0xPinned")]


@pytest.mark.asyncio
async def test_token_call_failure_marks_every_token():
    alpha = make_chain("alpha")
    tokens = [
        Token(chain_id="alpha", address="0x1", symbol="ONE", decimals=0),
        Token(chain_id="alpha", address="0x2", symbol="TWO", decimals=0),
    ]
    adapter = FakeAdapter(
        native={("alpha", ALICE.address): 1},
        tokens={("alpha", ALICE.address, "tokens"): ChainError("batch refused")},
    )
    snapshot = await _run([alpha], [ALICE], tokens, adapter, CountingPrices({}))

    native, one, two = snapshot.holdings
    assert native.ok
    assert one.error == two.error == "batch refused"


@pytest.mark.asyncio
async def test_per_token_errors_are_kept():
    alpha = make_chain("alpha")
    tokens = [
        Token(chain_id="alpha", address="0x1", symbol="ONE", decimals=0),
        Token(chain_id="alpha", address="0x2", symbol="TWO", decimals=0),
    ]
    adapter = FakeAdapter(tokens={
        ("alpha", ALICE.address, "tokens"): TokenBalances(balances={"0x1": 3}, errors={"0x2": "reverted"}),
    })
    snapshot = await _run([alpha], [ALICE], tokens, adapter, CountingPrices({}))

    by_symbol = {h.symbol: h for h in snapshot.holdings}
    assert by_symbol["ONE"].amount == 3
    assert by_symbol["TWO"].error == "reverted"


@pytest.mark.asyncio
async def test_discovered_tokens_are_included():
    sol = make_chain("solana", ChainFamily.SOLANA, symbol="SOL")
    wallet = Account(family=ChainFamily.SOLANA, address="Wallet111")
    tracked = Token(chain_id="solana", address="MintTracked", symbol="TRK", decimals=0)
    adapter = FakeAdapter(
        discovered={("solana", "Wallet111", "discover"): [
            TokenRef(address="MintTracked", decimals=0),
            TokenRef(address="MintNew", decimals=2, symbol="NEW"),
        ]},
        tokens={("solana", "Wallet111", "tokens"): {"MintTracked": 1, "MintNew": 250}},
    )

    snapshot = await aggregate(
        [sol], [wallet], [tracked], CountingPrices({}), adapters={ChainFamily.SOLANA: adapter}
    )

    symbols = [h.symbol for h in snapshot.holdings]
    assert symbols == ["SOL", "NEW", "TRK"]
    assert snapshot.holdings[1].quantity == Decimal("2.5")


@pytest.mark.asyncio
async def test_discovery_failure_becomes_a_warning():
    sol = make_chain("solana", ChainFamily.SOLANA, symbol="SOL")
    wallet = Account(family=ChainFamily.SOLANA, address="Wallet111")
    adapter = FakeAdapter(discovered={("solana", "Wallet111", "discover"): NetworkError("down")})

    snapshot = await aggregate(
        [sol], [wallet], [], CountingPrices({}), adapters={ChainFamily.SOLANA: adapter}
    )

    assert len(snapshot.warnings) == 1
    assert "down" in snapshot.warnings[0]
    assert snapshot.holdings[0].ok


@pytest.mark.asyncio
async def test_transient_errors_are_retried():
    alpha = make_chain("alpha")
    adapter = FakeAdapter(native={
        ("alpha", ALICE.address): Attempts([NetworkError("busy", retry_after=0), 7]),
    })
    snapshot = await _run([alpha], [ALICE], [], adapter, CountingPrices({}), retries=1)

    assert snapshot.holdings[0].amount == 7
    assert adapter.calls.count(("alpha", ALICE.address)) == 2


@pytest.mark.asyncio
async def test_retries_are_bounded():
    alpha = make_chain("alpha")
    adapter = FakeAdapter(native={
        ("alpha", ALICE.address): Attempts([NetworkError("busy", retry_after=0), NetworkError("still busy", retry_after=0), 7]),
    })
    snapshot = await _run([alpha], [ALICE], [], adapter, CountingPrices({}), retries=1)

    assert snapshot.holdings[0].error == "still busy"


@pytest.mark.asyncio
async def test_state_is_not_mutated():
    alpha = make_chain("alpha")
    tokens = [Token(chain_id="alpha", address="0x1", symbol="ONE", decimals=0)]
    accounts = [ALICE]
    before = (alpha.model_dump(), [a.model_dump() for a in accounts], [t.model_dump() for t in tokens])

    await _run([alpha], accounts, tokens, FakeAdapter(), CountingPrices({}))

    assert before == (alpha.model_dump(), [a.model_dump() for a in accounts], [t.model_dump() for t in tokens])


class HangingAdapter(FakeAdapter):
    """Every call blocks until cancelled."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.cancelled = []

    async def _answer(self, table, key, default):
        self.calls.append(key)
        self.started.set()
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.cancelled.append(key)
            raise


@pytest.mark.asyncio
async def test_cancelling_the_pass_cancels_outstanding_calls():
    alpha, beta = make_chain("alpha"), make_chain("beta")
    tokens = [Token(chain_id="alpha", address="0x1", symbol="ONE", decimals=0)]
    accounts = [ALICE, BOB]
    before = ([c.model_dump() for c in (alpha, beta)], [a.model_dump() for a in accounts])
    adapter = HangingAdapter()
    prices = CountingPrices({})

    task = asyncio.create_task(_run([alpha, beta], accounts, tokens, adapter, prices))
    await asyncio.wait_for(adapter.started.wait(), timeout=5)
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert adapter.calls
    assert sorted(adapter.cancelled) == sorted(adapter.calls)
    assert prices.calls == []
    assert before == ([c.model_dump() for c in (alpha, beta)], [a.model_dump() for a in accounts])
