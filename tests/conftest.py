import json

import httpx
import pytest

from book_of_profits import store
from book_of_profits.chains.defaults import get_default_chain
from book_of_profits.models import Chain, ChainFamily, NativeCurrency
from book_of_profits.transport import HttpTransport

EVM_ADDRESS = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
DEAD_ADDRESS = "0x000000000000000000000000000000000000dEaD"
SOL_ADDRESS = "vines1vzrYbzLMRdu58ou5XTby4qAqVRLmqo36NKPTg"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDC_ERC20 = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"


@pytest.fixture(autouse=True)
def fast_scrypt(monkeypatch):
    """Keep key derivation cheap in tests."""
    monkeypatch.setattr(store, "SCRYPT_N", 2**4)


def make_transport(handler) -> HttpTransport:
    """HttpTransport whose requests are answered by *handler*."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpTransport(client=client)


def rpc_result(request: httpx.Request, result) -> httpx.Response:
    payload = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})


def offline(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("offline", request=request)


@pytest.fixture
def transport_factory():
    return make_transport


@pytest.fixture
def evm_chain() -> Chain:
    return get_default_chain("ethereum").model_copy(deep=True)


@pytest.fixture
def sol_chain() -> Chain:
    return get_default_chain("solana").model_copy(deep=True)


@pytest.fixture
def ton_chain() -> Chain:
    return get_default_chain("ton").model_copy(deep=True)


def make_chain(chain_id: str, family: ChainFamily = ChainFamily.EVM, symbol: str = "ETH") -> Chain:
    return Chain(
        id=chain_id,
        family=family,
        name=chain_id.title(),
        rpc_url=f"https://{chain_id}.example",
        native=NativeCurrency(symbol=symbol, decimals=18, price_address=f"w{symbol}"),
    )
