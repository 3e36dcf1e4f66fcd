import pydantic
import pytest

from book_of_profits.chains.defaults import DEFAULT_CHAINS, default_chains, get_default_chain
from book_of_profits.errors import ValidationError
from book_of_profits.models import Account, ChainFamily, chain_id_from_name, new_state
from tests.conftest import EVM_ADDRESS, SOL_ADDRESS


def test_family_parse():
    assert ChainFamily.parse(" SOL ") is ChainFamily.SOLANA
    assert ChainFamily.TON.label == "Ton"
    with pytest.raises(ValidationError):
        ChainFamily.parse("btc")


def test_chain_ids_are_slugs():
    assert chain_id_from_name("Polygon zkEVM") == "polygonzkevm"
    assert "polygonzkevm" in DEFAULT_CHAINS


def test_rpc_url_is_validated_on_assignment():
    chain = get_default_chain("ethereum").model_copy(deep=True)
    with pytest.raises(pydantic.ValidationError):
        chain.rpc_url = "localhost:8545"
    assert chain.rpc_url == get_default_chain("ethereum").rpc_url


def test_default_chains_are_independent_copies():
    first, second = default_chains(), default_chains()
    first[0].enabled = False
    assert second[0].enabled
    assert DEFAULT_CHAINS[first[0].id].enabled


def test_every_default_chain_has_a_price_source():
    for chain in default_chains():
        assert chain.native.price_address, chain.id
    ton = get_default_chain("ton")
    assert ton.native.price_chain == "ethereum"
    assert ton.native.decimals == 9


def test_account_matching():
    evm = Account(family=ChainFamily.EVM, address=EVM_ADDRESS, alias="main")
    sol = Account(family=ChainFamily.SOLANA, address=SOL_ADDRESS)
    assert evm.matches("main")
    assert evm.matches(EVM_ADDRESS.lower())
    assert sol.matches(SOL_ADDRESS)
    # base58 is case-sensitive
    assert not sol.matches(SOL_ADDRESS.lower())


def test_find_chain_accepts_display_names():
    state = new_state()
    assert state.find_chain("BSC").id == "bsc"
    with pytest.raises(ValidationError):
        state.find_chain("nowhere")
