import asyncio
import json

import pytest
from typer.testing import CliRunner

from book_of_profits import store
from book_of_profits.cli.app import Repl, app
from book_of_profits.models import new_state
from book_of_profits.session import Session
from tests.conftest import DEAD_ADDRESS, EVM_ADDRESS, make_transport

runner = CliRunner()


@pytest.fixture
def paths(tmp_path):
    return tmp_path / ".bop-data", tmp_path / "config.yaml"


def _invoke(paths, *args, input=None):
    data_file, config = paths
    return runner.invoke(
        app, ["--data-file", str(data_file), "--config", str(config), *args], input=input
    )


def test_init_creates_plaintext_store(paths):
    result = _invoke(paths, "init")
    assert result.exit_code == 0, result.output
    assert paths[0].exists()
    assert not store.is_encrypted(paths[0])

    again = _invoke(paths, "init")
    assert again.exit_code == 1


def test_export_prints_raw_state(paths):
    _invoke(paths, "init")
    result = _invoke(paths, "export")
    assert result.exit_code == 0, result.output
    exported = json.loads(result.stdout)
    assert any(chain["id"] == "ethereum" for chain in exported["chains"])


def test_corrupt_store_exits_with_error(paths):
    paths[0].write_text("garbage")
    result = _invoke(paths, "export")
    assert result.exit_code == 1


def test_invalid_config_exits_with_error(paths):
    paths[1].write_text("max_retries: -5\n")
    result = _invoke(paths, "export")
    assert result.exit_code == 1


def test_repl_mutations_and_save(paths):
    commands = "\n".join([
        f"account add evm {EVM_ADDRESS.lower()} main",
        "chain disable bsc",
        "token add ethereum 0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48 USDC 6",
        "account",
        "save",
        "exit",
    ]) + "\n"
    result = _invoke(paths, "repl", input=commands)
    assert result.exit_code == 0, result.output

    state = store.load(paths[0])
    assert state.accounts[0].address == EVM_ADDRESS
    assert state.accounts[0].alias == "main"
    assert state.find_chain("bsc").enabled is False
    assert state.tokens[0].symbol == "USDC"


def test_repl_is_the_default_command(paths):
    result = _invoke(paths, input="help\nexit\n")
    assert result.exit_code == 0, result.output
    assert "account add" in result.output


def test_exit_without_saving(paths):
    commands = f"account add evm {EVM_ADDRESS} main\nexit\nn\n"
    result = _invoke(paths, input=commands)
    assert result.exit_code == 0, result.output
    assert not paths[0].exists()


def test_exit_with_save(paths):
    commands = f"account add evm {EVM_ADDRESS} main\nquit\ny\n"
    result = _invoke(paths, input=commands)
    assert result.exit_code == 0, result.output
    assert store.load(paths[0]).accounts[0].alias == "main"


def test_bad_input_keeps_the_repl_running(paths):
    commands = "\n".join([
        "account add evm 0x1234",
        "chain set-rpc ethereum not-a-url",
        "frobnicate",
        'account add evm "unterminated',
        "!!",
        "exit",
    ]) + "\n"
    result = _invoke(paths, input=commands)
    assert result.exit_code == 0, result.output
    assert "not a valid EVM address" in result.output
    assert "Unknown command" in result.output
    assert not paths[0].exists()


def test_repeat_last_command(paths):
    commands = "chain disable bsc\n!!\nchain enable base\n!!\nsave\nexit\n"
    result = _invoke(paths, input=commands)
    assert result.exit_code == 0, result.output
    state = store.load(paths[0])
    assert state.find_chain("bsc").enabled is False
    assert state.find_chain("base").enabled is True


def test_eof_at_the_save_prompt_discards_changes(paths):
    result = _invoke(paths, input=f"account add evm {EVM_ADDRESS} main\n")
    assert result.exit_code == 0, result.output
    assert "discarded" in result.output
    assert not paths[0].exists()


def _interrupt():
    raise KeyboardInterrupt


def test_ctrl_c_during_balance_cancels_requests(paths):
    started, cancelled = [], []

    async def handler(request):
        started.append(request.url.host)
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            cancelled.append(request.url.host)
            raise

    loop = asyncio.new_event_loop()
    session = Session(new_state(), paths[0], transport=make_transport(handler))
    try:
        session.add_account("evm", DEAD_ADDRESS, alias="burn")
        before = session.state.model_dump()

        loop.call_later(0.2, _interrupt)
        assert Repl(session, loop).onecmd("balance") is None

        assert started
        assert sorted(cancelled) == sorted(started)
        assert session.state.model_dump() == before
        assert not paths[0].exists()
    finally:
        loop.run_until_complete(session.aclose())
        loop.close()
