"""CLI for Book of Profits - track crypto balances across chains from the terminal."""

from __future__ import annotations

import asyncio
import logging
import shlex
from decimal import Decimal
from pathlib import Path
from typing import Callable, Optional

import pydantic
import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from book_of_profits import store
from book_of_profits.config import AppConfig, default_store_path, load_config
from book_of_profits.errors import (
    AuthError,
    BopError,
    ChainError,
    CorruptionError,
    StoreIOError,
)
from book_of_profits.models import ChainFamily
from book_of_profits.portfolio import Holding, PortfolioSnapshot
from book_of_profits.session import Session

app = typer.Typer(
    name="bop",
    help="Book of Profits - a multi-chain crypto portfolio tracker.",
    invoke_without_command=True,
)
console = Console()
err_console = Console(stderr=True)

MAX_PASSWORD_ATTEMPTS = 3

_data_file: Optional[Path] = None
_config_file: Optional[Path] = None


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        console.print(f"book-of-profits {version('book-of-profits')}")
        raise typer.Exit()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    ctx: typer.Context,
    data_file: Optional[Path] = typer.Option(
        None,
        "--data-file",
        "-d",
        help="Path of the data file",
        envvar="BOP_DATA_FILE",
    ),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path of config.yaml",
        envvar="BOP_CONFIG",
    ),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        "-l",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """Book of Profits - a multi-chain crypto portfolio tracker."""
    global _data_file, _config_file
    _data_file = data_file
    _config_file = config

    app_config = _load_app_config()
    _setup_logging(log_level or app_config.log_level)

    if ctx.invoked_subcommand is None:
        repl()


def _run(coro):
    """Run an async function synchronously."""
    return asyncio.run(coro)


# ------------------------------------------------------------------
# Startup helpers
# ------------------------------------------------------------------


def _load_app_config() -> AppConfig:
    try:
        return load_config(_config_file)
    except (OSError, yaml.YAMLError, pydantic.ValidationError) as exc:
        err_console.print(f"[red]Invalid configuration:[/red] {escape(str(exc))}")
        raise typer.Exit(1)


def _store_path(config: AppConfig) -> Path:
    return _data_file or default_store_path(config)


def _open_session(config: AppConfig) -> Session:
    """Open the data file, asking for the password when it is encrypted."""
    path = _store_path(config)
    try:
        if not path.exists() or not store.is_encrypted(path):
            return Session.open(path, config=config)

        for attempt in range(1, MAX_PASSWORD_ATTEMPTS + 1):
            password = err_console.input("[bold]Password: [/bold]", password=True)
            try:
                return Session.open(path, password, config=config)
            except AuthError:
                left = MAX_PASSWORD_ATTEMPTS - attempt
                err_console.print(f"[red]Wrong password.[/red] [dim]{left} attempt(s) left[/dim]")
    except CorruptionError as exc:
        err_console.print(f"[red]Cannot read {path}:[/red] {escape(str(exc))}")
        err_console.print("[dim]The file was left untouched. Restore a backup or move it away.[/dim]")
        raise typer.Exit(1)
    except StoreIOError as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    raise typer.Exit(1)


def _prompt_new_password() -> Optional[str]:
    """Ask twice for a new password. Returns ``None`` for an empty one."""
    password = console.input("[bold]New password (empty for none): [/bold]", password=True)
    if not password:
        return None
    confirm = console.input("[bold]Confirm password: [/bold]", password=True)
    if password != confirm:
        raise AuthError("Passwords do not match")
    return password


# ------------------------------------------------------------------
# Rendering
# ------------------------------------------------------------------


def _fmt_amount(value: Optional[Decimal]) -> str:
    if value is None:
        return "-"
    text = f"{value:,.6f}".rstrip("0").rstrip(".")
    return text or "0"


def _fmt_usd(value: Optional[Decimal]) -> str:
    if value is None:
        return "[dim]n/a[/dim]"
    return f"${value:,.2f}"


def _visible(holding: Holding, min_value: Decimal) -> bool:
    if not holding.ok or not holding.amount:
        return False
    # Unpriced holdings are always shown so the lower bound is explained
    return holding.value is None or holding.value >= min_value


def render_snapshot(snapshot: PortfolioSnapshot, min_value: float) -> None:
    threshold = Decimal(str(min_value))
    table = Table(title="Balances")
    table.add_column("Chain", style="cyan")
    table.add_column("Account")
    table.add_column("Asset", style="bold")
    table.add_column("Amount", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("Value", justify="right", style="green")

    hidden = 0
    for holding in snapshot.holdings:
        if not _visible(holding, threshold):
            if holding.ok and holding.amount:
                hidden += 1
            continue
        table.add_row(
            holding.chain_name,
            holding.alias or holding.account,
            holding.symbol,
            _fmt_amount(holding.quantity),
            _fmt_usd(holding.price),
            _fmt_usd(holding.value),
        )
    console.print(table)

    for holding in snapshot.errors:
        asset = holding.symbol if holding.is_native else f"{holding.symbol} ({holding.token_address})"
        console.print(
            f"[red]{holding.chain_name}[/red] {holding.alias or holding.account} {asset}: {escape(holding.error)}"
        )
    for warning in snapshot.warnings:
        console.print(f"[yellow]{escape(warning)}[/yellow]")

    summary = f"[bold]Total:[/bold] {_fmt_usd(snapshot.total)}"
    if snapshot.is_lower_bound:
        summary += f"  [yellow](lower bound, {snapshot.unresolved} holding(s) without a price)[/yellow]"
    if hidden:
        summary += f"  [dim]{hidden} holding(s) below {_fmt_usd(threshold)} hidden[/dim]"
    console.print(summary)


# ------------------------------------------------------------------
# REPL
# ------------------------------------------------------------------


HELP_TEXT = """\
Accounts:
  account                                   list tracked accounts
  account add <family> <address> [alias] [--chain <id>]
  account rm <address|alias>
Tokens:
  token [chain]                             list tracked tokens
  token add <chain> <address> [symbol decimals]
  token rm <chain> <address>
  token scan <chain> <account>              track every token the account holds
Chains:
  chain [show]                              list chains
  chain enable|disable <id>
  chain toggle-all <family> on|off
  chain set-rpc <id> <url>
  chain reset-rpc <id>
  chain set-key <id> [key]
Other:
  balance                                   fetch and value every holding
  config                                    print the raw state (plaintext!)
  password                                  set, change or remove the password
  save                                      write changes to disk
  !!                                        repeat the last command
  exit | quit
Families: evm, sol, ton"""


def _pop_option(args: list[str], name: str) -> Optional[str]:
    if name not in args:
        return None
    index = args.index(name)
    if index + 1 >= len(args):
        raise BopError(f"{name} needs a value")
    value = args[index + 1]
    del args[index:index + 2]
    return value


class Repl:
    """Interactive command loop over one :class:`Session`."""

    def __init__(self, session: Session, loop: asyncio.AbstractEventLoop) -> None:
        self.session = session
        self.loop = loop
        self.last_command: Optional[str] = None
        self.commands: dict[str, Callable[[list[str]], Optional[bool]]] = {
            "help": self.do_help,
            "?": self.do_help,
            "account": self.do_account,
            "token": self.do_token,
            "chain": self.do_chain,
            "balance": self.do_balance,
            "config": self.do_config,
            "password": self.do_password,
            "save": self.do_save,
            "exit": self.do_exit,
            "quit": self.do_exit,
        }

    def run_async(self, coro):
        """Run *coro* on the session loop; Ctrl-C cancels it and re-raises."""
        task = self.loop.create_task(coro)
        try:
            return self.loop.run_until_complete(task)
        except KeyboardInterrupt:
            task.cancel()
            self.loop.run_until_complete(asyncio.gather(task, return_exceptions=True))
            raise

    def cmdloop(self) -> None:
        console.print("[bold]Book of Profits[/bold] [dim]- type 'help' for commands[/dim]")
        interrupted = False
        while True:
            try:
                line = console.input("[bold blue]bop>[/bold blue] ")
            except KeyboardInterrupt:
                if interrupted:
                    console.print("\n[dim]Exiting without saving.[/dim]")
                    return
                interrupted = True
                console.print("\n[dim]Press Ctrl-C again to exit (unsaved changes are lost).[/dim]")
                continue
            except EOFError:
                console.print()
                if self.do_exit([]):
                    return
                continue
            interrupted = False

            line = line.strip()
            if not line:
                continue
            if line == "!!":
                if self.last_command is None:
                    console.print("[yellow]No previous command.[/yellow]")
                    continue
                line = self.last_command
                console.print(f"[dim]{escape(line)}[/dim]")
            self.last_command = line

            if self.onecmd(line):
                return

    def onecmd(self, line: str) -> Optional[bool]:
        """Execute one command line. Returns ``True`` when the loop should stop."""
        try:
            args = shlex.split(line)
        except ValueError as exc:
            console.print(f"[red]{escape(str(exc))}[/red]")
            return None
        name, args = args[0].lower(), args[1:]
        handler = self.commands.get(name)
        if handler is None:
            console.print(f"[red]Unknown command '{name}'.[/red] Type 'help' for a list.")
            return None
        try:
            return handler(args)
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted.[/yellow]")
        except StoreIOError as exc:
            console.print(f"[red]Save failed, the previous file is intact:[/red] {escape(str(exc))}")
        except ChainError as exc:
            console.print(f"[red]Network error:[/red] {escape(str(exc))}")
        except BopError as exc:
            console.print(f"[red]{escape(str(exc))}[/red]")
        return None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def do_help(self, args: list[str]) -> None:
        console.print(HELP_TEXT, markup=False, highlight=False)

    def do_account(self, args: list[str]) -> None:
        session = self.session
        if not args or args[0] == "list":
            family = args[1] if len(args) > 1 else None
            table = Table(title="Accounts")
            table.add_column("Family", style="cyan")
            table.add_column("Address")
            table.add_column("Alias", style="bold")
            table.add_column("Chain", style="dim")
            for account in session.list_accounts(family):
                table.add_row(
                    account.family.label, account.address, account.alias or "", account.chain_id or "all"
                )
            console.print(table)
            return

        action, rest = args[0], args[1:]
        if action == "add":
            chain_id = _pop_option(rest, "--chain")
            if len(rest) not in (2, 3):
                raise BopError("Usage: account add <family> <address> [alias] [--chain <id>]")
            alias = rest[2] if len(rest) == 3 else None
            account = session.add_account(rest[0], rest[1], alias=alias, chain_id=chain_id)
            console.print(f"[green]Tracking[/green] {account.address}")
        elif action in ("rm", "remove"):
            if len(rest) != 1:
                raise BopError("Usage: account rm <address|alias>")
            account = session.remove_account(rest[0])
            console.print(f"[green]Removed[/green] {account.label}")
        else:
            raise BopError(f"Unknown account action '{action}'")

    def do_token(self, args: list[str]) -> None:
        session = self.session
        if not args or args[0] == "list" or args[0] not in ("add", "rm", "remove", "scan"):
            if args and args[0] == "list":
                args = args[1:]
            table = Table(title="Tokens")
            table.add_column("Chain", style="cyan")
            table.add_column("Symbol", style="bold")
            table.add_column("Address")
            table.add_column("Decimals", justify="right")
            table.add_column("Source", style="dim")
            for token in session.list_tokens(args[0] if args else None):
                table.add_row(token.chain_id, token.symbol, token.address, str(token.decimals), token.source)
            console.print(table)
            return

        action, rest = args[0], args[1:]
        if action == "add":
            if len(rest) == 2:
                with console.status("Reading token metadata..."):
                    token = self.run_async(session.add_token(rest[0], rest[1]))
            elif len(rest) == 4:
                try:
                    decimals = int(rest[3])
                except ValueError:
                    raise BopError(f"Invalid decimals '{rest[3]}'") from None
                token = session.add_token_manual(rest[0], rest[1], rest[2], decimals)
            else:
                raise BopError("Usage: token add <chain> <address> [symbol decimals]")
            console.print(f"[green]Tracking[/green] {token.symbol} ({token.decimals} decimals)")
        elif action in ("rm", "remove"):
            if len(rest) != 2:
                raise BopError("Usage: token rm <chain> <address>")
            token = session.remove_token(rest[0], rest[1])
            console.print(f"[green]Removed[/green] {token.symbol}")
        else:
            if len(rest) != 2:
                raise BopError("Usage: token scan <chain> <account>")
            with console.status("Scanning token accounts..."):
                added = self.run_async(session.scan_tokens(rest[0], rest[1]))
            if not added:
                console.print("[dim]No new tokens found.[/dim]")
            for token in added:
                console.print(f"[green]Tracking[/green] {token.symbol} [dim]{token.address}[/dim]")

    def _chain_table(self) -> None:
        table = Table(title="Chains")
        table.add_column("Id", style="cyan")
        table.add_column("Name")
        table.add_column("Type")
        table.add_column("Native", style="bold")
        table.add_column("RPC", style="dim")
        table.add_column("Enabled")
        for chain in self.session.list_chains():
            rpc = self.session.rpc_overrides.get(chain.id, chain.rpc_url)
            if chain.id in self.session.rpc_overrides:
                rpc += " [dim](config)[/dim]"
            if chain.api_key:
                rpc += " [yellow](key)[/yellow]"
            table.add_row(
                chain.id,
                chain.name,
                chain.family.label,
                chain.native.symbol,
                rpc,
                "[green]yes[/green]" if chain.enabled else "[red]no[/red]",
            )
        console.print(table)

    def do_chain(self, args: list[str]) -> None:
        session = self.session
        if not args or args[0] == "show":
            self._chain_table()
            return

        action, rest = args[0], args[1:]
        if action in ("enable", "disable"):
            if len(rest) != 1:
                raise BopError(f"Usage: chain {action} <id>")
            chain = session.enable_chain(rest[0]) if action == "enable" else session.disable_chain(rest[0])
            console.print(f"{chain.name} {'enabled' if chain.enabled else 'disabled'}")
        elif action == "toggle-all":
            if len(rest) != 2 or rest[1] not in ("on", "off"):
                raise BopError("Usage: chain toggle-all <family> on|off")
            family = ChainFamily.parse(rest[0])
            changed = session.set_family_enabled(family, rest[1] == "on")
            console.print(f"{changed} {family.label} chain(s) updated")
        elif action == "set-rpc":
            if len(rest) != 2:
                raise BopError("Usage: chain set-rpc <id> <url>")
            chain = session.set_rpc(rest[0], rest[1])
            console.print(f"{chain.name} now uses [cyan]{chain.rpc_url}[/cyan]")
        elif action == "reset-rpc":
            if len(rest) != 1:
                raise BopError("Usage: chain reset-rpc <id>")
            chain = session.reset_rpc(rest[0])
            console.print(f"{chain.name} reset to [cyan]{chain.rpc_url}[/cyan]")
        elif action == "set-key":
            if len(rest) not in (1, 2):
                raise BopError("Usage: chain set-key <id> [key]")
            key = rest[1] if len(rest) == 2 else console.input("[bold]API key (empty to clear): [/bold]", password=True)
            chain = session.set_api_key(rest[0], key)
            console.print(f"{chain.name} API key {'set' if chain.api_key else 'cleared'}")
        else:
            raise BopError(f"Unknown chain action '{action}'")

    def do_balance(self, args: list[str]) -> None:
        with console.status("Fetching balances..."):
            snapshot = self.run_async(self.session.show_balance())
        render_snapshot(snapshot, self.session.config.min_display_value)

    def do_config(self, args: list[str]) -> None:
        console.print("[yellow]The export below lists every tracked address in plaintext.[/yellow]")
        console.print_json(self.session.export_raw())

    def do_password(self, args: list[str]) -> None:
        password = _prompt_new_password()
        self.session.set_password(password)
        state = "set" if password else "removed"
        console.print(f"Password {state}. [dim]Run 'save' to apply it to the data file.[/dim]")

    def do_save(self, args: list[str]) -> None:
        password = None
        if self.session.has_password:
            password = console.input("[bold]Password: [/bold]", password=True)
        self.session.save(password)
        console.print(f"[green]Saved[/green] {self.session.path}")

    def do_exit(self, args: list[str]) -> bool:
        if self.session.dirty:
            try:
                answer = console.input("Save changes before exiting? [Y/n] ").strip().lower()
            except EOFError:
                console.print("\n[yellow]No answer, unsaved changes discarded.[/yellow]")
                return True
            if answer in ("", "y", "yes"):
                try:
                    self.do_save([])
                except EOFError:
                    console.print("\n[dim]Not saved.[/dim]")
                    return False
                except (AuthError, StoreIOError) as exc:
                    console.print(f"[red]{exc}[/red] [dim]Not exiting.[/dim]")
                    return False
        return True


# ------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------


@app.command()
def repl():
    """Start the interactive shell (the default command)."""
    config = _load_app_config()
    session = _open_session(config)
    loop = asyncio.new_event_loop()
    try:
        Repl(session, loop).cmdloop()
    finally:
        loop.run_until_complete(session.aclose())
        loop.close()


@app.command()
def export():
    """Print the whole state as plaintext JSON."""
    config = _load_app_config()
    session = _open_session(config)
    try:
        typer.echo(session.export_raw())
    finally:
        _run(session.aclose())


@app.command()
def init(
    password: bool = typer.Option(
        False, "--password", "-p", help="Encrypt the data file with a password"
    ),
):
    """Create the data file with the built-in chain table."""
    config = _load_app_config()
    path = _store_path(config)
    if path.exists():
        console.print(f"[yellow]{path} already exists.[/yellow]")
        raise typer.Exit(1)

    secret = None
    if password:
        try:
            secret = _prompt_new_password()
        except AuthError as exc:
            console.print(f"[red]{exc}[/red]")
            raise typer.Exit(1)

    session = Session.open(path, config=config)
    try:
        session.set_password(secret)
        session.save(secret)
    except StoreIOError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(1)
    finally:
        _run(session.aclose())

    console.print(Panel(
        f"[bold green]Data file created![/bold green]\n\n"
        f"Path: [cyan]{path}[/cyan]\n"
        f"Encrypted: {'yes' if secret else 'no'}\n\n"
        f"[dim]Run 'bop' and type 'help' to start tracking accounts.[/dim]",
        title="Book of Profits",
    ))
