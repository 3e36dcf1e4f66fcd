"""Session controller used by the CLI.

A :class:`Session` owns the in-memory state, the data file path, the current
password and the network collaborators.  Commands mutate memory only and mark
the session dirty; nothing reaches disk until :meth:`Session.save`.
"""

from __future__ import annotations

import hmac
import logging
from pathlib import Path
from typing import Optional, Union

from book_of_profits import store
from book_of_profits.aggregator import PriceLookup, aggregate
from book_of_profits.chains import UNSUPPORTED, ChainAdapter, build_adapters
from book_of_profits.chains.defaults import get_default_chain
from book_of_profits.config import AppConfig
from book_of_profits.errors import AuthError, UnsupportedOperation, ValidationError
from book_of_profits.models import (
    Account,
    Chain,
    ChainFamily,
    StateModel,
    Token,
    is_valid_url,
    new_state,
)
from book_of_profits.portfolio import PortfolioSnapshot
from book_of_profits.pricing import DexScreenerPrices
from book_of_profits.transport import HttpTransport

logger = logging.getLogger("book_of_profits.session")


def _family(value: Union[str, ChainFamily]) -> ChainFamily:
    if isinstance(value, ChainFamily):
        return value
    return ChainFamily.parse(value)


class Session:
    """Orchestrates the store, the chain adapters and the aggregation engine."""

    def __init__(
        self,
        state: StateModel,
        path: Path,
        *,
        password: Optional[str] = None,
        config: Optional[AppConfig] = None,
        transport: Optional[HttpTransport] = None,
        price_lookup: Optional[PriceLookup] = None,
        adapters: Optional[dict[ChainFamily, ChainAdapter]] = None,
    ) -> None:
        self.state = state
        self.path = path
        self.config = config or AppConfig()
        self._password = password or None
        self._owns_transport = transport is None
        self.transport = transport or HttpTransport(timeout=self.config.request_timeout)
        self.prices = price_lookup or DexScreenerPrices(self.transport, self.config.price_api_url)
        self.adapters = adapters or build_adapters(self.transport)
        self.dirty = False
        self.state.settings.password_enabled = self._password is not None
        self.rpc_overrides: dict[str, str] = {}
        self._load_rpc_overrides()

    @classmethod
    def open(
        cls,
        path: Path,
        password: Optional[str] = None,
        **kwargs,
    ) -> Session:
        """Load the data file at *path*, or start fresh if there is none.

        A fresh state is not written until :meth:`save`.  Raises
        ``AuthError`` for a wrong password and ``CorruptionError`` for an
        unreadable file.
        """
        try:
            encrypted = store.is_encrypted(path)
        except FileNotFoundError:
            logger.info(f"No data file at {path}, starting with the built-in chains")
            return cls(new_state(), path, password=password, **kwargs)
        state = store.load(path, password if encrypted else None)
        return cls(state, path, password=password if encrypted else None, **kwargs)

    async def aclose(self) -> None:
        if self._owns_transport:
            await self.transport.aclose()

    async def __aenter__(self) -> Session:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _load_rpc_overrides(self) -> None:
        for chain_id, url in self.config.rpc_overrides.items():
            try:
                chain = self.state.find_chain(chain_id)
            except ValidationError:
                logger.warning(f"Ignoring RPC override for unknown chain {chain_id!r}")
                continue
            if not is_valid_url(url):
                logger.warning(f"Ignoring invalid RPC override for {chain.id}: {url!r}")
                continue
            self.rpc_overrides[chain.id] = url

    def _endpoint(self, chain: Chain) -> Chain:
        """Return *chain* with the configured RPC override, never stored in the state."""
        url = self.rpc_overrides.get(chain.id)
        if url is None:
            return chain
        return chain.model_copy(update={"rpc_url": url})

    def _adapter(self, family: ChainFamily) -> ChainAdapter:
        return self.adapters[family]

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def add_account(
        self,
        family: Union[str, ChainFamily],
        address: str,
        alias: Optional[str] = None,
        chain_id: Optional[str] = None,
    ) -> Account:
        """Track a wallet.

        The address is validated and normalized by the family's adapter; the
        (family, address) pair and the alias must both be new.
        """
        family = _family(family)
        normalized = self._adapter(family).normalize_address(address.strip())
        if normalized is None:
            raise ValidationError(f"{address!r} is not a valid {family.label} address")

        if alias is not None:
            alias = alias.strip()
            if not alias or any(ch.isspace() for ch in alias):
                raise ValidationError("Aliases must be non-empty and contain no spaces")

        pinned = None
        if chain_id is not None:
            chain = self.state.find_chain(chain_id)
            if chain.family != family:
                raise ValidationError(f"{chain.name} is not a {family.label} chain")
            pinned = chain.id

        account = Account(family=family, address=normalized, alias=alias, chain_id=pinned)
        # Addresses and aliases share one namespace for find_account
        for existing in self.state.accounts:
            if existing.family == family and existing.address == normalized:
                raise ValidationError(f"Account {normalized} is already tracked")
            if alias is not None and existing.matches(alias):
                raise ValidationError(f"Alias {alias!r} is already in use")
            if existing.alias is not None and account.matches(existing.alias):
                raise ValidationError(f"{normalized} is already the alias of {existing.label}")

        self.state.accounts.append(account)
        self.dirty = True
        logger.info(f"Added {family.label} account {account.label}")
        return account

    def remove_account(self, ref: str) -> Account:
        """Stop tracking the account with address or alias *ref*."""
        account = self.state.find_account(ref.strip())
        self.state.accounts.remove(account)
        self.dirty = True
        logger.info(f"Removed account {account.label}")
        return account

    def list_accounts(self, family: Union[str, ChainFamily, None] = None) -> list[Account]:
        if family is None:
            return list(self.state.accounts)
        family = _family(family)
        return [a for a in self.state.accounts if a.family == family]

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def _token_address(self, chain: Chain, address: str) -> str:
        normalized = self._adapter(chain.family).normalize_token_address(address.strip())
        if normalized is None:
            raise ValidationError(f"{address!r} is not a valid {chain.name} token address")
        return normalized

    async def _lookup_symbol(self, chain: Chain, address: str) -> Optional[str]:
        lookup = getattr(self.prices, "lookup_symbol", None)
        if lookup is None:
            return None
        return await lookup(chain.price_chain_id, address)

    async def add_token(self, chain_id: str, address: str) -> Token:
        """Track a token, reading its decimals (and symbol) from the chain.

        Raises ``ChainError`` if the chain cannot describe the token; use
        :meth:`add_token_manual` in that case.
        """
        chain = self.state.find_chain(chain_id)
        normalized = self._token_address(chain, address)
        if self.state.find_token(chain.id, normalized) is not None:
            raise ValidationError(f"{normalized} is already tracked on {chain.name}")

        adapter = self._adapter(chain.family)
        ref = await adapter.get_token_metadata(self._endpoint(chain), normalized)
        symbol = ref.symbol or await self._lookup_symbol(chain, normalized)
        token = ref.to_token(chain.id, source="manual")
        if symbol:
            token.symbol = symbol
        # Another command may have added it while we were waiting on the network
        if self.state.find_token(chain.id, normalized) is not None:
            raise ValidationError(f"{normalized} is already tracked on {chain.name}")
        self.state.tokens.append(token)
        self.dirty = True
        logger.info(f"Added token {token.symbol} on {chain.name}")
        return token

    def add_token_manual(
        self, chain_id: str, address: str, symbol: str, decimals: int
    ) -> Token:
        """Track a token with user-supplied metadata (no network access)."""
        chain = self.state.find_chain(chain_id)
        normalized = self._token_address(chain, address)
        symbol = symbol.strip()
        if not symbol:
            raise ValidationError("Token symbol must not be empty")
        if isinstance(decimals, bool) or not isinstance(decimals, int) or decimals < 0:
            raise ValidationError(f"Invalid decimals {decimals!r}")
        if self.state.find_token(chain.id, normalized) is not None:
            raise ValidationError(f"{normalized} is already tracked on {chain.name}")

        token = Token(chain_id=chain.id, address=normalized, symbol=symbol, decimals=decimals)
        self.state.tokens.append(token)
        self.dirty = True
        return token

    def remove_token(self, chain_id: str, address: str) -> Token:
        chain = self.state.find_chain(chain_id)
        normalized = self._token_address(chain, address)
        token = self.state.find_token(chain.id, normalized)
        if token is None:
            raise ValidationError(f"{normalized} is not tracked on {chain.name}")
        self.state.tokens.remove(token)
        self.dirty = True
        logger.info(f"Removed token {token.symbol} from {chain.name}")
        return token

    def list_tokens(self, chain_id: Optional[str] = None) -> list[Token]:
        if chain_id is None:
            return list(self.state.tokens)
        chain = self.state.find_chain(chain_id)
        return list(self.state.tokens_of_chain(chain.id))

    async def scan_tokens(self, chain_id: str, account_ref: str) -> list[Token]:
        """Track every token *account_ref* holds on *chain_id*.

        Returns the newly added tokens.  Raises ``UnsupportedOperation`` for
        families that cannot enumerate holdings.
        """
        chain = self.state.find_chain(chain_id)
        account = self.state.find_account(account_ref.strip())
        if account.family != chain.family:
            raise ValidationError(f"{account.label} is not a {chain.family.label} account")

        found = await self._adapter(chain.family).discover_tokens(
            self._endpoint(chain), account.address
        )
        if found is UNSUPPORTED:
            raise UnsupportedOperation(
                f"{chain.family.label} chains cannot list token holdings; add tokens by address"
            )

        added: list[Token] = []
        for ref in found:
            if self.state.find_token(chain.id, ref.address) is not None:
                continue
            token = ref.to_token(chain.id)
            if ref.symbol is None:
                symbol = await self._lookup_symbol(chain, ref.address)
                if symbol:
                    token.symbol = symbol
            self.state.tokens.append(token)
            added.append(token)
        if added:
            self.dirty = True
        logger.info(f"Scan of {account.label} on {chain.name} added {len(added)} token(s)")
        return added

    # ------------------------------------------------------------------
    # Chains
    # ------------------------------------------------------------------

    def list_chains(self) -> list[Chain]:
        return list(self.state.chains)

    def _set_enabled(self, chain_id: str, enabled: bool) -> Chain:
        chain = self.state.find_chain(chain_id)
        if chain.enabled != enabled:
            chain.enabled = enabled
            self.dirty = True
        return chain

    def enable_chain(self, chain_id: str) -> Chain:
        return self._set_enabled(chain_id, True)

    def disable_chain(self, chain_id: str) -> Chain:
        return self._set_enabled(chain_id, False)

    def set_family_enabled(self, family: Union[str, ChainFamily], enabled: bool) -> int:
        """Enable or disable every chain of *family*; returns how many changed."""
        family = _family(family)
        changed = 0
        for chain in self.state.chains_of_family(family):
            if chain.enabled != enabled:
                chain.enabled = enabled
                changed += 1
        if changed:
            self.dirty = True
        return changed

    def set_rpc(self, chain_id: str, url: str) -> Chain:
        chain = self.state.find_chain(chain_id)
        url = url.strip()
        if not is_valid_url(url):
            raise ValidationError(f"{url!r} is not a valid http(s) url")
        chain.rpc_url = url
        self.rpc_overrides.pop(chain.id, None)
        self.dirty = True
        logger.info(f"{chain.name} now uses {url}")
        return chain

    def reset_rpc(self, chain_id: str) -> Chain:
        """Restore the built-in endpoint of *chain_id* and drop its API key."""
        chain = self.state.find_chain(chain_id)
        try:
            default = get_default_chain(chain.id)
        except KeyError:
            raise ValidationError(f"{chain.name} has no built-in endpoint") from None
        chain.rpc_url = default.rpc_url
        chain.api_key = None
        self.rpc_overrides.pop(chain.id, None)
        self.dirty = True
        return chain

    def set_api_key(self, chain_id: str, key: Optional[str]) -> Chain:
        chain = self.state.find_chain(chain_id)
        chain.api_key = (key or "").strip() or None
        self.dirty = True
        return chain

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def show_balance(self) -> PortfolioSnapshot:
        """Run one aggregation pass over the current state."""
        return await aggregate(
            [self._endpoint(c) for c in self.state.chains],
            list(self.state.accounts),
            list(self.state.tokens),
            self.prices,
            adapters=self.adapters,
            auto_discover=self.state.settings.auto_discover,
            retries=self.config.max_retries,
            retry_backoff=self.config.retry_backoff,
            concurrency=self.config.max_concurrency,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def export_raw(self) -> str:
        return store.export_raw(self.state)

    @property
    def has_password(self) -> bool:
        return self._password is not None

    def verify_password(self, candidate: Optional[str]) -> bool:
        if self._password is None:
            return not candidate
        if candidate is None:
            return False
        return hmac.compare_digest(candidate.encode("utf-8"), self._password.encode("utf-8"))

    def set_password(self, new: Optional[str]) -> None:
        """Change the password; ``None`` or ``""`` removes encryption.

        Takes effect on the next :meth:`save`.
        """
        self._password = new or None
        self.state.settings.password_enabled = self._password is not None
        self.dirty = True
        logger.info("Password " + ("set" if self._password else "removed"))

    def save(self, password: Optional[str] = None) -> None:
        """Write the state to disk.

        When the session is password-protected *password* must match the
        current one, otherwise ``AuthError`` is raised and nothing is written.
        """
        if self._password is not None and not self.verify_password(password):
            raise AuthError("Password does not match")
        store.persist(self.state, self.path, self._password)
        self.dirty = False
