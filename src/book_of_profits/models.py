"""Persisted state: chains, tracked accounts, tokens and global settings.

The :class:`StateModel` is the single object written to the data file.  It is
owned by the store, lent to the session for mutation and handed read-only to
the aggregation engine.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Iterator, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from book_of_profits.errors import ValidationError


class ChainFamily(str, Enum):
    """A class of chains sharing RPC semantics and an address format."""

    EVM = "evm"
    SOLANA = "sol"
    TON = "ton"

    @property
    def label(self) -> str:
        return {"evm": "EVM", "sol": "Solana", "ton": "Ton"}[self.value]

    @classmethod
    def parse(cls, value: str) -> ChainFamily:
        try:
            return cls(value.strip().lower())
        except ValueError:
            choices = ", ".join(f.value for f in cls)
            raise ValidationError(
                f"{value!r} is not a valid chain-type (expected one of: {choices})"
            ) from None


def chain_id_from_name(name: str) -> str:
    """``"BSC Testnet"`` -> ``"bsctestnet"``."""
    return re.sub(r"\s+", "", name).strip().lower()


def is_valid_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


# ---------------------------------------------------------------------------
# Pydantic v2 models
# ---------------------------------------------------------------------------


class NativeCurrency(BaseModel):
    """The base currency of a chain.

    ``price_address`` is the wrapped (or bridged) token used to price the
    native asset; ``price_chain`` names the chain it lives on when that is not
    the chain itself.
    """

    symbol: str
    decimals: int = Field(ge=0)
    price_address: str = ""
    price_chain: Optional[str] = None


class Chain(BaseModel):
    """A specific network of a chain family."""

    model_config = ConfigDict(validate_assignment=True)

    id: str
    family: ChainFamily
    name: str
    rpc_url: str
    api_key: Optional[str] = None  # Sent as a bearer token (tonapi.io)
    enabled: bool = True
    native: NativeCurrency
    price_id: str = ""  # Chain identifier on the price API, defaults to ``id``

    @field_validator("rpc_url")
    @classmethod
    def _check_rpc_url(cls, value: str) -> str:
        if not is_valid_url(value):
            raise ValueError(f"{value!r} is not a valid url")
        return value

    @property
    def price_chain_id(self) -> str:
        return self.price_id or self.id

    @property
    def headers(self) -> dict[str, str]:
        if self.api_key:
            return {"Authorization": f"Bearer {self.api_key}"}
        return {}

    def __str__(self) -> str:
        return f"{self.name} ({self.native.symbol})"


class Account(BaseModel):
    """A tracked wallet.

    An account belongs to a chain family and is queried on every enabled
    chain of that family unless ``chain_id`` pins it to a single chain.
    """

    family: ChainFamily
    address: str
    alias: Optional[str] = None
    chain_id: Optional[str] = None

    @property
    def label(self) -> str:
        short = f"{self.address[:6]}...{self.address[-4:]}" if len(self.address) > 12 else self.address
        return f"{short} ({self.alias})" if self.alias else short

    def matches(self, ref: str) -> bool:
        if ref == self.alias or ref == self.address:
            return True
        # EVM addresses are case-insensitive, base58 and base64 ones are not
        return self.family == ChainFamily.EVM and ref.lower() == self.address.lower()


class Token(BaseModel):
    """A trackable asset on a chain (ERC-20 contract, SPL mint, jetton master)."""

    chain_id: str
    address: str
    symbol: str
    decimals: int = Field(ge=0)
    source: str = "manual"  # "manual" | "discovered"


class Settings(BaseModel):
    """Global settings persisted with the state."""

    password_enabled: bool = False
    auto_discover: bool = True


class StateModel(BaseModel):
    """Everything the data file holds."""

    chains: list[Chain] = Field(default_factory=list)
    accounts: list[Account] = Field(default_factory=list)
    tokens: list[Token] = Field(default_factory=list)
    settings: Settings = Field(default_factory=Settings)

    # ------------------------------------------------------------------
    # Chains
    # ------------------------------------------------------------------

    def find_chain(self, chain_id: str) -> Chain:
        """Return the chain with *chain_id*. Raises ``ValidationError`` if unknown."""
        wanted = chain_id_from_name(chain_id)
        for chain in self.chains:
            if chain.id == wanted:
                return chain
        raise ValidationError(
            f"Unknown chain {chain_id!r}. Available: {[c.id for c in self.chains]}"
        )

    def enabled_chains(self) -> Iterator[Chain]:
        return (c for c in self.chains if c.enabled)

    def chains_of_family(self, family: ChainFamily) -> Iterator[Chain]:
        return (c for c in self.chains if c.family == family)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def find_account(self, ref: str) -> Account:
        """Look an account up by full address or alias."""
        for account in self.accounts:
            if account.matches(ref):
                return account
        raise ValidationError(f"Could not find account {ref!r}")

    def accounts_for_chain(self, chain: Chain) -> Iterator[Account]:
        return (
            a for a in self.accounts
            if a.family == chain.family and a.chain_id in (None, chain.id)
        )

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def tokens_of_chain(self, chain_id: str) -> Iterator[Token]:
        return (t for t in self.tokens if t.chain_id == chain_id)

    def find_token(self, chain_id: str, address: str) -> Optional[Token]:
        for token in self.tokens_of_chain(chain_id):
            if token.address == address:
                return token
        return None


def new_state() -> StateModel:
    """Return a fresh state seeded with the built-in chain table."""
    from book_of_profits.chains.defaults import default_chains

    return StateModel(chains=default_chains())
