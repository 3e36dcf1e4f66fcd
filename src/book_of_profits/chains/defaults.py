"""Built-in chain table.

Every fresh data file is seeded with these chains; ``chain reset-rpc`` also
uses it to restore a chain's default endpoint.
"""

from __future__ import annotations

from book_of_profits.models import Chain, ChainFamily, NativeCurrency, chain_id_from_name


def _chain(
    family: ChainFamily,
    rpc_url: str,
    name: str,
    symbol: str,
    price_address: str,
    decimals: int = 18,
    *,
    price_chain: str | None = None,
    price_id: str = "",
) -> Chain:
    return Chain(
        id=chain_id_from_name(name),
        family=family,
        name=name,
        rpc_url=rpc_url,
        native=NativeCurrency(
            symbol=symbol,
            decimals=decimals,
            price_address=price_address,
            price_chain=price_chain,
        ),
        price_id=price_id,
    )


_EVM = ChainFamily.EVM

DEFAULT_CHAINS: dict[str, Chain] = {
    c.id: c
    for c in (
        # TON is served by tonapi.io; its native coin is priced through the
        # bridged token on Ethereum.
        _chain(
            ChainFamily.TON, "https://tonapi.io/v2", "Ton", "TON",
            "0x582d872A1B094FC48F5DE31D3B73F2D9bE47def1", 9,
            price_chain="ethereum",
        ),
        _chain(
            ChainFamily.SOLANA, "https://api.mainnet-beta.solana.com", "Solana", "SOL",
            "So11111111111111111111111111111111111111112", 9,
        ),
        _chain(_EVM, "https://eth.llamarpc.com", "Ethereum", "ETH",
               "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"),
        _chain(_EVM, "https://base.llamarpc.com", "Base", "ETH",
               "0x4200000000000000000000000000000000000006"),
        _chain(_EVM, "https://binance.llamarpc.com", "BSC", "BNB",
               "0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c"),
        _chain(_EVM, "https://arbitrum.llamarpc.com", "Arbitrum", "ETH",
               "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1"),
        _chain(_EVM, "https://avalanche.drpc.org", "Avalanche", "AVAX",
               "0xB31f66AA3C1e785363F0875A1B74E27b85FD66c7"),
        _chain(_EVM, "https://polygon.llamarpc.com", "Polygon", "POL",
               "0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270"),
        _chain(_EVM, "https://mainnet.era.zksync.io", "zkSync", "ETH",
               "0x5AEa5775959fBC2557Cc8789bC1bf90A239D9a91"),
        _chain(_EVM, "https://cronos-evm-rpc.publicnode.com", "Cronos", "CRO",
               "0x5C7F8A570d578ED84E63fdFA7b1eE72dEae1AE23"),
        _chain(_EVM, "https://fantom.drpc.org", "Fantom", "FTM",
               "0x21be370D5312f44cB42ce377BC9b8a0cEF1A4C83"),
        _chain(_EVM, "https://mainnet.optimism.io", "Optimism", "ETH",
               "0x4200000000000000000000000000000000000006"),
        _chain(_EVM, "https://linea.drpc.org", "Linea", "ETH",
               "0xe5D7C2a44FfDDf6b295A15c148167daaAf5Cf34f"),
        _chain(_EVM, "https://rpc.mantle.xyz", "Mantle", "MNT",
               "0x201EBa5CC46D216Ce6DC03F6a759e8E766e956aE"),
        _chain(_EVM, "https://metis.drpc.org", "Metis", "METIS",
               "0x75cb093E4D61d2A2e65D8e0BBb01DE8d89b53481"),
        _chain(_EVM, "https://core.drpc.org", "Core", "CORE",
               "0x40375C92d9FAf44d2f9db9Bd9ba41a3317a2404f"),
        _chain(_EVM, "https://rpc.scroll.io", "Scroll", "ETH",
               "0x5300000000000000000000000000000000000004"),
        _chain(_EVM, "https://rpc.ankr.com/iotex", "IoTeX", "IOTX",
               "0xA00744882684C3e4747faEFD68D283eA44099D03"),
        _chain(_EVM, "https://forno.celo.org", "Celo", "CELO",
               "0x471EcE3750Da237f93B8E339c536989b8978a438"),
        _chain(_EVM, "https://rpc.pulsechain.com", "PulseChain", "PLS",
               "0xA1077a294dDE1B09bB078844df40758a5D0f9a27"),
        _chain(_EVM, "https://polygon-zkevm.drpc.org", "Polygon zkEVM", "ETH",
               "0x4F9A0e7FD2Bf6067db6994CF12E4495Df938E6e9"),
        _chain(_EVM, "https://rpc.telos.net", "Telos", "TLOS",
               "0xB4B01216a5Bc8F1C8A33CD990A1239030E60C905"),
    )
}


def default_chains() -> list[Chain]:
    """Return independent copies of every built-in chain, in display order."""
    return [c.model_copy(deep=True) for c in DEFAULT_CHAINS.values()]


def get_default_chain(chain_id: str) -> Chain:
    """Get a built-in chain by id. Raises ``KeyError`` if not found."""
    if chain_id not in DEFAULT_CHAINS:
        raise KeyError(
            f"Unknown chain '{chain_id}'. Available: {list_chain_ids()}"
        )
    return DEFAULT_CHAINS[chain_id]


def list_chain_ids() -> list[str]:
    """Return the ids of all built-in chains."""
    return list(DEFAULT_CHAINS.keys())
