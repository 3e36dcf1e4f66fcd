"""Book of Profits - a secure, offline-first crypto portfolio tracker.

Tracks accounts across EVM, Solana and TON chains, keeps every user setting
in a single (optionally password-encrypted) data file and aggregates live
balances and prices into one portfolio view from an interactive REPL.
"""

__version__ = "0.1.0"
