"""Token ledger state storage, bech32 addresses and a JSON-RPC query service."""

__version__ = "0.0.1"

__all__ = ["addresses", "rpc", "storage", "version"]