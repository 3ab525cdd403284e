# tokenvm

Building blocks for a token ledger: the key-value layout of its state, the
bech32 encoding of account addresses, and a small JSON-RPC service and client
that read balances, assets, orders, loans and transaction outcomes.

It uses only the standard library.

## Install

```
pip install tokenvm
```

For running the tests:

```
pip install "tokenvm[test]"
pytest
```

## State storage: `tokenvm.storage`

Every record lives under a one-byte prefix followed by fixed-width
identifiers (32-byte ids and 32-byte public keys). Integers are stored
big-endian.

| prefix | key                        | value                                            |
|--------|----------------------------|--------------------------------------------------|
| `0x0`  | owner, asset               | balance (uint64)                                 |
| `0x1`  | asset                      | metadata length (uint16), metadata, supply, owner, warp flag |
| `0x2`  | order transaction id       | in asset, in tick, out asset, out tick, remaining, owner |
| `0x3`  | asset, destination         | loan amount (uint64)                             |
| `0x4`  | (none) — `height_key()`    | height                                           |
| `0x5`  | source chain id, message id — `incoming_warp_key_prefix` | incoming warp |
| `0x6`  | transaction id — `outgoing_warp_key_prefix` | outgoing warp                 |

Transaction outcomes use their own key, `prefix_tx_key` (prefix `0x0` plus the
transaction id), and are meant for a metadata store kept apart from the
balances; `store_transaction` writes timestamp, success flag and units, and
`get_transaction` returns a `TransactionRecord` or `None`.

The functions work on any object with `get_value(key)` (raising
`NotFoundError` for a missing key), `insert(key, value)` and `remove(key)`.
`MemoryDatabase` is a dictionary-backed one:

```python
from tokenvm.storage import MemoryDatabase, add_balance, sub_balance, get_balance

db = MemoryDatabase()
owner = bytes(32)
asset = bytes(32)

add_balance(db, owner, asset, 100)
sub_balance(db, owner, asset, 40)
assert get_balance(db, owner, asset) == 60
```

- A missing balance or loan reads as `0`.
- A balance or loan that `sub_balance` / `sub_loan` brings to zero is removed
  rather than stored as zero.
- Going above 2**64 − 1 or below zero raises `InvalidBalanceError`.
- Ids and keys of the wrong length, and values out of range, raise `ValueError`.

Assets and orders are stored with `set_asset` / `get_asset` / `delete_asset`
and `set_order` / `get_order` / `delete_order`; the getters return an
`AssetRecord` or `OrderRecord`, or `None` when nothing is stored. Loans use
`set_loan`, `get_loan`, `add_loan` and `sub_loan`.

For answering queries there are `get_balance_from_state`,
`get_asset_from_state` and `get_loan_from_state`, which take a read function
mapping a list of keys to a list of values (`None` for absent keys), such as
`MemoryDatabase.read_state`.

## Addresses: `tokenvm.addresses`

`address(public_key, hrp)` encodes a 32-byte public key as a bech32 address
with the human-readable prefix `hrp`; `parse_address(text, hrp)` decodes it
back, raising `AddressError` on a bad checksum, wrong prefix, mixed case or
wrong length.

```python
from tokenvm.addresses import address, parse_address

addr = address(bytes(32), "token")
assert parse_address(addr, "token") == bytes(32)
```

## Version: `tokenvm.version`

`VERSION` is a `SemanticVersion(major=0, minor=0, patch=1)`; `str(VERSION)`
gives `"v0.0.1"`.

## JSON-RPC: `tokenvm.rpc`

`JSONRPCServer(controller, hrp)` answers JSON-RPC 2.0 requests for the methods
`tokenvm.genesis`, `tokenvm.tx`, `tokenvm.asset`, `tokenvm.balance`,
`tokenvm.orders` and `tokenvm.loan`. Ids travel as checksummed base58 strings,
metadata as base64, and owners as bech32 addresses under `hrp`. `orders`
returns at most 128 orders. The controller is any object with the methods of
the `Controller` protocol:

```python
from tokenvm import storage
from tokenvm.rpc import JSONRPCServer

db = storage.MemoryDatabase()

class Chain:
    def genesis(self):
        return {"hrp": "token"}
    def get_transaction(self, tx_id):
        return storage.get_transaction(db, tx_id)
    def get_asset_from_state(self, asset):
        return storage.get_asset_from_state(db.read_state, asset)
    def get_balance_from_state(self, public_key, asset):
        return storage.get_balance_from_state(db.read_state, public_key, asset)
    def orders(self, pair, limit):
        return []
    def get_loan_from_state(self, asset, destination):
        return storage.get_loan_from_state(db.read_state, asset, destination)

server = JSONRPCServer(Chain(), "token")
```

`server.handle(body)` turns one request body into a response body;
`server.wsgi_app` serves POST requests as a WSGI application, for example with
`wsgiref.simple_server.make_server("localhost", 9650, server.wsgi_app)`.
Unknown transactions and assets come back as the errors `tx not found` and
`asset not found`.

`JSONRPCClient(uri, chain_id, timeout=10.0)` posts to `uri` + `/tokenapi`:

```python
from tokenvm.rpc import JSONRPCClient

client = JSONRPCClient("http://localhost:9650/ext/bc/mychain", chain_id=bytes(32))
tx_id = bytes(32)
status = client.tx(tx_id)
if status is not None and status.success:
    print("confirmed at", status.timestamp)

client.wait_for_balance("token1...", bytes(32), minimum=5000, timeout=60)
```

- `tx` returns a `TxStatus` and `asset` an `AssetInfo`, or `None` when the
  server does not know the item; other failures raise `RPCError`.
- `genesis` fetches the genesis document once and caches it.
- `wait_for_balance` and `wait_for_transaction` poll every `interval` seconds
  (0.5 by default) and raise `TimeoutError` if `timeout` passes;
  `wait_for_transaction` returns whether the transaction succeeded.

## What this package does not do

It does not execute transactions, build or verify blocks, match orders, take
part in consensus or sign anything. It has no command and runs no server
process of its own: it supplies the storage layout, the address encoding and
the query service, and state must be filled in by the code that uses them.