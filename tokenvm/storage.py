"""Key layout and value encoding for the token chain's persistent state.

Metadata keys:
    0x0/ (tx)       [txID] => timestamp|success|units

State keys:
    0x0/ (balance)  [owner|asset] => balance
    0x1/ (assets)   [asset] => metadataLen|metadata|supply|owner|warp
    0x2/ (orders)   [txID] => in|inTick|out|outTick|remaining|owner
    0x3/ (loans)    [asset|destination] => amount
    0x4/ (height)
    0x5/ (incoming warp)
    0x6/ (outgoing warp)
"""

from __future__ import annotations

import struct
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

ID_LEN = 32
PUBLIC_KEY_LEN = 32
UINT64_LEN = 8
UINT16_LEN = 2
MAX_UINT64 = 2**64 - 1
MAX_UINT16 = 2**16 - 1

TX_PREFIX = 0x0

BALANCE_PREFIX = 0x0
ASSET_PREFIX = 0x1
ORDER_PREFIX = 0x2
LOAN_PREFIX = 0x3
HEIGHT_PREFIX = 0x4
INCOMING_WARP_PREFIX = 0x5
OUTGOING_WARP_PREFIX = 0x6

FAILURE_BYTE = 0x0
SUCCESS_BYTE = 0x1

EMPTY_ID = bytes(ID_LEN)
EMPTY_PUBLIC_KEY = bytes(PUBLIC_KEY_LEN)

_U64 = struct.Struct(">Q")
_I64 = struct.Struct(">q")
_U16 = struct.Struct(">H")

ReadState = Callable[[Sequence[bytes]], "list[bytes | None]"]


class NotFoundError(LookupError):
    """Raised when a key is absent from a database."""


class InvalidBalanceError(ValueError):
    """Raised when a balance or loan would overflow or go below zero."""


class Database(Protocol):
    """The operations the state functions need from a database."""

    def get_value(self, key: bytes) -> bytes: ...

    def insert(self, key: bytes, value: bytes) -> None: ...

    def remove(self, key: bytes) -> None: ...


class MemoryDatabase:
    """A dictionary-backed key-value store."""

    def __init__(self) -> None:
        self._data: dict[bytes, bytes] = {}

    def get_value(self, key: bytes) -> bytes:
        """Return the value under ``key`` or raise NotFoundError."""
        try:
            return self._data[bytes(key)]
        except KeyError:
            raise NotFoundError(f"not found: {bytes(key).hex()}") from None

    def insert(self, key: bytes, value: bytes) -> None:
        self._data[bytes(key)] = bytes(value)

    def remove(self, key: bytes) -> None:
        self._data.pop(bytes(key), None)

    def read_state(self, keys: Sequence[bytes]) -> list[bytes | None]:
        """Return the value for each key, or None where a key is absent."""
        return [self._data.get(bytes(key)) for key in keys]

    def __contains__(self, key: object) -> bool:
        return isinstance(key, (bytes, bytearray)) and bytes(key) in self._data

    def __len__(self) -> int:
        return len(self._data)


@dataclass(frozen=True)
class TransactionRecord:
    timestamp: int
    success: bool
    units: int


@dataclass(frozen=True)
class AssetRecord:
    metadata: bytes
    supply: int
    owner: bytes
    warp: bool


@dataclass(frozen=True)
class OrderRecord:
    in_asset: bytes
    in_tick: int
    out_asset: bytes
    out_tick: int
    remaining: int
    owner: bytes


def _fixed(value: bytes, length: int, name: str) -> bytes:
    value = bytes(value)
    if len(value) != length:
        raise ValueError(f"{name} must be {length} bytes, got {len(value)}")
    return value


def _id(value: bytes, name: str = "id") -> bytes:
    return _fixed(value, ID_LEN, name)


def _pk(value: bytes, name: str = "public key") -> bytes:
    return _fixed(value, PUBLIC_KEY_LEN, name)


def _u64(value: int, name: str) -> bytes:
    if not 0 <= value <= MAX_UINT64:
        raise ValueError(f"{name} out of uint64 range: {value}")
    return _U64.pack(value)


# Transactions


def prefix_tx_key(tx_id: bytes) -> bytes:
    """[txPrefix] + [txID]"""
    return bytes([TX_PREFIX]) + _id(tx_id, "tx id")


def store_transaction(
    db: Database, tx_id: bytes, timestamp: int, success: bool, units: int
) -> None:
    value = (
        _I64.pack(timestamp)
        + bytes([SUCCESS_BYTE if success else FAILURE_BYTE])
        + _u64(units, "units")
    )
    db.insert(prefix_tx_key(tx_id), value)


def get_transaction(db: Database, tx_id: bytes) -> TransactionRecord | None:
    """Return the stored transaction outcome, or None if it is unknown."""
    try:
        value = db.get_value(prefix_tx_key(tx_id))
    except NotFoundError:
        return None
    (timestamp,) = _I64.unpack_from(value, 0)
    success = value[UINT64_LEN] != FAILURE_BYTE
    (units,) = _U64.unpack_from(value, UINT64_LEN + 1)
    return TransactionRecord(timestamp, success, units)


# Balances


def prefix_balance_key(public_key: bytes, asset: bytes) -> bytes:
    """[balancePrefix] + [address] + [asset]"""
    return bytes([BALANCE_PREFIX]) + _pk(public_key) + _id(asset, "asset")


def _decode_amount(value: bytes | None) -> int:
    if value is None:
        return 0
    return _U64.unpack_from(value, 0)[0]


def _read(db: Database, key: bytes) -> bytes | None:
    try:
        return db.get_value(key)
    except NotFoundError:
        return None


def get_balance(db: Database, public_key: bytes, asset: bytes) -> int:
    """Return the balance, which is 0 when the account holds none."""
    return _decode_amount(_read(db, prefix_balance_key(public_key, asset)))


def get_balance_from_state(
    read_state: ReadState, public_key: bytes, asset: bytes
) -> int:
    """Balance lookup used to serve RPC queries."""
    (value,) = read_state([prefix_balance_key(public_key, asset)])
    return _decode_amount(value)


def set_balance(db: Database, public_key: bytes, asset: bytes, balance: int) -> None:
    db.insert(prefix_balance_key(public_key, asset), _u64(balance, "balance"))


def delete_balance(db: Database, public_key: bytes, asset: bytes) -> None:
    db.remove(prefix_balance_key(public_key, asset))


def add_balance(db: Database, public_key: bytes, asset: bytes, amount: int) -> None:
    key = prefix_balance_key(public_key, asset)
    balance = _decode_amount(_read(db, key))
    new_balance = balance + amount
    if amount < 0 or new_balance > MAX_UINT64:
        raise InvalidBalanceError(
            f"invalid balance: could not add balance (asset={bytes(asset).hex()}, "
            f"bal={balance}, addr={bytes(public_key).hex()}, amount={amount})"
        )
    db.insert(key, _U64.pack(new_balance))


def sub_balance(db: Database, public_key: bytes, asset: bytes, amount: int) -> None:
    key = prefix_balance_key(public_key, asset)
    balance = _decode_amount(_read(db, key))
    if amount < 0 or amount > balance:
        raise InvalidBalanceError(
            f"invalid balance: could not subtract balance (asset={bytes(asset).hex()}, "
            f"bal={balance}, addr={bytes(public_key).hex()}, amount={amount})"
        )
    new_balance = balance - amount
    if new_balance == 0:
        # An emptied account is removed rather than stored as zero.
        db.remove(key)
        return
    db.insert(key, _U64.pack(new_balance))


# Assets


def prefix_asset_key(asset: bytes) -> bytes:
    """[assetPrefix] + [asset]"""
    return bytes([ASSET_PREFIX]) + _id(asset, "asset")


def _decode_asset(value: bytes | None) -> AssetRecord | None:
    if value is None:
        return None
    (metadata_len,) = _U16.unpack_from(value, 0)
    start = UINT16_LEN
    metadata = value[start : start + metadata_len]
    start += metadata_len
    (supply,) = _U64.unpack_from(value, start)
    start += UINT64_LEN
    owner = value[start : start + PUBLIC_KEY_LEN]
    start += PUBLIC_KEY_LEN
    warp = value[start] == 0x1
    return AssetRecord(bytes(metadata), supply, bytes(owner), warp)


def get_asset(db: Database, asset: bytes) -> AssetRecord | None:
    """Return the asset's record, or None if it does not exist."""
    return _decode_asset(_read(db, prefix_asset_key(asset)))


def get_asset_from_state(read_state: ReadState, asset: bytes) -> AssetRecord | None:
    """Asset lookup used to serve RPC queries."""
    (value,) = read_state([prefix_asset_key(asset)])
    return _decode_asset(value)


def set_asset(
    db: Database,
    asset: bytes,
    metadata: bytes,
    supply: int,
    owner: bytes,
    warp: bool,
) -> None:
    metadata = bytes(metadata)
    if len(metadata) > MAX_UINT16:
        raise ValueError(f"metadata too long: {len(metadata)} bytes")
    value = (
        _U16.pack(len(metadata))
        + metadata
        + _u64(supply, "supply")
        + _pk(owner, "owner")
        + bytes([0x1 if warp else 0x0])
    )
    db.insert(prefix_asset_key(asset), value)


def delete_asset(db: Database, asset: bytes) -> None:
    db.remove(prefix_asset_key(asset))


# Orders


def prefix_order_key(tx_id: bytes) -> bytes:
    """[orderPrefix] + [txID]"""
    return bytes([ORDER_PREFIX]) + _id(tx_id, "tx id")


def set_order(
    db: Database,
    tx_id: bytes,
    in_asset: bytes,
    in_tick: int,
    out_asset: bytes,
    out_tick: int,
    supply: int,
    owner: bytes,
) -> None:
    value = (
        _id(in_asset, "in asset")
        + _u64(in_tick, "in tick")
        + _id(out_asset, "out asset")
        + _u64(out_tick, "out tick")
        + _u64(supply, "supply")
        + _pk(owner, "owner")
    )
    db.insert(prefix_order_key(tx_id), value)


def get_order(db: Database, order: bytes) -> OrderRecord | None:
    """Return the open order, or None if it does not exist."""
    value = _read(db, prefix_order_key(order))
    if value is None:
        return None
    in_asset = value[:ID_LEN]
    (in_tick,) = _U64.unpack_from(value, ID_LEN)
    out_start = ID_LEN + UINT64_LEN
    out_asset = value[out_start : out_start + ID_LEN]
    (out_tick,) = _U64.unpack_from(value, ID_LEN * 2 + UINT64_LEN)
    (remaining,) = _U64.unpack_from(value, ID_LEN * 2 + UINT64_LEN * 2)
    owner_start = ID_LEN * 2 + UINT64_LEN * 3
    owner = value[owner_start : owner_start + PUBLIC_KEY_LEN]
    return OrderRecord(
        bytes(in_asset), in_tick, bytes(out_asset), out_tick, remaining, bytes(owner)
    )


def delete_order(db: Database, order: bytes) -> None:
    db.remove(prefix_order_key(order))


# Loans


def prefix_loan_key(asset: bytes, destination: bytes) -> bytes:
    """[loanPrefix] + [asset] + [destination]"""
    return bytes([LOAN_PREFIX]) + _id(asset, "asset") + _id(destination, "destination")


def get_loan(db: Database, asset: bytes, destination: bytes) -> int:
    return _decode_amount(_read(db, prefix_loan_key(asset, destination)))


def get_loan_from_state(read_state: ReadState, asset: bytes, destination: bytes) -> int:
    """Loan lookup used to serve RPC queries."""
    (value,) = read_state([prefix_loan_key(asset, destination)])
    return _decode_amount(value)


def set_loan(db: Database, asset: bytes, destination: bytes, amount: int) -> None:
    db.insert(prefix_loan_key(asset, destination), _u64(amount, "amount"))


def add_loan(db: Database, asset: bytes, destination: bytes, amount: int) -> None:
    loan = get_loan(db, asset, destination)
    new_loan = loan + amount
    if amount < 0 or new_loan > MAX_UINT64:
        raise InvalidBalanceError(
            f"invalid balance: could not add loan (asset={bytes(asset).hex()}, "
            f"destination={bytes(destination).hex()}, amount={amount})"
        )
    set_loan(db, asset, destination, new_loan)


def sub_loan(db: Database, asset: bytes, destination: bytes, amount: int) -> None:
    loan = get_loan(db, asset, destination)
    if amount < 0 or amount > loan:
        raise InvalidBalanceError(
            f"invalid balance: could not subtract loan (asset={bytes(asset).hex()}, "
            f"destination={bytes(destination).hex()}, amount={amount})"
        )
    new_loan = loan - amount
    if new_loan == 0:
        db.remove(prefix_loan_key(asset, destination))
        return
    set_loan(db, asset, destination, new_loan)


# Chain bookkeeping keys


def height_key() -> bytes:
    return bytes([HEIGHT_PREFIX])


def incoming_warp_key_prefix(source_chain_id: bytes, msg_id: bytes) -> bytes:
    return (
        bytes([INCOMING_WARP_PREFIX])
        + _id(source_chain_id, "source chain id")
        + _id(msg_id, "message id")
    )


def outgoing_warp_key_prefix(tx_id: bytes) -> bytes:
    return bytes([OUTGOING_WARP_PREFIX]) + _id(tx_id, "tx id")