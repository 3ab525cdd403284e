import pytest

from tokenvm import storage
from tokenvm.storage import (
    AssetRecord,
    InvalidBalanceError,
    MemoryDatabase,
    NotFoundError,
    OrderRecord,
    TransactionRecord,
)

ASSET = bytes(range(32))
OTHER_ASSET = bytes(range(32, 64))
PK = bytes([7]) * 32
OWNER = bytes([9]) * 32
TX = bytes([3]) * 32


@pytest.fixture
def db():
    return MemoryDatabase()


def test_memory_database_missing_key_raises(db):
    with pytest.raises(NotFoundError):
        db.get_value(b"missing")


def test_memory_database_read_state(db):
    db.insert(b"a", b"1")
    assert db.read_state([b"a", b"b"]) == [b"1", None]


def test_memory_database_remove(db):
    db.insert(b"a", b"1")
    db.remove(b"a")
    assert b"a" not in db
    assert len(db) == 0


def test_tx_key_layout():
    key = storage.prefix_tx_key(TX)
    assert key[0] == storage.TX_PREFIX
    assert key[1:] == TX


def test_transaction_round_trip(db):
    storage.store_transaction(db, TX, 1_700_000_000, True, 472)
    assert storage.get_transaction(db, TX) == TransactionRecord(1_700_000_000, True, 472)


def test_transaction_failure_and_negative_timestamp(db):
    storage.store_transaction(db, TX, -5, False, 0)
    assert storage.get_transaction(db, TX) == TransactionRecord(-5, False, 0)


def test_transaction_wire_bytes(db):
    storage.store_transaction(db, TX, 1, True, 2)
    value = db.get_value(storage.prefix_tx_key(TX))
    assert value == bytes.fromhex("0000000000000001" "01" "0000000000000002")


def test_missing_transaction(db):
    assert storage.get_transaction(db, TX) is None


def test_balance_key_layout():
    key = storage.prefix_balance_key(PK, ASSET)
    assert key == bytes([storage.BALANCE_PREFIX]) + PK + ASSET


def test_missing_balance_is_zero(db):
    assert storage.get_balance(db, PK, ASSET) == 0


def test_set_and_get_balance(db):
    storage.set_balance(db, PK, ASSET, 1_000_000_000_000)
    assert storage.get_balance(db, PK, ASSET) == 1_000_000_000_000
    assert storage.get_balance(db, PK, OTHER_ASSET) == 0


def test_balance_from_state(db):
    storage.set_balance(db, PK, ASSET, 5000)
    assert storage.get_balance_from_state(db.read_state, PK, ASSET) == 5000
    assert storage.get_balance_from_state(db.read_state, OWNER, ASSET) == 0


def test_delete_balance(db):
    storage.set_balance(db, PK, ASSET, 10)
    storage.delete_balance(db, PK, ASSET)
    assert storage.get_balance(db, PK, ASSET) == 0
    assert len(db) == 0


def test_add_balance(db):
    storage.add_balance(db, PK, ASSET, 15)
    storage.add_balance(db, PK, ASSET, 5)
    assert storage.get_balance(db, PK, ASSET) == 20


def test_add_balance_overflow(db):
    storage.set_balance(db, PK, ASSET, 10)
    with pytest.raises(InvalidBalanceError, match="invalid balance"):
        storage.add_balance(db, PK, ASSET, storage.MAX_UINT64)
    assert storage.get_balance(db, PK, ASSET) == 10


def test_sub_balance(db):
    storage.set_balance(db, PK, ASSET, 15)
    storage.sub_balance(db, PK, ASSET, 5)
    assert storage.get_balance(db, PK, ASSET) == 10


def test_sub_balance_to_zero_removes_record(db):
    storage.set_balance(db, PK, ASSET, 10)
    storage.sub_balance(db, PK, ASSET, 10)
    assert storage.prefix_balance_key(PK, ASSET) not in db


def test_sub_balance_underflow(db):
    storage.set_balance(db, PK, ASSET, 4)
    with pytest.raises(InvalidBalanceError, match="invalid balance"):
        storage.sub_balance(db, PK, ASSET, 5)
    assert storage.get_balance(db, PK, ASSET) == 4


def test_asset_round_trip(db):
    storage.set_asset(db, ASSET, b"blah", 15, OWNER, False)
    assert storage.get_asset(db, ASSET) == AssetRecord(b"blah", 15, OWNER, False)


def test_asset_empty_metadata_and_warp(db):
    storage.set_asset(db, ASSET, b"", 0, storage.EMPTY_PUBLIC_KEY, True)
    record = storage.get_asset(db, ASSET)
    assert record == AssetRecord(b"", 0, storage.EMPTY_PUBLIC_KEY, True)


def test_asset_from_state(db):
    storage.set_asset(db, ASSET, b"1", 10, OWNER, False)
    assert storage.get_asset_from_state(db.read_state, ASSET) == AssetRecord(
        b"1", 10, OWNER, False
    )
    assert storage.get_asset_from_state(db.read_state, OTHER_ASSET) is None


def test_delete_asset(db):
    storage.set_asset(db, ASSET, b"1", 10, OWNER, False)
    storage.delete_asset(db, ASSET)
    assert storage.get_asset(db, ASSET) is None


def test_asset_metadata_too_long(db):
    with pytest.raises(ValueError):
        storage.set_asset(db, ASSET, bytes(storage.MAX_UINT16 + 1), 0, OWNER, False)


def test_order_round_trip(db):
    storage.set_order(db, TX, ASSET, 1, OTHER_ASSET, 2, 4, OWNER)
    assert storage.get_order(db, TX) == OrderRecord(ASSET, 1, OTHER_ASSET, 2, 4, OWNER)


def test_order_key_and_delete(db):
    storage.set_order(db, TX, ASSET, 4, OTHER_ASSET, 1, 5, OWNER)
    assert storage.prefix_order_key(TX) == bytes([storage.ORDER_PREFIX]) + TX
    storage.delete_order(db, TX)
    assert storage.get_order(db, TX) is None


def test_loan_add_and_sub(db):
    storage.add_loan(db, ASSET, OTHER_ASSET, 100)
    storage.add_loan(db, ASSET, OTHER_ASSET, 10)
    assert storage.get_loan(db, ASSET, OTHER_ASSET) == 110
    storage.sub_loan(db, ASSET, OTHER_ASSET, 10)
    assert storage.get_loan_from_state(db.read_state, ASSET, OTHER_ASSET) == 100


def test_loan_sub_to_zero_removes_record(db):
    storage.set_loan(db, ASSET, OTHER_ASSET, 2900)
    storage.sub_loan(db, ASSET, OTHER_ASSET, 2900)
    assert storage.prefix_loan_key(ASSET, OTHER_ASSET) not in db
    assert storage.get_loan(db, ASSET, OTHER_ASSET) == 0


def test_loan_errors(db):
    with pytest.raises(InvalidBalanceError):
        storage.sub_loan(db, ASSET, OTHER_ASSET, 1)
    storage.set_loan(db, ASSET, OTHER_ASSET, storage.MAX_UINT64)
    with pytest.raises(InvalidBalanceError):
        storage.add_loan(db, ASSET, OTHER_ASSET, 1)


def test_bookkeeping_keys():
    assert storage.height_key() == bytes([storage.HEIGHT_PREFIX])
    assert storage.incoming_warp_key_prefix(ASSET, TX) == (
        bytes([storage.INCOMING_WARP_PREFIX]) + ASSET + TX
    )
    assert storage.outgoing_warp_key_prefix(TX) == bytes([storage.OUTGOING_WARP_PREFIX]) + TX


def test_wrong_id_length_rejected():
    with pytest.raises(ValueError):
        storage.prefix_asset_key(b"short")
    with pytest.raises(ValueError):
        storage.prefix_balance_key(b"short", ASSET)