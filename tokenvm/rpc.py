"""JSON-RPC service and client for querying token chain state."""

from __future__ import annotations

import base64
import dataclasses
import hashlib
import itertools
import json
import logging
import time
import urllib.error
import urllib.request
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from .addresses import address, parse_address
from .storage import EMPTY_ID, ID_LEN, AssetRecord, TransactionRecord

JSONRPC_ENDPOINT = "/tokenapi"
SERVICE_NAME = "tokenvm"
ORDERS_TO_SEND = 128

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
SERVER_ERROR = -32000

log = logging.getLogger(__name__)

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_B58_INDEX = {char: index for index, char in enumerate(_B58_ALPHABET)}
_CB58_CHECKSUM_LEN = 4


class RPCError(Exception):
    """An error reported by, or while talking to, the JSON-RPC service."""

    default_message = "rpc error"

    def __init__(self, message: str | None = None, code: int = SERVER_ERROR) -> None:
        self.message = message if message is not None else self.default_message
        self.code = code
        super().__init__(self.message)


class TxNotFoundError(RPCError):
    default_message = "tx not found"


class AssetNotFoundError(RPCError):
    default_message = "asset not found"


class Controller(Protocol):
    """The chain state the JSON-RPC service answers queries from."""

    def genesis(self) -> Any:
        """Return the chain's genesis document."""
        ...

    def get_transaction(self, tx_id: bytes) -> TransactionRecord | None:
        """Return the stored outcome of a transaction, or None."""
        ...

    def get_asset_from_state(self, asset: bytes) -> AssetRecord | None:
        """Return an asset's record, or None if it does not exist."""
        ...

    def get_balance_from_state(self, public_key: bytes, asset: bytes) -> int:
        """Return the balance a key holds of an asset."""
        ...

    def orders(self, pair: str, limit: int) -> Iterable[Any]:
        """Return up to ``limit`` open orders for a trading pair."""
        ...

    def get_loan_from_state(self, asset: bytes, destination: bytes) -> int:
        """Return the amount of an asset loaned to a destination chain."""
        ...


@dataclass(frozen=True)
class TxStatus:
    success: bool
    timestamp: int
    units: int


@dataclass(frozen=True)
class AssetInfo:
    metadata: bytes
    supply: int
    owner: str
    warp: bool


def _cb58_encode(data: bytes) -> str:
    payload = data + hashlib.sha256(data).digest()[-_CB58_CHECKSUM_LEN:]
    number = int.from_bytes(payload, "big")
    digits: list[str] = []
    while number:
        number, remainder = divmod(number, 58)
        digits.append(_B58_ALPHABET[remainder])
    zeros = len(payload) - len(payload.lstrip(b"\0"))
    return "1" * zeros + "".join(reversed(digits))


def _cb58_decode(text: str) -> bytes:
    number = 0
    for char in text:
        try:
            number = number * 58 + _B58_INDEX[char]
        except KeyError:
            raise ValueError(f"invalid base58 character {char!r}") from None
    zeros = len(text) - len(text.lstrip("1"))
    body = number.to_bytes((number.bit_length() + 7) // 8, "big")
    payload = b"\0" * zeros + body
    if len(payload) < _CB58_CHECKSUM_LEN:
        raise ValueError("encoded id too short")
    data, checksum = payload[:-_CB58_CHECKSUM_LEN], payload[-_CB58_CHECKSUM_LEN:]
    if hashlib.sha256(data).digest()[-_CB58_CHECKSUM_LEN:] != checksum:
        raise ValueError("invalid id checksum")
    return data


def _encode_id(value: bytes) -> str:
    value = bytes(value)
    if len(value) != ID_LEN:
        raise ValueError(f"id must be {ID_LEN} bytes, got {len(value)}")
    return _cb58_encode(value)


def _decode_id(value: Any) -> bytes:
    if value is None:
        return EMPTY_ID
    if not isinstance(value, str):
        raise RPCError(f"id must be a string, got {type(value).__name__}", INVALID_PARAMS)
    try:
        decoded = _cb58_decode(value)
    except ValueError as exc:
        raise RPCError(f"invalid id {value!r}: {exc}", INVALID_PARAMS) from None
    if len(decoded) != ID_LEN:
        raise RPCError(f"invalid id {value!r}: wrong length", INVALID_PARAMS)
    return decoded


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (bytes, bytearray)):
        return base64.b64encode(bytes(obj)).decode("ascii")
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    raise TypeError(f"cannot encode {type(obj).__name__} as JSON")


def _dumps(payload: Any) -> bytes:
    return json.dumps(payload, default=_json_default).encode("utf-8")


class JSONRPCServer:
    """Answers token chain queries in JSON-RPC 2.0 form."""

    def __init__(self, controller: Controller, hrp: str) -> None:
        self._controller = controller
        self._hrp = hrp
        self._methods: dict[str, Callable[[dict[str, Any]], Any]] = {
            "genesis": self.genesis,
            "tx": self.tx,
            "asset": self.asset,
            "balance": self.balance,
            "orders": self.orders,
            "loan": self.loan,
        }

    def genesis(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"genesis": self._controller.genesis()}

    def tx(self, params: dict[str, Any]) -> dict[str, Any]:
        record = self._controller.get_transaction(_decode_id(params.get("txId")))
        if record is None:
            raise TxNotFoundError()
        return {
            "timestamp": record.timestamp,
            "success": record.success,
            "units": record.units,
        }

    def asset(self, params: dict[str, Any]) -> dict[str, Any]:
        record = self._controller.get_asset_from_state(_decode_id(params.get("asset")))
        if record is None:
            raise AssetNotFoundError()
        return {
            "metadata": base64.b64encode(record.metadata).decode("ascii"),
            "supply": record.supply,
            "owner": address(record.owner, self._hrp),
            "warp": record.warp,
        }

    def balance(self, params: dict[str, Any]) -> dict[str, Any]:
        text = params.get("address", "")
        if not isinstance(text, str):
            raise RPCError("address must be a string", INVALID_PARAMS)
        public_key = parse_address(text, self._hrp)
        asset = _decode_id(params.get("asset"))
        return {"amount": self._controller.get_balance_from_state(public_key, asset)}

    def orders(self, params: dict[str, Any]) -> dict[str, Any]:
        pair = params.get("pair", "")
        if not isinstance(pair, str):
            raise RPCError("pair must be a string", INVALID_PARAMS)
        return {"orders": list(self._controller.orders(pair, ORDERS_TO_SEND))}

    def loan(self, params: dict[str, Any]) -> dict[str, Any]:
        asset = _decode_id(params.get("asset"))
        destination = _decode_id(params.get("destination"))
        return {"amount": self._controller.get_loan_from_state(asset, destination)}

    def _lookup(self, method: str) -> Callable[[dict[str, Any]], Any]:
        service, _, name = method.partition(".")
        handler = None
        if service == SERVICE_NAME and name:
            handler = self._methods.get(name[:1].lower() + name[1:])
        if handler is None:
            raise RPCError(f"rpc: can't find method {method!r}", METHOD_NOT_FOUND)
        return handler

    @staticmethod
    def _params(raw: Any) -> dict[str, Any]:
        if raw is None:
            return {}
        if isinstance(raw, list):
            raw = raw[0] if raw else {}
        if not isinstance(raw, dict):
            raise RPCError("params must be an object", INVALID_PARAMS)
        return raw

    @staticmethod
    def _error(request_id: Any, error: RPCError) -> bytes:
        return _dumps(
            {
                "jsonrpc": "2.0",
                "error": {"code": error.code, "message": error.message, "data": None},
                "id": request_id,
            }
        )

    def handle(self, body: bytes | str) -> bytes:
        """Process one JSON-RPC request body and return the response body."""
        try:
            request = json.loads(body)
        except (ValueError, UnicodeDecodeError):
            return self._error(None, RPCError("parse error", PARSE_ERROR))
        if not isinstance(request, dict) or not isinstance(request.get("method"), str):
            return self._error(None, RPCError("invalid request", INVALID_REQUEST))
        request_id = request.get("id")
        try:
            handler = self._lookup(request["method"])
            result = handler(self._params(request.get("params")))
        except RPCError as exc:
            return self._error(request_id, exc)
        except Exception as exc:  # every failure becomes an error response
            return self._error(request_id, RPCError(str(exc), SERVER_ERROR))
        return _dumps({"jsonrpc": "2.0", "result": result, "id": request_id})

    def wsgi_app(self, environ: dict[str, Any], start_response: Callable[..., Any]):
        """Serve requests POSTed to the endpoint as a WSGI application."""
        if environ.get("REQUEST_METHOD") != "POST":
            start_response(
                "405 Method Not Allowed",
                [("Content-Type", "text/plain"), ("Allow", "POST")],
            )
            return [b"method not allowed"]
        try:
            length = int(environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            length = 0
        body = environ["wsgi.input"].read(length) if length > 0 else b""
        response = self.handle(body)
        start_response(
            "200 OK",
            [("Content-Type", "application/json"), ("Content-Length", str(len(response)))],
        )
        return [response]


class JSONRPCClient:
    """Queries a token chain's JSON-RPC service."""

    def __init__(self, uri: str, chain_id: bytes, timeout: float = 10.0) -> None:
        self.url = uri.removesuffix("/") + JSONRPC_ENDPOINT
        self.chain_id = bytes(chain_id)
        self._timeout = timeout
        self._ids = itertools.count(1)
        self._genesis: Any = None

    def _call(self, method: str, params: dict[str, Any] | None) -> dict[str, Any]:
        payload = _dumps(
            {
                "jsonrpc": "2.0",
                "method": f"{SERVICE_NAME}.{method}",
                "params": params,
                "id": next(self._ids),
            }
        )
        request = urllib.request.Request(
            self.url,
            data=payload,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                body = response.read()
        except urllib.error.HTTPError as exc:
            body = exc.read()
            if not body:
                raise RPCError(f"http status {exc.code}") from exc
        try:
            reply = json.loads(body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise RPCError(f"malformed response: {exc}") from exc
        error = reply.get("error")
        if error:
            raise RPCError(str(error.get("message", "")), int(error.get("code", SERVER_ERROR)))
        return reply.get("result") or {}

    def genesis(self) -> Any:
        """Return the genesis document, fetching it once."""
        if self._genesis is None:
            self._genesis = self._call("genesis", None).get("genesis")
        return self._genesis

    def tx(self, tx_id: bytes) -> TxStatus | None:
        """Return a transaction's outcome, or None if it is not known."""
        try:
            result = self._call("tx", {"txId": _encode_id(tx_id)})
        except RPCError as exc:
            # The error crosses the wire as text, so match on its message.
            if TxNotFoundError.default_message in str(exc):
                return None
            raise
        return TxStatus(
            success=bool(result.get("success")),
            timestamp=int(result.get("timestamp", 0)),
            units=int(result.get("units", 0)),
        )

    def asset(self, asset: bytes) -> AssetInfo | None:
        """Return an asset's details, or None if it does not exist."""
        try:
            result = self._call("asset", {"asset": _encode_id(asset)})
        except RPCError as exc:
            if AssetNotFoundError.default_message in str(exc):
                return None
            raise
        metadata = result.get("metadata")
        return AssetInfo(
            metadata=base64.b64decode(metadata) if metadata else b"",
            supply=int(result.get("supply", 0)),
            owner=str(result.get("owner", "")),
            warp=bool(result.get("warp")),
        )

    def balance(self, addr: str, asset: bytes) -> int:
        result = self._call("balance", {"address": addr, "asset": _encode_id(asset)})
        return int(result.get("amount", 0))

    def orders(self, pair: str) -> list[Any]:
        return list(self._call("orders", {"pair": pair}).get("orders") or [])

    def loan(self, asset: bytes, destination: bytes) -> int:
        result = self._call(
            "loan",
            {"asset": _encode_id(asset), "destination": _encode_id(destination)},
        )
        return int(result.get("amount", 0))

    @staticmethod
    def _wait(check: Callable[[], bool], interval: float, timeout: float | None) -> None:
        deadline = None if timeout is None else time.monotonic() + timeout
        while not check():
            if deadline is not None and time.monotonic() >= deadline:
                raise TimeoutError("condition not met before timeout")
            time.sleep(interval)

    def wait_for_balance(
        self,
        addr: str,
        asset: bytes,
        minimum: int,
        interval: float = 0.5,
        timeout: float | None = None,
    ) -> None:
        """Block until ``addr`` holds at least ``minimum`` of ``asset``."""

        def reached() -> bool:
            if self.balance(addr, asset) >= minimum:
                return True
            log.info("waiting for %d balance: %s", minimum, addr)
            return False

        self._wait(reached, interval, timeout)

    def wait_for_transaction(
        self, tx_id: bytes, interval: float = 0.5, timeout: float | None = None
    ) -> bool:
        """Block until the transaction is known and return whether it succeeded."""
        found: list[TxStatus] = []

        def known() -> bool:
            status = self.tx(tx_id)
            if status is None:
                return False
            found.append(status)
            return True

        self._wait(known, interval, timeout)
        return found[-1].success