"""Minimal Solana JSON-RPC and websocket client."""

from __future__ import annotations

import base64
import itertools
import json
import logging
import time
from collections.abc import AsyncIterator, Iterable
from typing import Any

import httpx
import websockets

log = logging.getLogger(__name__)

_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_INDEX = {ch: i for i, ch in enumerate(_ALPHABET)}
_COMMITMENT_LEVELS = {"processed": 0, "confirmed": 1, "finalized": 2}


def b58encode(data: bytes) -> str:
    """Encode bytes in base58 with the Bitcoin alphabet."""
    data = bytes(data)
    zeros = len(data) - len(data.lstrip(b"\0"))
    number = int.from_bytes(data, "big")
    digits = []
    while number:
        number, rem = divmod(number, 58)
        digits.append(_ALPHABET[rem])
    return "1" * zeros + "".join(reversed(digits))


def b58decode(text: str) -> bytes:
    """Decode a base58 string; ValueError on invalid characters."""
    number = 0
    for ch in text:
        try:
            number = number * 58 + _INDEX[ch]
        except KeyError:
            raise ValueError(f"invalid base58 character: {ch!r}") from None
    zeros = len(text) - len(text.lstrip("1"))
    body = number.to_bytes((number.bit_length() + 7) // 8, "big") if number else b""
    return b"\0" * zeros + body


class RpcError(Exception):
    """Raised when the RPC node reports an error or cannot be reached."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code


def _decode_account_data(data: Any) -> Any:
    if isinstance(data, (list, tuple)) and len(data) == 2 and isinstance(data[0], str):
        payload, encoding = data
        if encoding == "base64":
            return base64.b64decode(payload)
        if encoding == "base58":
            return b58decode(payload)
        raise RpcError(f"unsupported account encoding: {encoding}")
    return data


def memcmp_filter(offset: int, base58_bytes: str) -> dict:
    """Filter on account bytes at an offset, given in base58."""
    return {"memcmp": {"offset": offset, "bytes": base58_bytes, "encoding": "base58"}}


def data_size_filter(size: int) -> dict:
    """Filter on the exact size of account data."""
    return {"dataSize": size}


class RpcClient:
    """Blocking client for the Solana JSON-RPC HTTP interface."""

    def __init__(self, url: str, commitment: str = "confirmed", timeout: float = 30.0):
        if commitment not in _COMMITMENT_LEVELS:
            raise ValueError(f"unknown commitment: {commitment}")
        self.url = url
        self.commitment = commitment
        self._http = httpx.Client(timeout=timeout)
        self._ids = itertools.count(1)

    def __enter__(self) -> RpcClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Release the underlying HTTP connection pool."""
        self._http.close()

    def _call(self, method: str, params: list) -> Any:
        request = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self._http.post(self.url, json=request)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RpcError(f"{method} failed: {exc}") from exc
        if "error" in body:
            error = body["error"] or {}
            raise RpcError(f"{method} failed: {error.get('message', error)}", error.get("code"))
        return body.get("result")

    def get_multiple_accounts(self, pubkeys: Iterable[str]) -> list[bytes | None]:
        """Data of each account, or None where the account does not exist."""
        config = {"encoding": "base64", "commitment": self.commitment}
        result = self._call("getMultipleAccounts", [list(pubkeys), config])
        return [
            None if account is None else _decode_account_data(account["data"])
            for account in result["value"]
        ]

    def get_program_accounts(self, program_id: str, filters: list | None = None) -> list[tuple[str, bytes]]:
        """(pubkey, data) of every account owned by a program matching the filters."""
        config: dict[str, Any] = {"encoding": "base64", "commitment": self.commitment}
        if filters:
            config["filters"] = list(filters)
        result = self._call("getProgramAccounts", [program_id, config])
        if isinstance(result, dict):
            result = result["value"]
        return [(item["pubkey"], _decode_account_data(item["account"]["data"])) for item in result]

    def _signature_status(self, signature: str, search_history: bool) -> dict | None:
        result = self._call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": search_history}],
        )
        status = result["value"][0]
        if status is None:
            return None
        reached = status.get("confirmationStatus") or (
            "finalized" if status.get("confirmations") is None else "processed"
        )
        if _COMMITMENT_LEVELS[reached] < _COMMITMENT_LEVELS[self.commitment]:
            return None
        return status

    def confirm_transaction(self, signature: str) -> bool:
        """True once the transaction succeeded at the client's commitment."""
        status = self._signature_status(signature, search_history=False)
        return status is not None and status.get("err") is None

    def get_signature_status(self, signature: str) -> dict | None:
        """Status of a transaction at the client's commitment, searching history."""
        return self._signature_status(signature, search_history=True)


async def account_subscribe(
    url: str, pubkey: str, encoding: str = "base64", commitment: str = "confirmed"
) -> AsyncIterator[tuple[int, Any]]:
    """Yield (slot, data) for every change to an account until the socket closes."""
    request = {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "accountSubscribe",
        "params": [pubkey, {"encoding": encoding, "commitment": commitment}],
    }
    async with websockets.connect(url) as ws:
        await ws.send(json.dumps(request))
        ack = json.loads(await ws.recv())
        if "error" in ack:
            error = ack["error"] or {}
            raise RpcError(f"accountSubscribe failed: {error.get('message', error)}", error.get("code"))
        async for message in ws:
            notification = json.loads(message)
            if notification.get("method") != "accountNotification":
                continue
            result = notification["params"]["result"]
            yield result["context"]["slot"], _decode_account_data(result["value"]["data"])


def check_tx_status(
    client: RpcClient, signature: str, timeout: float = 11.0, poll_interval: float = 10.0
) -> bool:
    """Poll until the transaction is confirmed or the timeout passes."""
    start = time.monotonic()
    for attempt in itertools.count():
        confirmed = client.confirm_transaction(signature)
        log.info("Is confirmed? %s", confirmed)
        status = client.get_signature_status(signature)
        log.info("Status: %s", status)
        if confirmed:
            log.info("Transaction confirmed with confirmation")
            return True
        if status is not None:
            log.info("Transaction confirmed with status")
            return True
        if time.monotonic() - start >= timeout:
            log.error("Transaction not confirmed")
            return False
        log.info("%s seconds...", poll_interval * attempt)
        time.sleep(poll_interval)
    return False


def average(numbers: Iterable[int]) -> int:
    """Integer mean, rounded down; ZeroDivisionError when empty."""
    values = list(numbers)
    return sum(values) // len(values)