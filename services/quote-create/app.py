"""
Lambda handler for POST /quote.

Validates the requested upload batch (type, creator address, file lengths),
assigns a random 16-byte quote id and persists the quote in DynamoDB with
status `waiting`. The creator address recorded here is the identity the link
handler later checks signatures against.
"""

from __future__ import annotations

import base64
import importlib.util
import json
import logging
import os
import re
import secrets
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from eth_utils import is_address, is_checksum_address, is_checksum_formatted_address, to_checksum_address

QUOTE_TYPE_IPFS = "ipfs"
MAX_FILES = 64
MAX_UPLOAD_SIZE_ENV = "MAX_UPLOAD_SIZE"
FILE_LENGTH_PATTERN = re.compile(r"^[+-]?\d+(?:\.\d+)?$")
# Keeps the total of MAX_FILES lengths within DynamoDB's 38-digit numbers.
FILE_LENGTH_MAX_DIGITS = 36

logger = logging.getLogger(__name__)
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())


class BadRequestError(ValueError):
    """Raised when request validation fails."""


def _load_service_module(module_name: str, service_dir: str) -> Any:
    module_path = Path(__file__).resolve().parents[1] / service_dir / "app.py"
    module_spec = importlib.util.spec_from_file_location(module_name, module_path)
    if module_spec is None or module_spec.loader is None:
        raise RuntimeError(f"Unable to load service module: {service_dir}")
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


_QUOTE_LIFECYCLE = _load_service_module("quote_create_quote_status", "quote-status")


@dataclass(frozen=True)
class QuoteRequest:
    quote_type: str
    user_address: str
    files: tuple[int, ...]

    @property
    def total_length(self) -> int:
        return sum(self.files)


def _response(status_code: int, body: dict[str, Any]) -> dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            "Access-Control-Allow-Origin": "*",
        },
        "body": json.dumps(body, default=str),
    }


def _error_response(status_code: int, error: str, message: str, details: Any = None) -> dict[str, Any]:
    body: dict[str, Any] = {"error": error, "message": message}
    if details is not None:
        body["details"] = details
    return _response(status_code, body)


def _read_int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.environ.get(name)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        parsed = int(str(raw).strip())
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer") from exc
    if parsed < minimum:
        raise RuntimeError(f"{name} must be >= {minimum}")
    return parsed


def _max_upload_size() -> int:
    """0 disables the size limits."""
    return _read_int_env(MAX_UPLOAD_SIZE_ENV, default=0)


def _decode_event_body(event: dict[str, Any]) -> dict[str, Any]:
    raw_body = event.get("body")
    if raw_body in (None, ""):
        raise BadRequestError("Content can not be empty!")

    if isinstance(raw_body, dict):
        return raw_body

    if event.get("isBase64Encoded"):
        try:
            raw_body = base64.b64decode(raw_body).decode("utf-8")
        except Exception as exc:
            raise BadRequestError("body must be valid base64-encoded JSON") from exc

    try:
        decoded = json.loads(raw_body)
    except json.JSONDecodeError as exc:
        raise BadRequestError("body must be valid JSON") from exc

    if not isinstance(decoded, dict):
        raise BadRequestError("Content can not be empty!")
    return decoded


def _validate_type(value: Any) -> str:
    if not isinstance(value, str) or value != QUOTE_TYPE_IPFS:
        raise BadRequestError("Invalid type.")
    return value


def _validate_user_address(value: Any) -> str:
    if not isinstance(value, str) or not is_address(value):
        raise BadRequestError("Invalid userAddress.")
    # mixed case means EIP-55; all-lower and all-upper carry no checksum
    if is_checksum_formatted_address(value) and not is_checksum_address(value):
        raise BadRequestError("Invalid userAddress.")
    return to_checksum_address(value)


def _parse_file_length(value: Any) -> int:
    # bool is an int subclass but never a length
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise BadRequestError("Invalid files length.")
    if isinstance(value, str) and not FILE_LENGTH_PATTERN.fullmatch(value.strip()):
        raise BadRequestError("Invalid files length.")
    try:
        parsed = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise BadRequestError("Invalid files length.") from exc
    if not parsed.is_finite():
        raise BadRequestError("Invalid files length.")
    length = int(parsed)
    if abs(length) >= 10**FILE_LENGTH_MAX_DIGITS:
        raise BadRequestError("Invalid files length.")
    return length


def _validate_files(value: Any) -> tuple[int, ...]:
    if not isinstance(value, list):
        raise BadRequestError("Invalid files field.")
    if not value:
        raise BadRequestError("Empty files field.")
    if len(value) > MAX_FILES:
        raise BadRequestError(f"Too many files. Max {MAX_FILES}.")

    max_upload_size = _max_upload_size()
    lengths: list[int] = []
    for entry in value:
        if not isinstance(entry, dict) or "length" not in entry:
            raise BadRequestError("Invalid files field.")
        length = _parse_file_length(entry["length"])
        if length <= 0:
            raise BadRequestError("Files length too small.")
        if max_upload_size > 0 and length > max_upload_size:
            raise BadRequestError(f"Individual files may not exceed {max_upload_size} bytes")
        lengths.append(length)

    if max_upload_size > 0 and sum(lengths) > max_upload_size:
        raise BadRequestError(f"Total file length may not exceed {max_upload_size} bytes")
    return tuple(lengths)


# Checked in order; the first failing field decides the error message.
QUOTE_FIELDS: tuple[tuple[str, str, Callable[[Any], Any]], ...] = (
    ("type", "Missing type.", _validate_type),
    ("userAddress", "Missing userAddress.", _validate_user_address),
    ("files", "Missing files field.", _validate_files),
)


def parse_input(event: dict[str, Any]) -> QuoteRequest:
    payload = _decode_event_body(event)

    values: dict[str, Any] = {}
    for field_name, missing_message, validator in QUOTE_FIELDS:
        if field_name not in payload:
            raise BadRequestError(missing_message)
        values[field_name] = validator(payload[field_name])

    return QuoteRequest(
        quote_type=values["type"],
        user_address=values["userAddress"],
        files=values["files"],
    )


def _new_quote_id() -> str:
    return secrets.token_hex(16)


def build_quote(request: QuoteRequest, now_ms: int | None = None) -> dict[str, Any]:
    return {
        "quoteId": _new_quote_id(),
        "status": _QUOTE_LIFECYCLE.QUOTE_STATUS_WAITING,
        "created": now_ms if now_ms is not None else int(time.time() * 1000),
        "userAddress": request.user_address,
        "files": list(request.files),
        "totalLength": request.total_length,
    }


def write_quote(quote: dict[str, Any], quotes_table: Any | None = None) -> None:
    table = quotes_table or _QUOTE_LIFECYCLE.get_quotes_table()
    table.put_item(
        Item={
            "quote_id": quote["quoteId"],
            "status": quote["status"],
            "created": quote["created"],
            "quote_type": QUOTE_TYPE_IPFS,
            "user_address": quote["userAddress"],
            "files": list(quote["files"]),
            "total_length": quote["totalLength"],
        },
        ConditionExpression="attribute_not_exists(quote_id)",
    )


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    del context
    try:
        logger.info("getQuote request: %s", event.get("body"))
        request = parse_input(event)
        quote = build_quote(request)
        write_quote(quote)
        logger.info("quote %s created for %s", quote["quoteId"], quote["userAddress"])
        return _response(200, quote)
    except BadRequestError as exc:
        logger.info("getQuote rejected: %s", exc)
        return _error_response(400, "Bad request", str(exc))
    except (BotoCoreError, ClientError):
        logger.exception("quote persistence failed")
        return _error_response(500, "Internal error", "Error occurred while creating the quote.")
    except Exception as exc:
        logger.exception("unexpected error in getQuote")
        return _error_response(500, "Internal error", str(exc))
