"""
Lambda handler for GET /quote/link.

Hands out the link of an uploaded batch only to the wallet that created the
quote. The client signs `sha256(quoteId + nonce)` (as a 0x-prefixed hex string)
with EIP-191 personal sign; the nonce must be strictly greater than the last
nonce accepted for that wallet.

Flow, stopping at the first failure:
1. Validate quoteId / nonce / signature formats.
2. Load the quote; it must be in `upload_end`.
3. Recover the signer and compare it with the quote's creator address.
4. Atomically check and advance the wallet nonce (conditional DynamoDB update).
5. Load and return the link.

No nonce is consumed unless step 3 succeeded.
"""

from __future__ import annotations

import base64
import hashlib
import importlib.util
import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import to_checksum_address

NONCES_TABLE_ENV = "NONCES_TABLE_NAME"

NONCE_PATTERN = re.compile(r"^\d+(?:\.\d+)?$")
# DynamoDB numbers keep 38 significant digits, magnitudes 1E-130 to 9.99E+125.
NONCE_MAX_SIGNIFICANT_DIGITS = 38
NONCE_MIN_EXPONENT = -130
NONCE_MAX_EXPONENT = 125
# 65-byte r || s || v, or 64-byte EIP-2098 compact r || yParityAndS.
SIGNATURE_PATTERN = re.compile(r"^0x(?:[a-fA-F0-9]{128}|[a-fA-F0-9]{130})$")
COMPACT_S_MASK = (1 << 255) - 1
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

logger = logging.getLogger(__name__)
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())


def _load_service_module(module_name: str, service_dir: str) -> Any:
    module_path = Path(__file__).resolve().parents[1] / service_dir / "app.py"
    module_spec = importlib.util.spec_from_file_location(module_name, module_path)
    if module_spec is None or module_spec.loader is None:
        raise RuntimeError(f"Unable to load service module: {service_dir}")
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


_QUOTE_LIFECYCLE = _load_service_module("quote_link_quote_status", "quote-status")


class BadRequestError(ValueError):
    """Raised when request validation fails."""


class StorageFailureError(Exception):
    """Raised when a DynamoDB call fails for reasons other than a failed condition."""


class AuthorizationError(Exception):
    """Base class for link authorization failures that are reported to the client."""

    status_code = 403
    error = "forbidden"
    message = "Forbidden."


class NotFoundError(AuthorizationError):
    status_code = 404
    error = "quote_not_found"
    message = "Quote not found."


class LinkNotFoundError(NotFoundError):
    error = "link_not_found"
    message = "Link(s) not found."


class UploadNotCompleteError(AuthorizationError):
    status_code = 400
    error = "upload_not_complete"
    message = "Upload not completed yet."


class InvalidSignatureError(AuthorizationError):
    error = "invalid_signature"
    message = "Invalid signature."


class ForbiddenError(AuthorizationError):
    # Same response as a malformed signature: callers must not learn who signed.
    error = "invalid_signature"
    message = "Invalid signature."


class ReplayedNonceError(AuthorizationError):
    error = "invalid_nonce"
    message = "Invalid nonce."


@dataclass(frozen=True)
class ParsedLinkRequest:
    quote_id: str
    nonce: str
    signature: str


@dataclass(frozen=True)
class QuoteRecord:
    quote_id: str
    status: str
    user_address: str
    files: tuple[int, ...]


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


def _require_env(name: str) -> str:
    value = os.environ.get(name, "").strip()
    if not value:
        raise RuntimeError(f"{name} environment variable is required")
    return value


def _decode_event_body(event: dict[str, Any]) -> dict[str, Any]:
    raw_body = event.get("body")
    if raw_body in (None, ""):
        return {}

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
        raise BadRequestError("JSON body must be an object")
    return decoded


def _collect_request_params(event: dict[str, Any]) -> dict[str, Any]:
    query_params = event.get("queryStringParameters") or {}
    if not isinstance(query_params, dict):
        raise BadRequestError("queryStringParameters must be an object")

    params = {key: value for key, value in query_params.items() if value is not None}
    params.update(_decode_event_body(event))
    return params


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _is_valid_nonce(nonce: str) -> bool:
    if not NONCE_PATTERN.fullmatch(nonce):
        return False
    digits = nonce.replace(".", "").lstrip("0")
    if "." in nonce:
        digits = digits.rstrip("0")
    if len(digits) > NONCE_MAX_SIGNIFICANT_DIGITS:
        return False
    value = Decimal(nonce)
    return value.is_zero() or NONCE_MIN_EXPONENT <= value.adjusted() <= NONCE_MAX_EXPONENT


def parse_input(event: dict[str, Any]) -> ParsedLinkRequest:
    params = _collect_request_params(event)

    quote_id = params.get("quoteId")
    if quote_id in (None, ""):
        raise BadRequestError("Error, quoteId required.")
    if not _QUOTE_LIFECYCLE.is_valid_quote_id(quote_id):
        raise BadRequestError("Invalid quoteId format.")

    nonce = params.get("nonce")
    if nonce is None:
        raise BadRequestError("Missing nonce.")
    if not isinstance(nonce, str) or not _is_valid_nonce(nonce):
        raise BadRequestError("Invalid nonce.")

    signature = params.get("signature")
    if signature is None:
        raise BadRequestError("Missing signature.")
    if not isinstance(signature, str):
        raise BadRequestError("Invalid signature format.")

    return ParsedLinkRequest(quote_id=quote_id, nonce=nonce, signature=signature)


# --- Signature verification -----------------------------------------------------


def build_message_digest(quote_id: str, nonce: str) -> str:
    """Return the 0x-prefixed hex SHA-256 of `quote_id + nonce`, the text the wallet signs.

    The nonce is used exactly as it arrived on the wire.
    """
    return "0x" + hashlib.sha256(f"{quote_id}{nonce}".encode("utf-8")).hexdigest()


def _split_signature(signature: str) -> tuple[int, int, int]:
    candidate = signature.strip()
    if not candidate.startswith("0x"):
        candidate = f"0x{candidate}"
    if not SIGNATURE_PATTERN.fullmatch(candidate):
        raise InvalidSignatureError()
    raw = bytes.fromhex(candidate[2:])
    r = int.from_bytes(raw[:32], "big")
    s = int.from_bytes(raw[32:64], "big")
    if len(raw) == 64:
        v = 27 + (s >> 255)
        s &= COMPACT_S_MASK
    else:
        v = raw[64]
        if v < 27:
            v += 27
    if v not in (27, 28) or not (0 < r < SECP256K1_N) or not (0 < s < SECP256K1_N):
        raise InvalidSignatureError()
    return v, r, s


def recover_signer(message: str, signature: str) -> str:
    """Recover the checksummed address that personal-signed `message`.

    A well-formed signature by any key recovers to some address; only
    malformed or unrecoverable signatures raise InvalidSignatureError.
    """
    vrs = _split_signature(signature)
    try:
        signer = Account.recover_message(encode_defunct(text=message), vrs=vrs)
    except Exception as exc:
        raise InvalidSignatureError() from exc
    return to_checksum_address(signer)


# --- Nonce guard ----------------------------------------------------------------


def get_nonces_table() -> Any:
    return boto3.resource("dynamodb").Table(_require_env(NONCES_TABLE_ENV))


def check_and_advance(nonces_table: Any, address: str, nonce: str, now: datetime | None = None) -> Decimal:
    """Commit `nonce` for `address` if it is strictly greater than the stored one.

    The comparison and the write are a single conditional update, so concurrent
    requests for the same address cannot both commit non-increasing nonces.
    A missing record counts as a stored nonce of 0.
    """
    try:
        candidate = Decimal(nonce)
    except InvalidOperation as exc:
        raise BadRequestError("Invalid nonce.") from exc
    if not candidate.is_finite() or candidate <= 0:
        raise ReplayedNonceError()
    if not NONCE_MIN_EXPONENT <= candidate.adjusted() <= NONCE_MAX_EXPONENT:
        raise BadRequestError("Invalid nonce.")

    resolved_now = now or datetime.now(timezone.utc)
    try:
        nonces_table.update_item(
            Key={"addr": address},
            UpdateExpression="SET #nonce = :candidate, nonce_raw = :raw, updated_at = :now",
            ConditionExpression="attribute_not_exists(#nonce) OR #nonce < :candidate",
            ExpressionAttributeNames={"#nonce": "nonce"},
            ExpressionAttributeValues={
                ":candidate": candidate,
                ":raw": nonce,
                ":now": resolved_now.isoformat(),
            },
        )
    except ClientError as exc:
        if _error_code(exc) == "ConditionalCheckFailedException":
            raise ReplayedNonceError() from exc
        raise StorageFailureError("Error occurred while setting nonce.") from exc
    except BotoCoreError as exc:
        raise StorageFailureError("Error occurred while setting nonce.") from exc
    return candidate


# --- Authorization gate ---------------------------------------------------------


def _quote_from_item(item: dict[str, Any]) -> QuoteRecord:
    return QuoteRecord(
        quote_id=str(item["quote_id"]),
        status=str(item.get("status") or ""),
        user_address=str(item.get("user_address") or ""),
        files=tuple(int(length) for length in item.get("files") or ()),
    )


def get_quote(quotes_table: Any, quote_id: str) -> QuoteRecord | None:
    try:
        response = quotes_table.get_item(Key={"quote_id": quote_id}, ConsistentRead=True)
    except (BotoCoreError, ClientError) as exc:
        raise StorageFailureError("Error occurred while looking up userAddress.") from exc
    item = response.get("Item")
    if not item:
        return None
    return _quote_from_item(item)


def get_link(quotes_table: Any, quote_id: str) -> Any:
    try:
        response = quotes_table.get_item(Key={"quote_id": quote_id}, ConsistentRead=True)
    except (BotoCoreError, ClientError) as exc:
        raise StorageFailureError("Error occurred while looking up link.") from exc
    item = response.get("Item") or {}
    return item.get("link")


def _same_address(left: str, right: str) -> bool:
    try:
        return to_checksum_address(left) == to_checksum_address(right)
    except ValueError:
        return False


def authorize_and_fetch_link(
    quote_id: str,
    nonce: str,
    signature: str,
    quotes_table: Any,
    nonces_table: Any,
) -> Any:
    quote = get_quote(quotes_table, quote_id)
    if quote is None:
        raise NotFoundError()
    if not _QUOTE_LIFECYCLE.is_ready_for_link(quote.status):
        raise UploadNotCompleteError()

    message = build_message_digest(quote_id, nonce)
    signer = recover_signer(message, signature)
    if not _same_address(signer, quote.user_address):
        raise ForbiddenError()

    check_and_advance(nonces_table, to_checksum_address(quote.user_address), nonce)

    link = get_link(quotes_table, quote_id)
    if link is None:
        raise LinkNotFoundError()
    return link


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    del context
    try:
        request = parse_input(event)
        logger.info("getLink request: quoteId=%s nonce=%s", request.quote_id, request.nonce)
        link = authorize_and_fetch_link(
            quote_id=request.quote_id,
            nonce=request.nonce,
            signature=request.signature,
            quotes_table=_QUOTE_LIFECYCLE.get_quotes_table(),
            nonces_table=get_nonces_table(),
        )
        logger.info("getLink response: 200: quoteId=%s", request.quote_id)
        return _response(200, {"quoteId": request.quote_id, "link": link})
    except BadRequestError as exc:
        return _error_response(400, "Bad request", str(exc))
    except AuthorizationError as exc:
        logger.info("getLink rejected: %s", type(exc).__name__)
        return _error_response(exc.status_code, exc.error, exc.message)
    except StorageFailureError as exc:
        logger.exception("getLink storage failure")
        return _error_response(500, "Internal error", str(exc))
    except Exception as exc:
        logger.exception("unexpected error in getLink")
        return _error_response(500, "Internal error", str(exc))
