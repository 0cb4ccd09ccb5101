"""
Lambda handler for GET /quote/status, plus the quote lifecycle shared by the
other quote handlers.

Lifecycle:
  waiting -> upload_start -> upload_end
  waiting | upload_start -> upload_failed

Quotes are created as `waiting`. Only the upload pipeline moves them forward,
through `set_status`. The link handler reads the status and serves links only
for `upload_end` quotes.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import re
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

QUOTES_TABLE_ENV = "QUOTES_TABLE_NAME"

QUOTE_STATUS_WAITING = "waiting"
QUOTE_STATUS_UPLOAD_START = "upload_start"
QUOTE_STATUS_UPLOAD_END = "upload_end"
QUOTE_STATUS_UPLOAD_FAILED = "upload_failed"
QUOTE_STATUSES = (
    QUOTE_STATUS_WAITING,
    QUOTE_STATUS_UPLOAD_START,
    QUOTE_STATUS_UPLOAD_END,
    QUOTE_STATUS_UPLOAD_FAILED,
)

QUOTE_ID_PATTERN = re.compile(r"^[a-fA-F0-9]{32}$")

logger = logging.getLogger(__name__)
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())


class BadRequestError(ValueError):
    """Raised when request validation fails."""


class NotFoundError(ValueError):
    """Raised when the quote does not exist."""


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


def get_quotes_table() -> Any:
    return boto3.resource("dynamodb").Table(_require_env(QUOTES_TABLE_ENV))


def is_valid_quote_id(quote_id: Any) -> bool:
    return isinstance(quote_id, str) and QUOTE_ID_PATTERN.fullmatch(quote_id) is not None


def is_ready_for_link(status: Any) -> bool:
    """Links are only handed out once the upload pipeline has finished."""
    return status == QUOTE_STATUS_UPLOAD_END


def parse_quote_id(params: dict[str, Any]) -> str:
    quote_id = params.get("quoteId")
    if quote_id in (None, ""):
        raise BadRequestError("Error, quoteId required.")
    if not is_valid_quote_id(quote_id):
        raise BadRequestError("Invalid quoteId format.")
    return quote_id


def get_status(quote_id: str, quotes_table: Any | None = None) -> str | None:
    table = quotes_table or get_quotes_table()
    response = table.get_item(Key={"quote_id": quote_id}, ConsistentRead=True)
    item = response.get("Item")
    if not item:
        return None
    return str(item.get("status") or "")


def set_status(
    quote_id: str,
    status: str,
    link: Any = None,
    quotes_table: Any | None = None,
) -> None:
    """Move a quote to `status`, optionally recording its link in the same write.

    Called by the upload pipeline. Raises NotFoundError if the quote does not
    exist and ValueError for an unknown status.
    """
    if status not in QUOTE_STATUSES:
        raise ValueError(f"unknown quote status: {status}")

    update_expression = "SET #status = :status"
    names = {"#status": "status"}
    values: dict[str, Any] = {":status": status}
    if link is not None:
        update_expression += ", #link = :link"
        names["#link"] = "link"
        values[":link"] = link

    table = quotes_table or get_quotes_table()
    try:
        table.update_item(
            Key={"quote_id": quote_id},
            UpdateExpression=update_expression,
            ConditionExpression="attribute_exists(quote_id)",
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )
    except ClientError as exc:
        if exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
            raise NotFoundError("Quote not found.") from exc
        raise
    logger.info("quote %s status set to %s", quote_id, status)


def lambda_handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    del context
    try:
        params = _collect_request_params(event)
        logger.info("getStatus request: %s", json.dumps(params, default=str))
        quote_id = parse_quote_id(params)
        status = get_status(quote_id)
        if status is None:
            return _error_response(404, "quote_not_found", "Quote not found.")
        logger.info("getStatus response: 200: %s", status)
        return _response(200, {"quoteId": quote_id, "status": status})
    except BadRequestError as exc:
        return _error_response(400, "Bad request", str(exc))
    except (BotoCoreError, ClientError):
        logger.exception("quote status lookup failed")
        return _error_response(500, "Internal error", "Error occurred while looking up status.")
    except Exception as exc:
        logger.exception("unexpected error in getStatus")
        return _error_response(500, "Internal error", str(exc))
