"""Request parsing and response encoding for the governance API."""

from __future__ import annotations

from dataclasses import dataclass, fields, is_dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from starlette.requests import Request

from steward.governance.errors import InvalidRequest


@dataclass(slots=True)
class GovernanceRequest:
    """One action-keyed API call."""

    action: str
    fields: dict[str, Any]


async def parse_request_payload(request: Request) -> GovernanceRequest:
    """Parse ``{"action": ..., <fields>}``; fields may also sit under ``"data"``."""
    try:
        parsed = await request.json()
    except (ValueError, UnicodeDecodeError) as exc:
        raise InvalidRequest("request body must be valid JSON") from exc
    if not isinstance(parsed, dict):
        raise InvalidRequest("request body must be a JSON object")
    action = parsed.get("action")
    if not isinstance(action, str) or not action.strip():
        raise InvalidRequest("action is required")
    body = {k: v for k, v in parsed.items() if k not in {"action", "data"}}
    data = parsed.get("data")
    if data is not None:
        if not isinstance(data, dict):
            raise InvalidRequest("data must be an object")
        body.update(data)
    return GovernanceRequest(action=action.strip(), fields=body)


def _snake(name: str) -> str:
    return "".join(f"_{c.lower()}" if c.isupper() else c for c in name)


def _lookup(body: dict[str, Any], name: str) -> Any:
    if name in body:
        return body[name]
    return body.get(_snake(name))


def text(body: dict[str, Any], name: str, *, required: bool = True) -> str | None:
    """Read a string field by camelCase name, accepting its snake_case spelling."""
    value = _lookup(body, name)
    if value is None:
        if required:
            raise InvalidRequest(f"{name} is required")
        return None
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest(f"{name} must be a non-empty string")
    return value.strip()


def integer(body: dict[str, Any], name: str, default: int | None = None) -> int | None:
    value = _lookup(body, name)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRequest(f"{name} must be an integer")
    return value


def obj(body: dict[str, Any], name: str) -> dict[str, Any] | None:
    value = _lookup(body, name)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise InvalidRequest(f"{name} must be an object")
    return value


def string_list(body: dict[str, Any], name: str) -> list[str] | None:
    value = _lookup(body, name)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise InvalidRequest(f"{name} must be a list of strings")
    return value


def raw(body: dict[str, Any], name: str) -> Any:
    return _lookup(body, name)


def timestamp(body: dict[str, Any], name: str) -> datetime | None:
    value = text(body, name, required=False)
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise InvalidRequest(f"{name} must be an ISO-8601 timestamp") from exc
    if parsed.tzinfo is None:
        raise InvalidRequest(f"{name} must include a timezone")
    return parsed


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def to_json(value: Any) -> Any:
    """Encode engine values as JSON-ready data with camelCase keys."""
    if is_dataclass(value) and not isinstance(value, type):
        return {_camel(f.name): to_json(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_json(v) for k, v in value.items()}
    if isinstance(value, list | tuple | set | frozenset):
        return [to_json(item) for item in value]
    return value
