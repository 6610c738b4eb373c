"""Typed task payloads.

Submitted task metadata is parsed into one variant of :data:`TaskPayload`,
keyed by task type. Keys a variant does not recognize are kept verbatim in
``extensions`` so provider-specific data survives classification.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Union

from steward.governance.errors import InvalidRequest


@dataclass(frozen=True)
class FormSubmitPayload:
    url: str | None = None
    form_id: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)
    extensions: dict[str, Any] = field(default_factory=dict)
    kind: str = "form_submit"
    category: str = "submission"


@dataclass(frozen=True)
class PurchasePayload:
    merchant: str | None = None
    item: str | None = None
    amount: Decimal | None = None
    currency: str = "USD"
    extensions: dict[str, Any] = field(default_factory=dict)
    kind: str = "purchase"
    category: str = "financial"


@dataclass(frozen=True)
class AccountActionPayload:
    account: str | None = None
    operation: str | None = None
    extensions: dict[str, Any] = field(default_factory=dict)
    kind: str = "account_action"
    category: str = "account"


@dataclass(frozen=True)
class ScrapePayload:
    url: str | None = None
    selectors: tuple[str, ...] = ()
    extensions: dict[str, Any] = field(default_factory=dict)
    kind: str = "scrape"
    category: str = "read"


@dataclass(frozen=True)
class NavigatePayload:
    url: str | None = None
    extensions: dict[str, Any] = field(default_factory=dict)
    kind: str = "navigate"
    category: str = "read"


@dataclass(frozen=True)
class GenericPayload:
    extensions: dict[str, Any] = field(default_factory=dict)
    kind: str = "generic"
    category: str = "unknown"


TaskPayload = Union[
    FormSubmitPayload,
    PurchasePayload,
    AccountActionPayload,
    ScrapePayload,
    NavigatePayload,
    GenericPayload,
]


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidRequest(f"metadata.{key} must be a string")
    return value.strip() or None


def _optional_decimal(data: dict[str, Any], key: str) -> Decimal | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidRequest(f"metadata.{key} must be a number")
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidRequest(f"metadata.{key} must be a number") from exc
    if not parsed.is_finite() or parsed < 0:
        raise InvalidRequest(f"metadata.{key} must be a non-negative number")
    return parsed


def _extensions(data: dict[str, Any], known: set[str]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if k not in known}


def parse_task_payload(task_type: str, metadata: dict[str, Any] | None) -> TaskPayload:
    """Build the payload variant for ``task_type`` from loose metadata."""
    data = metadata or {}
    if not isinstance(data, dict):
        raise InvalidRequest("metadata must be an object")

    if task_type == "form_submit":
        fields = data.get("fields") or {}
        if not isinstance(fields, dict):
            raise InvalidRequest("metadata.fields must be an object")
        return FormSubmitPayload(
            url=_optional_str(data, "url"),
            form_id=_optional_str(data, "form_id"),
            fields=dict(fields),
            extensions=_extensions(data, {"url", "form_id", "fields"}),
        )
    if task_type == "purchase":
        return PurchasePayload(
            merchant=_optional_str(data, "merchant"),
            item=_optional_str(data, "item"),
            amount=_optional_decimal(data, "amount"),
            currency=_optional_str(data, "currency") or "USD",
            extensions=_extensions(data, {"merchant", "item", "amount", "currency"}),
        )
    if task_type == "account_action":
        return AccountActionPayload(
            account=_optional_str(data, "account"),
            operation=_optional_str(data, "operation"),
            extensions=_extensions(data, {"account", "operation"}),
        )
    if task_type == "scrape":
        selectors = data.get("selectors") or []
        if not isinstance(selectors, list) or not all(isinstance(s, str) for s in selectors):
            raise InvalidRequest("metadata.selectors must be a list of strings")
        return ScrapePayload(
            url=_optional_str(data, "url"),
            selectors=tuple(selectors),
            extensions=_extensions(data, {"url", "selectors"}),
        )
    if task_type == "navigate":
        return NavigatePayload(
            url=_optional_str(data, "url"),
            extensions=_extensions(data, {"url"}),
        )
    return GenericPayload(extensions=dict(data))
