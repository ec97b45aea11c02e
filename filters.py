"""Turn raw, loosely typed filter input into a canonical ``FilterSpec``.

Every request parameter passes through ``normalize_filters`` exactly once, at
the HTTP boundary. Malformed values are dropped field by field: a partially
applied filter is preferable to an error page. When the input carries no date
bounds at all, the user's default period is applied so that the default view
never scans the whole ledger history.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from datetime import date
from typing import Mapping, Optional

from csv_utils import parse_amount
from models import AmountOperator, TransactionType
from periods import InvalidPeriodKey, fallback_period, resolve_period_key
from schemas import FilterSpec

logger = logging.getLogger(__name__)

DEFAULT_PERIOD_KEY = "last_30_days"

ID_FIELDS = ("account_ids", "category_ids", "merchant_ids", "tag_ids")
SET_FIELDS = (*ID_FIELDS, "types")
SCALAR_FIELDS = ("start_date", "end_date", "search", "amount", "amount_operator")
PARAM_KEYS = frozenset((*SET_FIELDS, *SCALAR_FIELDS, "period"))

# Largest value a SQLite INTEGER column can hold.
MAX_AMOUNT_CENTS = 2**63 - 1

_WHITESPACE = re.compile(r"\s+")


def _values(raw: Mapping[str, object], key: str) -> list[str]:
    getlist = getattr(raw, "getlist", None)
    if getlist is not None:
        items = getlist(key)
    else:
        value = raw.get(key)
        if value is None:
            items = []
        elif isinstance(value, (list, tuple, set, frozenset)):
            items = list(value)
        else:
            items = [value]
    cleaned: list[str] = []
    for item in items:
        if item is None:
            continue
        text = str(item).strip()
        if text:
            cleaned.append(text)
    return cleaned


def _first(raw: Mapping[str, object], key: str) -> Optional[str]:
    values = _values(raw, key)
    return values[0] if values else None


def _parse_date(raw: Mapping[str, object], key: str) -> Optional[date]:
    value = _first(raw, key)
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        logger.debug(f"filters: dropped malformed {key}={value!r}")
        return None


def _parse_ids(raw: Mapping[str, object], key: str) -> tuple[int, ...]:
    ids: set[int] = set()
    for value in _values(raw, key):
        try:
            parsed = int(value)
        except ValueError:
            logger.debug(f"filters: dropped malformed {key}={value!r}")
            continue
        if parsed > 0:
            ids.add(parsed)
    return tuple(sorted(ids))


def _parse_types(raw: Mapping[str, object]) -> tuple[TransactionType, ...]:
    types: set[TransactionType] = set()
    for value in _values(raw, "types"):
        try:
            types.add(TransactionType(value.lower()))
        except ValueError:
            logger.debug(f"filters: dropped malformed types={value!r}")
    return tuple(sorted(types, key=lambda t: t.value))


def _parse_amount(raw: Mapping[str, object]) -> Optional[int]:
    value = _first(raw, "amount")
    if value is None:
        return None
    try:
        cents = parse_amount(value)
    except ValueError:
        logger.debug(f"filters: dropped malformed amount={value!r}")
        return None
    if cents > MAX_AMOUNT_CENTS:
        logger.debug(f"filters: dropped out-of-range amount={value!r}")
        return None
    return cents


def _parse_operator(raw: Mapping[str, object]) -> Optional[AmountOperator]:
    value = _first(raw, "amount_operator")
    if value is None:
        return None
    try:
        return AmountOperator(value.lower())
    except ValueError:
        logger.debug(f"filters: dropped malformed amount_operator={value!r}")
        return None


def _parse_search(raw: Mapping[str, object]) -> Optional[str]:
    value = _first(raw, "search")
    if value is None:
        return None
    return _WHITESPACE.sub(" ", value)


def _default_window(
    requested_key: Optional[str], default_period_key: Optional[str], today: date
) -> tuple[date, date]:
    for key in (requested_key, default_period_key or DEFAULT_PERIOD_KEY):
        if not key:
            continue
        try:
            period = resolve_period_key(key, today=today)
        except InvalidPeriodKey:
            logger.warning(f"filters: unknown period key={key!r}")
            continue
        return period.start, period.end
    logger.warning("filters: no usable period key, using fallback window")
    period = fallback_period(today)
    return period.start, period.end


def normalize_filters(
    raw: Optional[Mapping[str, object]],
    default_period_key: Optional[str] = None,
    *,
    today: Optional[date] = None,
) -> FilterSpec:
    """Build the canonical filter for ``raw`` request parameters.

    ``raw`` may be a plain mapping whose values are strings or lists of
    strings, or a Starlette ``QueryParams`` (repeated keys). Unknown keys are
    ignored. This function never raises.
    """
    raw = raw or {}
    today = today or date.today()

    start_date = _parse_date(raw, "start_date")
    end_date = _parse_date(raw, "end_date")
    amount_cents = _parse_amount(raw)
    amount_operator = _parse_operator(raw) if amount_cents is not None else None
    if amount_cents is not None and amount_operator is None:
        amount_operator = AmountOperator.equal

    if start_date is None and end_date is None:
        start_date, end_date = _default_window(
            _first(raw, "period"), default_period_key, today
        )
    elif start_date and end_date and start_date > end_date:
        start_date, end_date = end_date, start_date

    return FilterSpec(
        start_date=start_date,
        end_date=end_date,
        search=_parse_search(raw),
        amount_cents=amount_cents,
        amount_operator=amount_operator,
        account_ids=_parse_ids(raw, "account_ids"),
        category_ids=_parse_ids(raw, "category_ids"),
        merchant_ids=_parse_ids(raw, "merchant_ids"),
        tag_ids=_parse_ids(raw, "tag_ids"),
        types=_parse_types(raw),
    )


def filter_digest(spec: FilterSpec) -> str:
    payload = json.dumps(
        spec.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
