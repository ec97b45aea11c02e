"""Per-session memory of the last transaction filter and page.

The store only offers convenience restoration: a bare visit to the list
(no query string) is redirected to the last filter the session used, so the
URL always reflects the active filter. Any request with explicit parameters
overwrites the stored state.
"""

from __future__ import annotations

import logging
import secrets
import threading
from typing import Mapping, Optional, Protocol

from itsdangerous import BadSignature, URLSafeSerializer
from pydantic import ValidationError

from config import get_settings
from filters import ID_FIELDS, SCALAR_FIELDS, normalize_filters
from schemas import FilterSpec, SessionFilterState

logger = logging.getLogger(__name__)

SESSION_COOKIE = "ledger_session"
DEFAULT_PAGE = 1
DEFAULT_PER_PAGE = 50


class SessionBackend(Protocol):
    def get(self, session_id: str) -> Optional[bytes]: ...

    def set(self, session_id: str, payload: bytes) -> None: ...


class InMemorySessionBackend:
    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> Optional[bytes]:
        with self._lock:
            return self._data.get(session_id)

    def set(self, session_id: str, payload: bytes) -> None:
        with self._lock:
            self._data[session_id] = payload


class FilterSessionStore:
    def __init__(self, backend: Optional[SessionBackend] = None) -> None:
        self.backend = backend if backend is not None else InMemorySessionBackend()

    def record(
        self,
        session_id: str,
        spec: FilterSpec,
        page: int = DEFAULT_PAGE,
        per_page: int = DEFAULT_PER_PAGE,
    ) -> SessionFilterState:
        state = SessionFilterState(filters=spec, page=page, per_page=per_page)
        self.backend.set(session_id, state.model_dump_json().encode("utf-8"))
        return state

    def restore(self, session_id: str) -> Optional[SessionFilterState]:
        payload = self.backend.get(session_id)
        if not payload:
            return None
        try:
            return SessionFilterState.model_validate_json(payload)
        except ValidationError:
            logger.warning(
                f"session_store: discarding unreadable state session={session_id[:8]}"
            )
            return None

    def restore_redirect_params(
        self, session_id: str, query_params: Mapping[str, object]
    ) -> Optional[dict[str, object]]:
        """Parameters to redirect a bare visit to, or ``None`` to proceed."""
        if len(query_params) > 0:
            return None
        state = self.restore(session_id)
        if state is None:
            return None
        return state.to_params()

    def clear_one_value(
        self,
        session_id: str,
        field: str,
        value: Optional[str] = None,
        *,
        default_period_key: Optional[str] = None,
    ) -> Optional[SessionFilterState]:
        """Remove one filter chip from the stored filter and persist the result.

        For set fields only ``value`` is removed, and the field disappears once
        empty. Scalar fields are cleared outright; clearing ``amount`` also
        drops its operator.
        """
        state = self.restore(session_id)
        if state is None:
            return None

        params = state.filters.to_params()
        if field in ID_FIELDS or field == "types":
            target = (value or "").strip()
            if field == "types":
                target = target.lower()
            remaining = [v for v in params.get(field, []) if v != target]
            if remaining:
                params[field] = remaining
            else:
                params.pop(field, None)
        elif field in SCALAR_FIELDS:
            params.pop(field, None)
            if field == "amount":
                params.pop("amount_operator", None)
        else:
            logger.debug(f"session_store: ignoring clear of unknown field={field!r}")
            return state

        spec = normalize_filters(params, default_period_key)
        return self.record(session_id, spec, state.page, state.per_page)


def _serializer() -> URLSafeSerializer:
    settings = get_settings()
    return URLSafeSerializer(settings.session_secret, salt="filter-session")


def new_session_id() -> str:
    return secrets.token_urlsafe(24)


def sign_session_id(session_id: str) -> str:
    return _serializer().dumps(session_id)


def unsign_session_id(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    try:
        session_id = _serializer().loads(token)
    except BadSignature:
        return None
    return session_id if isinstance(session_id, str) and session_id else None
