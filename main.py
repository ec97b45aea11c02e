import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import (
    JSONResponse,
    RedirectResponse,
    Response,
    StreamingResponse,
)
from sqlalchemy.orm import Session

from config import get_settings
from csrf import generate_csrf_token, validate_csrf_token
from csv_utils import export_transactions, parse_amount
from database import get_db
from filters import normalize_filters
from models import Category, Transaction, TransactionType
from periods import PERIOD_KEYS
from scheduler import SchedulerManager
from schemas import FilterSpec, Totals, TransactionIn
from services import (
    AccountService,
    CategoryService,
    MerchantService,
    TagService,
    TransactionService,
)
from session_store import (
    SESSION_COOKIE,
    FilterSessionStore,
    new_session_id,
    sign_session_id,
    unsign_session_id,
)
from totals_cache import AggregationComputeFailure, TotalsCache, get_totals_cache

logger = logging.getLogger(__name__)

MAX_PER_PAGE = 100

app = FastAPI(title="Ledger")

_session_store = FilterSessionStore()


def get_session_store() -> FilterSessionStore:
    return _session_store


def get_cache() -> TotalsCache:
    return get_totals_cache()


@dataclass(frozen=True)
class RequestSession:
    id: str
    is_new: bool


def get_request_session(request: Request) -> RequestSession:
    session_id = unsign_session_id(request.cookies.get(SESSION_COOKIE))
    if session_id:
        return RequestSession(session_id, False)
    return RequestSession(new_session_id(), True)


def with_session_cookie(response: Response, session: RequestSession) -> Response:
    if session.is_new:
        response.set_cookie(
            SESSION_COOKIE,
            sign_session_id(session.id),
            httponly=True,
            samesite="lax",
        )
    return response


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def int_param(
    request: Request, key: str, default: int, *, maximum: Optional[int] = None
) -> int:
    raw = request.query_params.get(key)
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    value = max(value, 1)
    if maximum is not None:
        value = min(value, maximum)
    return value


def transactions_url(params: dict[str, object]) -> str:
    query = urlencode(params, doseq=True)
    path = app.url_path_for("transactions_page")
    return f"{path}?{query}" if query else path


def cached_totals(
    service: TransactionService, spec: FilterSpec, cache: TotalsCache
) -> Totals:
    try:
        return cache.get_totals(
            service.user_id,
            service.mutation_version(),
            spec,
            lambda: service.totals(spec),
        )
    except AggregationComputeFailure as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def serialize_totals(totals: Totals) -> dict[str, object]:
    return {
        "transaction_count": totals.transaction_count,
        "income_cents": totals.income_cents,
        "expense_cents": totals.expense_cents,
        "balance_cents": totals.balance_cents,
        "computed_at": totals.computed_at,
    }


def serialize_transaction(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "date": txn.date,
        "occurred_at": txn.occurred_at,
        "type": txn.type.value,
        "amount_cents": txn.amount_cents,
        "account": txn.account.name if txn.account else None,
        "category": txn.category.name if txn.category else None,
        "merchant": txn.merchant.name if txn.merchant else None,
        "tags": sorted(t.name for t in txn.tags),
        "note": txn.note,
    }


def transaction_payload_from_form(form, db: Session) -> TransactionIn:
    category_id = int(form["category_id"])
    category = db.get(Category, category_id)
    if not category:
        raise ValueError("Category not found")
    txn_date = date.fromisoformat(form["date"])
    occurred_raw = form.get("occurred_at")
    occurred_at = (
        datetime.fromisoformat(occurred_raw)
        if occurred_raw
        else datetime.combine(txn_date, datetime.now().time())
    )
    account_raw = form.get("account_id")
    tags_raw = form.get("tags") or ""
    return TransactionIn(
        date=txn_date,
        occurred_at=occurred_at,
        type=category.type,
        amount_cents=parse_amount(form["amount"]),
        category_id=category_id,
        account_id=int(account_raw) if account_raw else None,
        merchant=form.get("merchant") or None,
        note=form.get("note") or None,
        tags=[t for t in tags_raw.split(",") if t.strip()],
    )


def redirect_to_focus(
    store: FilterSessionStore, session: RequestSession, transaction_id: int
) -> RedirectResponse:
    state = store.restore(session.id)
    params = state.filters.to_params() if state else {}
    if state:
        params["per_page"] = str(state.per_page)
    params["focused_record_id"] = str(transaction_id)
    response = RedirectResponse(url=transactions_url(params), status_code=303)
    response.headers["HX-Trigger"] = "transactions-changed"
    return response


@app.get("/transactions")
def transactions_page(
    request: Request,
    db: Session = Depends(get_db),
    store: FilterSessionStore = Depends(get_session_store),
    cache: TotalsCache = Depends(get_cache),
    session: RequestSession = Depends(get_request_session),
):
    settings = get_settings()
    restore_params = store.restore_redirect_params(session.id, request.query_params)
    if restore_params is not None:
        logger.info(f"filter_restore: session={session.id[:8]}")
        return with_session_cookie(
            RedirectResponse(url=transactions_url(restore_params), status_code=303),
            session,
        )

    spec = normalize_filters(request.query_params, settings.default_period)
    page = int_param(request, "page", 1)
    per_page = int_param(
        request, "per_page", settings.default_per_page, maximum=MAX_PER_PAGE
    )
    txn_service = TransactionService(db)

    focused_record_id: Optional[int] = None
    focus_found: Optional[bool] = None
    focused_raw = request.query_params.get("focused_record_id")
    if focused_raw:
        try:
            focused_record_id = int(focused_raw)
        except ValueError:
            focused_record_id = None
    if focused_record_id is not None:
        focus_page = txn_service.locate(spec, focused_record_id, per_page)
        focus_found = focus_page is not None
        if focus_page is not None:
            page = focus_page

    store.record(session.id, spec, page, per_page)

    totals = cached_totals(txn_service, spec, cache)
    result = txn_service.list(
        spec, page, per_page, total_count=totals.transaction_count
    )
    payload = {
        "filters": spec.to_params(),
        "page": result.page,
        "per_page": result.per_page,
        "has_next": result.has_next,
        "has_previous": result.has_previous,
        "total_count": result.total_count,
        "total_pages": result.total_pages,
        "focused_record_id": focused_record_id,
        "focus_found": focus_found,
        "items": [serialize_transaction(txn) for txn in result.items],
        "totals": serialize_totals(totals),
    }
    return with_session_cookie(JSONResponse(jsonable_encoder(payload)), session)


@app.get("/transactions/clear-filter")
def clear_filter(
    param_key: str,
    param_value: Optional[str] = None,
    store: FilterSessionStore = Depends(get_session_store),
    session: RequestSession = Depends(get_request_session),
):
    settings = get_settings()
    state = store.clear_one_value(
        session.id,
        param_key,
        param_value,
        default_period_key=settings.default_period,
    )
    params = state.to_params() if state else {}
    return with_session_cookie(
        RedirectResponse(url=transactions_url(params), status_code=303), session
    )


@app.get("/transactions/export.csv")
def export_transactions_endpoint(request: Request, db: Session = Depends(get_db)):
    spec = normalize_filters(request.query_params, get_settings().default_period)
    transactions = TransactionService(db).all_matching(spec)
    csv_text = export_transactions(transactions)
    filename = f"transactions_{spec.start_date or 'start'}_{spec.end_date or 'end'}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/totals")
def api_totals(
    request: Request,
    db: Session = Depends(get_db),
    cache: TotalsCache = Depends(get_cache),
):
    spec = normalize_filters(request.query_params, get_settings().default_period)
    totals = cached_totals(TransactionService(db), spec, cache)
    return {"filters": spec.to_params(), "totals": serialize_totals(totals)}


@app.get("/api/filter-options")
def api_filter_options(db: Session = Depends(get_db)):
    return {
        "account_ids": [
            {"id": a.id, "name": a.name} for a in AccountService(db).list_all()
        ],
        "category_ids": [
            {"id": c.id, "name": c.name, "type": c.type.value}
            for c in CategoryService(db).list_all()
        ],
        "merchant_ids": [
            {"id": m.id, "name": m.name} for m in MerchantService(db).list_all()
        ],
        "tag_ids": [{"id": t.id, "name": t.name} for t in TagService(db).list_all()],
        "types": [t.value for t in TransactionType],
        "periods": list(PERIOD_KEYS),
    }


@app.get("/csrf-token")
def csrf_token(session: RequestSession = Depends(get_request_session)):
    return with_session_cookie(
        JSONResponse({"csrf_token": generate_csrf_token(session.id)}), session
    )


@app.post("/transactions")
async def create_transaction(
    request: Request,
    db: Session = Depends(get_db),
    store: FilterSessionStore = Depends(get_session_store),
    session: RequestSession = Depends(get_request_session),
):
    form = await request.form()
    if not validate_csrf_token(form.get("csrf_token", ""), session.id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    try:
        data = transaction_payload_from_form(form, db)
    except Exception as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        txn = TransactionService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if request.headers.get("HX-Request"):
        return Response(status_code=204, headers={"HX-Trigger": "transactions-changed"})
    return redirect_to_focus(store, session, txn.id)


@app.post("/transactions/{transaction_id}/edit")
async def edit_transaction_submit(
    transaction_id: int,
    request: Request,
    db: Session = Depends(get_db),
    store: FilterSessionStore = Depends(get_session_store),
    session: RequestSession = Depends(get_request_session),
):
    form = await request.form()
    if not validate_csrf_token(form.get("csrf_token", ""), session.id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    try:
        data = transaction_payload_from_form(form, db)
    except Exception as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    service = TransactionService(db)
    try:
        service.get(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    try:
        txn = service.update(transaction_id, data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if request.headers.get("HX-Request"):
        return Response(status_code=204, headers={"HX-Trigger": "transactions-changed"})
    return redirect_to_focus(store, session, txn.id)


@app.post("/transactions/{transaction_id}/delete")
async def delete_transaction(
    transaction_id: int,
    request: Request,
    db: Session = Depends(get_db),
    session: RequestSession = Depends(get_request_session),
):
    form = await request.form()
    if not validate_csrf_token(form.get("csrf_token", ""), session.id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    try:
        TransactionService(db).soft_delete(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204, headers={"HX-Trigger": "transactions-changed"})


@app.post("/transactions/{transaction_id}/restore")
async def restore_transaction(
    transaction_id: int,
    request: Request,
    db: Session = Depends(get_db),
    session: RequestSession = Depends(get_request_session),
):
    form = await request.form()
    if not validate_csrf_token(form.get("csrf_token", ""), session.id):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")
    try:
        TransactionService(db).restore(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204, headers={"HX-Trigger": "transactions-changed"})


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
