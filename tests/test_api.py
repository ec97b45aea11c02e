from datetime import date, datetime, timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import main
from database import Base, get_db
from models import TransactionType
from schemas import CategoryIn, TransactionIn
from services import CategoryService, TransactionService
from session_store import FilterSessionStore
from totals_cache import TotalsCache

TODAY = date.today()


@pytest.fixture()
def env():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    cache = TotalsCache()
    store = FilterSessionStore()
    main.app.dependency_overrides[get_db] = override_get_db
    main.app.dependency_overrides[main.get_cache] = lambda: cache
    main.app.dependency_overrides[main.get_session_store] = lambda: store

    with TestingSession() as session:
        categories = CategoryService(session)
        food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))
        travel = categories.create(
            CategoryIn(name="Travel", type=TransactionType.expense)
        )
        salary = categories.create(
            CategoryIn(name="Salary", type=TransactionType.income)
        )
        txns = TransactionService(session)
        recent = []
        for offset in range(5):
            day = TODAY - timedelta(days=offset + 1)
            recent.append(
                txns.create(
                    TransactionIn(
                        date=day,
                        occurred_at=datetime.combine(day, datetime.min.time()),
                        type=TransactionType.expense,
                        amount_cents=1000 + offset,
                        category_id=food.id if offset % 2 == 0 else travel.id,
                        note=f"Expense {offset}",
                    )
                ).id
            )
        paycheck = txns.create(
            TransactionIn(
                date=TODAY,
                occurred_at=datetime.combine(TODAY, datetime.min.time()),
                type=TransactionType.income,
                amount_cents=250_000,
                category_id=salary.id,
                note="Salary",
            )
        ).id
        old_day = TODAY - timedelta(days=60)
        old = txns.create(
            TransactionIn(
                date=old_day,
                occurred_at=datetime.combine(old_day, datetime.min.time()),
                type=TransactionType.expense,
                amount_cents=999,
                category_id=food.id,
                note="Old expense",
            )
        ).id

    client = TestClient(main.app)
    yield {
        "client": client,
        "cache": cache,
        "food": food.id,
        "travel": travel.id,
        "recent": recent,
        "paycheck": paycheck,
        "old": old,
    }
    main.app.dependency_overrides.clear()


def test_first_visit_uses_default_window(env) -> None:
    response = env["client"].get("/transactions")
    assert response.status_code == 200
    body = response.json()

    assert body["filters"]["start_date"] == (TODAY - timedelta(days=30)).isoformat()
    assert body["filters"]["end_date"] == TODAY.isoformat()
    ids = [item["id"] for item in body["items"]]
    assert env["old"] not in ids
    assert ids[0] == env["paycheck"]
    assert body["total_count"] == 6
    assert body["totals"]["income_cents"] == 250_000
    assert body["page"] == 1
    assert body["per_page"] == 50


def test_bare_revisit_redirects_to_last_filter(env) -> None:
    client = env["client"]
    client.get(
        "/transactions",
        params={"category_ids": [str(env["food"])], "per_page": "2", "page": "2"},
    )

    redirect = client.get("/transactions", follow_redirects=False)
    assert redirect.status_code == 303
    query = parse_qs(urlparse(redirect.headers["location"]).query)
    assert query["category_ids"] == [str(env["food"])]
    assert query["page"] == ["2"]
    assert query["per_page"] == ["2"]

    body = client.get("/transactions").json()
    assert body["filters"]["category_ids"] == [str(env["food"])]
    assert body["page"] == 2
    assert body["per_page"] == 2


def test_clear_filter_removes_one_chip(env) -> None:
    client = env["client"]
    client.get(
        "/transactions",
        params={"category_ids": [str(env["food"]), str(env["travel"])]},
    )

    redirect = client.get(
        "/transactions/clear-filter",
        params={"param_key": "category_ids", "param_value": str(env["food"])},
        follow_redirects=False,
    )
    assert redirect.status_code == 303

    body = client.get(redirect.headers["location"]).json()
    assert body["filters"]["category_ids"] == [str(env["travel"])]
    assert {item["category"] for item in body["items"]} == {"Travel"}


def test_focused_record_jumps_to_its_page(env) -> None:
    oldest_recent = env["recent"][-1]
    body = (
        env["client"]
        .get(
            "/transactions",
            params={"per_page": "2", "focused_record_id": str(oldest_recent)},
        )
        .json()
    )

    assert body["focus_found"] is True
    assert body["page"] == 3
    assert oldest_recent in [item["id"] for item in body["items"]]


def test_focus_outside_filter_is_reported(env) -> None:
    body = (
        env["client"]
        .get(
            "/transactions",
            params={"per_page": "2", "page": "2", "focused_record_id": str(env["old"])},
        )
        .json()
    )

    assert body["focus_found"] is False
    assert body["page"] == 2


def test_per_page_is_clamped(env) -> None:
    body = env["client"].get("/transactions", params={"per_page": "1000"}).json()
    assert body["per_page"] == 100


def test_totals_are_cached_until_a_mutation(env) -> None:
    client = env["client"]
    cache = env["cache"]

    first = client.get("/api/totals").json()["totals"]
    second = client.get("/api/totals").json()["totals"]
    assert second == first
    assert len(cache) == 1

    token = client.get("/csrf-token").json()["csrf_token"]
    deleted = client.post(
        f"/transactions/{env['recent'][0]}/delete", data={"csrf_token": token}
    )
    assert deleted.status_code == 204

    third = client.get("/api/totals").json()["totals"]
    assert third["transaction_count"] == first["transaction_count"] - 1
    assert third["expense_cents"] == first["expense_cents"] - 1000
    assert len(cache) == 2


def test_create_redirects_to_focus_on_new_record(env) -> None:
    client = env["client"]
    client.get("/transactions", params={"types": "expense"})
    token = client.get("/csrf-token").json()["csrf_token"]

    response = client.post(
        "/transactions",
        data={
            "csrf_token": token,
            "date": TODAY.isoformat(),
            "amount": "12,34",
            "category_id": str(env["food"]),
            "merchant": "Bakery",
            "note": "Bread",
            "tags": "Breakfast, Daily",
        },
        follow_redirects=False,
    )
    assert response.status_code == 303
    query = parse_qs(urlparse(response.headers["location"]).query)
    assert query["types"] == ["expense"]
    assert "focused_record_id" in query

    body = client.get(response.headers["location"]).json()
    assert body["focus_found"] is True
    created = next(
        item
        for item in body["items"]
        if item["id"] == int(query["focused_record_id"][0])
    )
    assert created["amount_cents"] == 1234
    assert created["merchant"] == "Bakery"
    assert created["tags"] == ["Breakfast", "Daily"]


def test_mutations_require_csrf_token(env) -> None:
    response = env["client"].post(
        f"/transactions/{env['recent'][0]}/delete", data={"csrf_token": "nope"}
    )
    assert response.status_code == 400


def test_delete_unknown_transaction_is_404(env) -> None:
    client = env["client"]
    token = client.get("/csrf-token").json()["csrf_token"]
    response = client.post("/transactions/9999/delete", data={"csrf_token": token})
    assert response.status_code == 404


def test_export_uses_the_same_filter(env) -> None:
    response = env["client"].get(
        "/transactions/export.csv", params={"types": "income"}
    )
    assert response.status_code == 200
    lines = response.text.strip().splitlines()
    assert lines[0].startswith("Date,Type,Amount")
    assert len(lines) == 2
    assert ",income,2500.00," in lines[1]


def test_filter_options_list_selectable_values(env) -> None:
    body = env["client"].get("/api/filter-options").json()

    assert {c["name"] for c in body["category_ids"]} == {"Food", "Travel", "Salary"}
    assert body["account_ids"] == []
    assert body["types"] == ["income", "expense"]
    assert "last_30_days" in body["periods"]
