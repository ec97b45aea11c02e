from datetime import date, timedelta

from starlette.datastructures import QueryParams

from filters import filter_digest, normalize_filters
from models import AmountOperator, TransactionType

TODAY = date(2025, 3, 15)


def test_empty_input_gets_default_period() -> None:
    spec = normalize_filters({}, "last_30_days", today=TODAY)

    assert spec.start_date == TODAY - timedelta(days=30)
    assert spec.end_date == TODAY
    assert spec.search is None
    assert spec.amount_cents is None
    assert spec.amount_operator is None
    assert spec.category_ids == ()
    assert spec.types == ()


def test_unset_or_invalid_preference_falls_back_to_thirty_days() -> None:
    for preference in (None, "", "fortnight"):
        spec = normalize_filters(None, preference, today=TODAY)
        assert spec.end_date == TODAY
        assert (spec.end_date - spec.start_date).days == 30


def test_preference_controls_window_width() -> None:
    spec = normalize_filters({}, "last_90_days", today=TODAY)
    assert (spec.end_date - spec.start_date).days == 90


def test_period_param_overrides_preference() -> None:
    spec = normalize_filters({"period": "this_year"}, "last_30_days", today=TODAY)
    assert spec.start_date == date(2025, 1, 1)
    assert spec.end_date == date(2025, 12, 31)


def test_unknown_period_param_falls_back_to_preference() -> None:
    spec = normalize_filters({"period": "bogus"}, "last_90_days", today=TODAY)
    assert spec.end_date == TODAY
    assert (spec.end_date - spec.start_date).days == 90


def test_unknown_period_param_and_preference_use_fallback_window() -> None:
    spec = normalize_filters({"period": "bogus"}, "also_bogus", today=TODAY)
    assert (spec.end_date - spec.start_date).days == 30


def test_single_explicit_date_is_kept_alone() -> None:
    spec = normalize_filters({"start_date": "2025-01-01"}, "last_30_days", today=TODAY)
    assert spec.start_date == date(2025, 1, 1)
    assert spec.end_date is None


def test_reversed_dates_are_swapped() -> None:
    spec = normalize_filters(
        {"start_date": "2025-02-01", "end_date": "2025-01-01"}, today=TODAY
    )
    assert spec.start_date == date(2025, 1, 1)
    assert spec.end_date == date(2025, 2, 1)


def test_blank_and_malformed_values_are_dropped() -> None:
    spec = normalize_filters(
        {
            "search": "   ",
            "amount": "abc",
            "amount_operator": "between",
            "category_ids": ["", "x", "3", "3", "-1"],
            "types": ["income", "bogus", ""],
            "start_date": "not-a-date",
            "colour": "red",
        },
        "last_7_days",
        today=TODAY,
    )

    assert spec.search is None
    assert spec.amount_cents is None
    assert spec.amount_operator is None
    assert spec.category_ids == (3,)
    assert spec.types == (TransactionType.income,)
    assert spec.start_date == TODAY - timedelta(days=7)
    assert spec.end_date == TODAY


def test_amounts_beyond_decimal_precision_are_dropped() -> None:
    spec = normalize_filters(
        {"amount": "1e50", "amount_operator": "greater_than"}, today=TODAY
    )
    assert spec.amount_cents is None
    assert spec.amount_operator is None


def test_amounts_beyond_integer_column_range_are_dropped() -> None:
    spec = normalize_filters({"amount": "100000000000000000000"}, today=TODAY)
    assert spec.amount_cents is None

    largest = normalize_filters({"amount": "92233720368547758.07"}, today=TODAY)
    assert largest.amount_cents == 2**63 - 1


def test_operator_without_amount_is_dropped() -> None:
    spec = normalize_filters({"amount_operator": "greater_than"}, today=TODAY)
    assert spec.amount_cents is None
    assert spec.amount_operator is None


def test_amount_without_operator_means_equal() -> None:
    bare = normalize_filters({"amount": "12,50"}, today=TODAY)
    explicit = normalize_filters(
        {"amount": "12.50", "amount_operator": "equal"}, today=TODAY
    )

    assert bare.amount_cents == 1250
    assert bare.amount_operator == AmountOperator.equal
    assert bare == explicit


def test_set_fields_are_sorted_and_deduplicated() -> None:
    spec = normalize_filters(
        {
            "account_ids": ["7", "2", "7"],
            "merchant_ids": "4",
            "tag_ids": ["9", " 1 "],
            "types": ["expense", "Income", "expense"],
        },
        today=TODAY,
    )

    assert spec.account_ids == (2, 7)
    assert spec.merchant_ids == (4,)
    assert spec.tag_ids == (1, 9)
    assert spec.types == (TransactionType.expense, TransactionType.income)


def test_normalize_is_idempotent() -> None:
    raws = [
        {},
        {"search": "  rent  ", "amount": "99", "amount_operator": "less_than"},
        {
            "start_date": "2025-01-01",
            "end_date": "2025-01-31",
            "category_ids": ["2", "1"],
            "tag_ids": ["5"],
            "types": ["income"],
        },
        {"end_date": "2025-02-01", "amount_operator": "greater_than"},
        {"amount": "90071992547409.93"},
        {"amount": "0.07", "amount_operator": "less_than"},
    ]
    for raw in raws:
        spec = normalize_filters(raw, "last_30_days", today=TODAY)
        again = normalize_filters(spec.to_params(), "last_30_days", today=TODAY)
        assert again == spec


def test_large_amounts_keep_every_cent_in_params() -> None:
    spec = normalize_filters({"amount": "90071992547409.93"}, today=TODAY)

    assert spec.amount_cents == 9_007_199_254_740_993
    assert spec.to_params()["amount"] == "90071992547409.93"


def test_to_params_never_contains_blank_values() -> None:
    spec = normalize_filters(
        {"search": " ", "category_ids": [""], "amount_operator": "equal"}, today=TODAY
    )
    params = spec.to_params()

    assert set(params) == {"start_date", "end_date"}
    assert all(params.values())


def test_digest_is_stable_under_reordering_and_whitespace() -> None:
    a = {
        "category_ids": ["2", "1"],
        "search": " coffee  beans ",
        "types": ["expense", "income"],
        "start_date": "2025-01-01",
        "end_date": "2025-01-31",
    }
    b = {
        "types": [" income", "expense "],
        "end_date": " 2025-01-31 ",
        "search": "coffee beans",
        "start_date": "2025-01-01",
        "category_ids": ["1", " 2", "1"],
    }

    spec_a = normalize_filters(a, today=TODAY)
    spec_b = normalize_filters(b, today=TODAY)

    assert spec_a == spec_b
    assert filter_digest(spec_a) == filter_digest(spec_b)


def test_digest_differs_for_different_filters() -> None:
    base = normalize_filters({"category_ids": ["1"]}, today=TODAY)
    other = normalize_filters({"category_ids": ["2"]}, today=TODAY)
    assert filter_digest(base) != filter_digest(other)


def test_accepts_query_params_with_repeated_keys() -> None:
    params = QueryParams("category_ids=1&category_ids=2&search=tea&page=3")
    spec = normalize_filters(params, "last_30_days", today=TODAY)

    assert spec.category_ids == (1, 2)
    assert spec.search == "tea"
    assert spec.end_date == TODAY
