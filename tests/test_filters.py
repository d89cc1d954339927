"""
Tests for the filter engine: operators, comparator, sorting, pagination and presets.
"""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from recordvault.schemas import FilterCriterion, Pagination, SortCriterion
from recordvault.search.filters import FilterEngine, compare_values, get_nested_value

CLIENTS = [
    {"id": "1", "name": "Acme", "type": "LTD", "status": "ACTIVE", "fee": 100, "address": {"city": "Leeds"}},
    {"id": "2", "name": "bakery", "type": "LLP", "status": "INACTIVE", "fee": 250},
    {"id": "3", "name": "Cobbler", "type": "LTD", "status": "ACTIVE", "fee": 50, "address": {"city": "York"}},
    {"id": "4", "name": "Dairy", "type": "SOLE", "status": None, "fee": 250},
]


@pytest.fixture
def engine():
    return FilterEngine()


def ids(items):
    return [item["id"] for item in items]


class TestCompareValues:
    """Test the type-aware comparator."""

    def test_numbers(self):
        assert compare_values(2, 10) < 0
        assert compare_values(10, "10") == 0

    def test_datetimes_against_iso_strings(self):
        moment = datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert compare_values(moment, "2024-01-01T00:00:00Z") == 0
        assert compare_values("2023-12-31T00:00:00+00:00", moment) < 0

    def test_case_sensitive_strings(self):
        assert compare_values("apple", "Apple") != 0
        assert compare_values("apple", "Apple", case_sensitive=False) == 0
        # letters group together regardless of case
        assert compare_values("Banana", "apple") > 0

    def test_none_sorts_last(self):
        assert compare_values(None, 1) > 0
        assert compare_values(1, None) < 0
        assert compare_values(None, None) == 0

    def test_nested_value(self):
        assert get_nested_value(CLIENTS[0], "address.city") == "Leeds"
        assert get_nested_value(CLIENTS[1], "address.city") is None


class TestOperators:
    """Test every filter operator."""

    @pytest.mark.parametrize("operator,value,expected", [
        ("eq", "LTD", ["1", "3"]),
        ("ne", "LTD", ["2", "4"]),
        ("in", ["LLP", "SOLE"], ["2", "4"]),
        ("notIn", ["LTD"], ["2", "4"]),
        ("startsWith", "LT", ["1", "3"]),
        ("endsWith", "LE", ["4"]),
        ("contains", "L", ["1", "2", "3", "4"]),
    ])
    def test_type_field(self, engine, operator, value, expected):
        criterion = FilterCriterion(field="type", operator=operator, value=value)
        assert ids(engine.filter_items(CLIENTS, [criterion])) == expected

    def test_numeric_comparisons(self, engine):
        assert ids(engine.filter_items(CLIENTS, [{"field": "fee", "operator": "gt", "value": 100}])) == ["2", "4"]
        assert ids(engine.filter_items(CLIENTS, [{"field": "fee", "operator": "gte", "value": 100}])) == ["1", "2", "4"]
        assert ids(engine.filter_items(CLIENTS, [{"field": "fee", "operator": "lt", "value": 100}])) == ["3"]
        assert ids(engine.filter_items(CLIENTS, [{"field": "fee", "operator": "lte", "value": 100}])) == ["1", "3"]

    def test_between_is_inclusive(self, engine):
        criterion = {"field": "fee", "operator": "between", "value": [50, 100]}
        assert ids(engine.filter_items(CLIENTS, [criterion])) == ["1", "3"]

    def test_between_upper_bound_included(self, engine):
        fees = [{"fee": 100}, {"fee": 500}, {"fee": 900}]
        criterion = {"field": "fee", "operator": "between", "value": [200, 900]}

        assert engine.filter_items(fees, [criterion]) == [{"fee": 500}, {"fee": 900}]

    def test_between_requires_two_bounds(self, engine):
        criterion = {"field": "fee", "operator": "between", "value": [50]}
        assert engine.filter_items(CLIENTS, [criterion]) == []

    def test_in_with_non_list_fails_and_not_in_passes(self, engine):
        assert engine.filter_items(CLIENTS, [{"field": "type", "operator": "in", "value": "LTD"}]) == []
        assert len(engine.filter_items(CLIENTS, [{"field": "type", "operator": "notIn", "value": "LTD"}])) == 4

    def test_null_fields_only_satisfy_ne(self, engine):
        eq = {"field": "status", "operator": "eq", "value": None}
        ne = {"field": "status", "operator": "ne", "value": "ACTIVE"}
        assert "4" not in ids(engine.filter_items(CLIENTS, [eq]))
        assert ids(engine.filter_items(CLIENTS, [ne])) == ["2", "4"]

    def test_exists(self, engine):
        criterion = engine.exists_filter("address")
        assert ids(engine.filter_items(CLIENTS, [criterion])) == ["1", "3"]

    def test_status_filter(self, engine):
        criterion = engine.status_filter("type", ["LTD", "SOLE"])
        assert ids(engine.filter_items(CLIENTS, [criterion])) == ["1", "3", "4"]

    def test_case_insensitive_contains(self, engine):
        criterion = {"field": "name", "operator": "contains", "value": "BAK", "caseSensitive": False}
        assert ids(engine.filter_items(CLIENTS, [criterion])) == ["2"]

    def test_unknown_operator_passes_by_default(self, engine):
        criterion = {"field": "type", "operator": "regex", "value": ".*"}
        assert len(engine.filter_items(CLIENTS, [criterion])) == 4

    def test_unknown_operator_rejected_when_configured(self):
        engine = FilterEngine(unknown_operator_policy="reject")
        criterion = {"field": "type", "operator": "regex", "value": ".*"}
        assert engine.filter_items(CLIENTS, [criterion]) == []

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            FilterEngine(unknown_operator_policy="maybe")


class TestSortingAndPaging:
    """Test sort, pagination and batches."""

    def test_multi_key_sort_is_stable(self, engine):
        sort = [SortCriterion(field="fee", direction="desc")]
        assert ids(engine.sort_items(CLIENTS, sort)) == ["2", "4", "1", "3"]

    def test_sort_by_name_groups_case(self, engine):
        assert ids(engine.sort_items(CLIENTS, [{"field": "name"}])) == ["1", "2", "3", "4"]

    def test_pagination(self, engine):
        result = engine.apply_filters(CLIENTS, sort=[{"field": "id"}], pagination=Pagination(page=2, limit=3))

        assert ids(result.data) == ["4"]
        assert result.total == 4
        assert result.total_pages == 2
        assert result.has_previous is True
        assert result.has_next is False

    def test_no_pagination_returns_everything(self, engine):
        result = engine.apply_filters(CLIENTS)
        assert result.total == 4
        assert result.total_pages == 1

    def test_filter_stats(self, engine):
        result = engine.apply_filters(CLIENTS, [{"field": "type", "operator": "eq", "value": "LTD"}])
        assert result.filter_stats["applied_filters"] == 1
        assert result.filter_stats["filtered_out"] == 2

    def test_batches_match_single_pass(self, engine):
        items = [{"id": str(i), "n": i % 7} for i in range(50)]
        filters = [{"field": "n", "operator": "gte", "value": 3}]
        sort = [{"field": "n", "direction": "desc"}]

        whole = engine.apply_filters(items, filters, sort, {"page": 1, "limit": 10})
        batched = engine.apply_filters_in_batches(items, filters, sort, {"page": 1, "limit": 10}, batch_size=8)
        assert batched.data == whole.data
        assert batched.total == whole.total

    def test_invalid_pagination(self):
        with pytest.raises(ValidationError):
            Pagination(page=0)

    def test_performance_stats(self, engine):
        engine.apply_filters(CLIENTS)
        stats = engine.get_performance_stats()
        assert stats["runs"] == 1
        assert stats["largest_dataset_processed"] == 4


class TestIndexedFilter:
    """Test grouped equality lookups."""

    def test_eq_in_ne(self, engine):
        index = engine.create_indexed_filter(CLIENTS, "type")

        assert ids(engine.apply_indexed_filter(index, "LTD")) == ["1", "3"]
        assert sorted(ids(engine.apply_indexed_filter(index, ["LLP", "SOLE"], "in"))) == ["2", "4"]
        assert sorted(ids(engine.apply_indexed_filter(index, "LTD", "ne"))) == ["2", "4"]

    def test_other_operator_returns_all(self, engine):
        index = engine.create_indexed_filter(CLIENTS, "type")
        assert len(engine.apply_indexed_filter(index, "L", "contains")) == 4


class TestPresets:
    """Test category presets."""

    def test_filter_clients(self, engine):
        result = engine.filter_clients(CLIENTS, type="LTD", status="ACTIVE")
        assert ids(result.data) == ["1", "3"]

    def test_filter_tasks_overdue(self, engine):
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        tasks = [
            {"id": "a", "dueDate": "2024-05-01T00:00:00Z", "status": "OPEN", "priority": "HIGH"},
            {"id": "b", "dueDate": "2024-05-01T00:00:00Z", "status": "COMPLETED", "priority": "HIGH"},
            {"id": "c", "dueDate": "2024-07-01T00:00:00Z", "status": "OPEN", "priority": "LOW"},
        ]
        assert ids(engine.filter_tasks(tasks, overdue=True, now=now).data) == ["a"]

    def test_filter_services_fee_range(self, engine):
        services = [
            {"id": "s1", "kind": "Payroll", "fee": 100},
            {"id": "s2", "kind": "Accounts", "fee": 500},
            {"id": "s3", "kind": "VAT", "fee": 50},
        ]
        result = engine.filter_services(services, min_fee=60, max_fee=600)
        assert ids(result.data) == ["s2", "s1"]

    def test_date_range_helper(self, engine):
        items = [{"id": "x", "at": "2024-03-01T00:00:00Z"}, {"id": "y", "at": "2025-03-01T00:00:00Z"}]
        criterion = engine.date_range_filter(
            "at", datetime(2024, 1, 1, tzinfo=timezone.utc), datetime(2024, 12, 31, tzinfo=timezone.utc)
        )
        assert ids(engine.filter_items(items, [criterion])) == ["x"]
