"""
Predicate, sort and pagination engine over in-memory collections of documents.
"""

import math
import time
from datetime import date, datetime, timezone
from functools import cmp_to_key
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from .types import FilteredResults
from ..schemas import FilterCriterion, Pagination, SortCriterion
from ..util.logging import StructuredLogger, get_logger

_MISSING = object()

CriterionLike = Union[FilterCriterion, Dict[str, Any]]
SortLike = Union[SortCriterion, Dict[str, Any]]
PaginationLike = Union[Pagination, Dict[str, Any]]


def get_nested_value(item: Any, path: str) -> Any:
    """Resolve a dot path against nested dicts (and attributes). Missing parts yield None."""
    current = item
    for key in path.split("."):
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and key.isdigit():
            index = int(key)
            current = current[index] if index < len(current) else None
        else:
            current = getattr(current, key, None)
    return current


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value))
    except ValueError:
        return None


def _sign(value: float) -> int:
    return (value > 0) - (value < 0)


def compare_values(a: Any, b: Any, case_sensitive: bool = True) -> int:
    """
    Type-aware three-way comparison.

    Datetimes compare by instant (ISO strings on the other side are parsed), numbers
    numerically, everything else as strings. Case-sensitive string order puts letters
    together regardless of case, lower case first; case-insensitive order ignores case.
    None sorts after every other value.
    """
    if a is None or b is None:
        if a is None and b is None:
            return 0
        return 1 if a is None else -1

    if isinstance(a, date) or isinstance(b, date):
        a_moment = _as_datetime(a)
        b_moment = _as_datetime(b)
        if a_moment is None:
            return -1
        if b_moment is None:
            return 1
        return _sign((a_moment - b_moment).total_seconds())

    a_is_number = isinstance(a, (int, float)) and not isinstance(a, bool)
    b_is_number = isinstance(b, (int, float)) and not isinstance(b, bool)
    if a_is_number or b_is_number:
        a_number = _as_number(a)
        b_number = _as_number(b)
        if a_number is None:
            return -1
        if b_number is None:
            return 1
        return _sign(a_number - b_number)

    a_text = str(a)
    b_text = str(b)
    if case_sensitive:
        a_key = (a_text.casefold(), a_text.swapcase())
        b_key = (b_text.casefold(), b_text.swapcase())
    else:
        a_key = a_text.casefold()
        b_key = b_text.casefold()
    return (a_key > b_key) - (a_key < b_key)


class FilterEngine:
    """Applies filters, multi-key sorts and pagination to lists of documents."""

    def __init__(self, unknown_operator_policy: str = "pass", logger: StructuredLogger = None):
        if unknown_operator_policy not in ["pass", "reject"]:
            raise ValueError(f"unknown_operator_policy must be 'pass' or 'reject': {unknown_operator_policy}")
        self.unknown_operator_policy = unknown_operator_policy
        self.logger = logger or get_logger("filters")
        self._runs = 0
        self._total_time_ms = 0.0
        self._filters_applied = 0
        self._largest_dataset = 0

    # Evaluation

    def evaluate(self, item: Any, criterion: CriterionLike) -> bool:
        """True when item satisfies a single criterion."""
        criterion = _coerce(criterion, FilterCriterion)
        field_value = get_nested_value(item, criterion.field)
        value = criterion.value
        case_sensitive = criterion.case_sensitive
        operator = criterion.operator

        if field_value is None:
            return operator == "ne"

        if operator == "eq":
            return compare_values(field_value, value, case_sensitive) == 0
        if operator == "ne":
            return compare_values(field_value, value, case_sensitive) != 0
        if operator == "gt":
            return compare_values(field_value, value, case_sensitive) > 0
        if operator == "gte":
            return compare_values(field_value, value, case_sensitive) >= 0
        if operator == "lt":
            return compare_values(field_value, value, case_sensitive) < 0
        if operator == "lte":
            return compare_values(field_value, value, case_sensitive) <= 0
        if operator in ("contains", "startsWith", "endsWith"):
            haystack = str(field_value)
            needle = str(value)
            if not case_sensitive:
                haystack = haystack.casefold()
                needle = needle.casefold()
            if operator == "contains":
                return needle in haystack
            if operator == "startsWith":
                return haystack.startswith(needle)
            return haystack.endswith(needle)
        if operator == "in":
            if not isinstance(value, (list, tuple)):
                return False
            return any(compare_values(field_value, v, case_sensitive) == 0 for v in value)
        if operator == "notIn":
            if not isinstance(value, (list, tuple)):
                return True
            return not any(compare_values(field_value, v, case_sensitive) == 0 for v in value)
        if operator == "between":
            if not isinstance(value, (list, tuple)) or len(value) != 2:
                return False
            low, high = value
            return (compare_values(field_value, low, case_sensitive) >= 0
                    and compare_values(field_value, high, case_sensitive) <= 0)
        if operator == "exists":
            return True

        self.logger.warning(f"Unknown filter operator: {operator}")
        return self.unknown_operator_policy == "pass"

    def filter_items(self, items: Iterable[Any], filters: Sequence[CriterionLike]) -> List[Any]:
        criteria = [_coerce(c, FilterCriterion) for c in filters]
        return [item for item in items if all(self.evaluate(item, c) for c in criteria)]

    def sort_items(self, items: Iterable[Any], sort: Sequence[SortLike]) -> List[Any]:
        """Sort by criteria in priority order. Equal items keep their input order."""
        criteria = [_coerce(s, SortCriterion) for s in sort]

        def compare(a, b):
            for criterion in criteria:
                result = compare_values(
                    get_nested_value(a, criterion.field),
                    get_nested_value(b, criterion.field),
                    True,
                )
                if result:
                    return -result if criterion.direction == "desc" else result
            return 0

        return sorted(items, key=cmp_to_key(compare))

    # Public operations

    def apply_filters(self, items: Sequence[Any], filters: Sequence[CriterionLike] = None,
                      sort: Sequence[SortLike] = None, pagination: PaginationLike = None) -> FilteredResults:
        """Filter, then sort, then paginate."""
        started = time.perf_counter()
        data = list(items)

        if filters:
            data = self.filter_items(data, filters)
        if sort:
            data = self.sort_items(data, sort)

        return self._paginate(data, len(items), len(filters or []), pagination, started)

    def apply_filters_in_batches(self, items: Sequence[Any], filters: Sequence[CriterionLike] = None,
                                 sort: Sequence[SortLike] = None, pagination: PaginationLike = None,
                                 batch_size: int = 1000) -> FilteredResults:
        """Filter chunk by chunk, then sort and paginate the combined result once."""
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if len(items) <= batch_size:
            return self.apply_filters(items, filters, sort, pagination)

        started = time.perf_counter()
        data: List[Any] = []
        for start in range(0, len(items), batch_size):
            batch = list(items[start:start + batch_size])
            data.extend(self.filter_items(batch, filters) if filters else batch)

        if sort:
            data = self.sort_items(data, sort)

        return self._paginate(data, len(items), len(filters or []), pagination, started)

    def _paginate(self, data: List[Any], original_count: int, applied_filters: int,
                  pagination: Optional[PaginationLike], started: float) -> FilteredResults:
        total = len(data)
        page = 1
        limit = total
        total_pages = 1

        if pagination is not None:
            pagination = _coerce(pagination, Pagination)
            page = pagination.page
            limit = pagination.limit
            total_pages = math.ceil(total / limit)
            start = (page - 1) * limit
            data = data[start:start + limit]

        elapsed_ms = round((time.perf_counter() - started) * 1000, 3)
        self._record_run(original_count, applied_filters, elapsed_ms)

        return FilteredResults(
            data=data,
            total=total,
            page=page,
            limit=limit,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1,
            filter_stats={
                "applied_filters": applied_filters,
                "filtered_out": original_count - total,
                "processing_time_ms": elapsed_ms,
            },
        )

    # Indexed filtering

    def create_indexed_filter(self, items: Iterable[Any], field: str) -> Dict[Any, List[Any]]:
        """Group items by the value of field for constant-time equality lookups."""
        index: Dict[Any, List[Any]] = {}
        for item in items:
            value = get_nested_value(item, field)
            try:
                index.setdefault(value, []).append(item)
            except TypeError:
                # Unhashable values are grouped by their string form
                index.setdefault(str(value), []).append(item)
        return index

    def apply_indexed_filter(self, index: Dict[Any, List[Any]], value: Any, operator: str = "eq") -> List[Any]:
        """
        Look up items in an indexed filter.

        eq, in and ne are served from the index; any other operator returns every item so
        the caller can fall back to apply_filters.
        """
        if operator == "eq":
            return list(index.get(value, []))
        if operator == "in":
            results = []
            if isinstance(value, (list, tuple)):
                for key in value:
                    results.extend(index.get(key, []))
            return results
        if operator == "ne":
            results = []
            for key, group in index.items():
                if key != value:
                    results.extend(group)
            return results

        return [item for group in index.values() for item in group]

    # Criteria helpers

    @staticmethod
    def date_range_filter(field: str, start: Any, end: Any) -> FilterCriterion:
        return FilterCriterion(field=field, operator="between", value=[start, end])

    @staticmethod
    def text_search_filter(field: str, term: str, case_sensitive: bool = False) -> FilterCriterion:
        return FilterCriterion(field=field, operator="contains", value=term, case_sensitive=case_sensitive)

    @staticmethod
    def status_filter(field: str, statuses: List[str]) -> FilterCriterion:
        return FilterCriterion(field=field, operator="in", value=list(statuses))

    @staticmethod
    def exists_filter(field: str) -> FilterCriterion:
        return FilterCriterion(field=field, operator="exists", value=True)

    # Category presets

    def filter_clients(self, clients: Sequence[Any], name: str = None, type: str = None, status: str = None,
                       portfolio_code: int = None, pagination: PaginationLike = None) -> FilteredResults:
        filters = []
        if name:
            filters.append(self.text_search_filter("name", name))
        if type:
            filters.append(FilterCriterion(field="type", operator="eq", value=type))
        if status:
            filters.append(FilterCriterion(field="status", operator="eq", value=status))
        if portfolio_code is not None:
            filters.append(FilterCriterion(field="portfolioCode", operator="eq", value=portfolio_code))

        return self.apply_filters(clients, filters, [SortCriterion(field="name")], pagination)

    def filter_tasks(self, tasks: Sequence[Any], title: str = None, status: str = None, priority: str = None,
                     assignee: str = None, due_date_range: Sequence[Any] = None, overdue: bool = False,
                     now: datetime = None, pagination: PaginationLike = None) -> FilteredResults:
        filters = []
        if title:
            filters.append(self.text_search_filter("title", title))
        if status:
            filters.append(FilterCriterion(field="status", operator="eq", value=status))
        if priority:
            filters.append(FilterCriterion(field="priority", operator="eq", value=priority))
        if assignee:
            filters.append(FilterCriterion(field="assignee", operator="eq", value=assignee))
        if due_date_range:
            filters.append(self.date_range_filter("dueDate", due_date_range[0], due_date_range[1]))
        if overdue:
            filters.append(FilterCriterion(field="dueDate", operator="lt", value=now or datetime.now(timezone.utc)))
            filters.append(FilterCriterion(field="status", operator="ne", value="COMPLETED"))

        sort = [SortCriterion(field="priority", direction="desc"), SortCriterion(field="dueDate")]
        return self.apply_filters(tasks, filters, sort, pagination)

    def filter_services(self, services: Sequence[Any], kind: str = None, frequency: str = None,
                        status: str = None, client_id: str = None, min_fee: float = None,
                        max_fee: float = None, pagination: PaginationLike = None) -> FilteredResults:
        filters = []
        if kind:
            filters.append(self.text_search_filter("kind", kind))
        if frequency:
            filters.append(FilterCriterion(field="frequency", operator="eq", value=frequency))
        if status:
            filters.append(FilterCriterion(field="status", operator="eq", value=status))
        if client_id:
            filters.append(FilterCriterion(field="clientId", operator="eq", value=client_id))
        if min_fee is not None:
            filters.append(FilterCriterion(field="fee", operator="gte", value=min_fee))
        if max_fee is not None:
            filters.append(FilterCriterion(field="fee", operator="lte", value=max_fee))

        sort = [SortCriterion(field="fee", direction="desc"), SortCriterion(field="kind")]
        return self.apply_filters(services, filters, sort, pagination)

    # Performance

    def _record_run(self, dataset_size: int, applied_filters: int, elapsed_ms: float):
        self._runs += 1
        self._total_time_ms += elapsed_ms
        self._filters_applied += applied_filters
        self._largest_dataset = max(self._largest_dataset, dataset_size)

    def get_performance_stats(self) -> Dict[str, Any]:
        return {
            "runs": self._runs,
            "average_processing_time_ms": round(self._total_time_ms / self._runs, 3) if self._runs else 0.0,
            "total_filters_applied": self._filters_applied,
            "largest_dataset_processed": self._largest_dataset,
        }


def _coerce(value, model):
    if isinstance(value, model):
        return value
    return model.model_validate(value)
