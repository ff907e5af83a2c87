"""
Translate FHIR-style search parameters into a store QueryPlan.

    date=gt2024-01-01      -> date > "2024-01-01"
    code.text=Glucose      -> code.text == "Glucose"
    _sort=-date,code       -> date desc, code asc
    _count=10              -> limit 10
    _id=obs1               -> point lookup
"""
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from ..errors import ValidationError
from ..store import Filter, QueryPlan, SortField

DEFAULT_COUNT = 100

RESERVED_KEYS = {"_id", "_count", "_sort", "_format", "_include", "_revinclude", "userId"}

PREFIX_OPERATORS = {
    "gt": ">",
    "lt": "<",
    "ge": ">=",
    "le": "<=",
    "eq": "==",
}


@dataclass
class SearchPlan:
    resource_type: str
    point_id: Optional[str] = None
    plan: QueryPlan = field(default_factory=QueryPlan)

    @property
    def is_point_lookup(self) -> bool:
        return self.point_id is not None


def parse_value(value: str) -> Tuple[str, str]:
    """Split a comparison prefix from its comparand"""
    value = value or ""
    prefix = value[:2]
    if prefix in PREFIX_OPERATORS and len(value) > 2:
        return PREFIX_OPERATORS[prefix], value[2:]
    return "==", value


def parse_sort(spec: str) -> List[SortField]:
    out: List[SortField] = []
    for raw in (spec or "").split(","):
        name = raw.strip()
        if not name:
            continue
        descending = name.startswith("-")
        name = name[1:].strip() if descending else name
        if name:
            out.append(SortField(path=name, descending=descending))
    return out


def parse_count(raw: str) -> int:
    try:
        count = int((raw or "").strip())
    except ValueError:
        raise ValidationError(f"Invalid _count: {raw}")
    if count < 0:
        raise ValidationError(f"Invalid _count: {raw}")
    return count


def translate(params: Iterable[Tuple[str, str]], resource_type: str, default_count: int = DEFAULT_COUNT) -> SearchPlan:
    """Build a SearchPlan from ordered query string pairs"""
    search = SearchPlan(resource_type=resource_type)
    search.plan.limit = default_count

    for key, value in params:
        if key == "_id":
            if value:
                search.point_id = value
            continue
        if key == "_count":
            search.plan.limit = parse_count(value)
            continue
        if key == "_sort":
            search.plan.sort.extend(parse_sort(value))
            continue
        if key in RESERVED_KEYS or key.startswith("_"):
            continue
        op, comparand = parse_value(value)
        search.plan.filters.append(Filter(path=key, op=op, value=comparand))

    return search
