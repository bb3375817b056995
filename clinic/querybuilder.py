"""
Generic filtering, searching, sorting and pagination over the ORM.

A :class:`QueryConfig` declares, per resource, which query parameters may
filter which fields and how their values are typed.  :class:`QueryBuilder`
turns raw query parameters into a :class:`QueryPlan`:

* ``search=<text>`` matches any of the configured search fields
  (case-insensitive ``contains``, OR-combined);
* ``<field>[_<op>]=<value>`` filters a configured field where ``op`` is
  one of ``eq ne gt gte lt lte in between like ilike null not_null``
  (no suffix means ``eq``); unknown fields are ignored;
* ``limit``/``offset`` paginate and ``sort_by``/``sort_order`` sort, with
  silent fallback to the configured defaults.

Malformed filter values raise :class:`~clinic.exceptions.ApiError` with
code ``INVALID_FILTER``.
"""
from __future__ import annotations

import datetime as dt
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from django.db.models import Q, QuerySet
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime

from clinic.exceptions import ApiError

# Longer suffixes first so that "_not_null" is not read as "_null".
OPERATOR_SUFFIXES = ('_not_null', '_between', '_ilike', '_null', '_like', '_gte', '_lte',
                     '_gt', '_lt', '_eq', '_ne', '_in')
RESERVED_PARAMS = {'search', 'limit', 'offset', 'sort_by', 'sort_order'}
MAX_IN_VALUES = 100
MAX_SEARCH_LENGTH = 500
DEFAULT_LIMIT = 10

UUID_RE = re.compile(r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$', re.IGNORECASE)

_LOOKUPS = {
    'eq': 'exact',
    'gt': 'gt',
    'gte': 'gte',
    'lt': 'lt',
    'lte': 'lte',
    'in': 'in',
    'between': 'range',
    'like': 'contains',
    'ilike': 'icontains',
}


@dataclass(frozen=True)
class FieldSpec:
    """Type of a filterable field.

    ``type`` is one of ``string integer float decimal boolean date datetime
    enum uuid``.  ``lookup`` is the ORM path when it differs from the
    parameter name (``assigned_dietitian_id`` for ``dietitian_id``).
    """
    type: str = 'string'
    values: Tuple[str, ...] = ()
    lookup: Optional[str] = None


@dataclass(frozen=True)
class QueryConfig:
    search_fields: Sequence[str] = ()
    filterable_fields: Mapping[str, FieldSpec] = field(default_factory=dict)
    sortable_fields: Sequence[str] = ()
    default_sort: Tuple[str, str] = ('created_at', 'DESC')
    max_limit: int = 100
    default_limit: int = DEFAULT_LIMIT
    # sort_by names that map onto a different ORM path
    sort_aliases: Mapping[str, str] = field(default_factory=dict)


@dataclass
class QueryPlan:
    where: Q
    limit: int
    offset: int
    sort_by: str
    sort_order: str
    ordering: List[str]

    def apply(self, queryset: QuerySet) -> Tuple[QuerySet, int]:
        """Filter, count, order and slice ``queryset``; return ``(page, total)``."""
        qs = queryset.filter(self.where)
        total = qs.count()
        page = qs.order_by(*self.ordering)[self.offset:self.offset + self.limit]
        return page, total

    def pagination(self, total: int) -> Dict[str, int]:
        return {'total': total, 'limit': self.limit, 'offset': self.offset}


class QueryBuilder:
    def __init__(self, config: QueryConfig):
        self.config = config

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------
    def build(self, params: Optional[Mapping[str, Any]] = None) -> QueryPlan:
        params = params or {}
        where = Q()

        search = self._first(params, 'search')
        if search is not None:
            where &= self._build_search(str(search))

        for key in params.keys():
            if key in RESERVED_PARAMS:
                continue
            name, operator = self.parse_key(key)
            spec = self.config.filterable_fields.get(name)
            if spec is None:
                continue
            where &= self._build_filter(name, operator, self._first(params, key), spec)

        limit, offset = self._build_pagination(params)
        sort_by, sort_order = self._build_sort(params)
        path = self.config.sort_aliases.get(sort_by, sort_by)
        ordering = [('-' if sort_order == 'DESC' else '') + path]
        if path != 'id':
            ordering.append('-id' if sort_order == 'DESC' else 'id')
        return QueryPlan(where=where, limit=limit, offset=offset, sort_by=sort_by,
                         sort_order=sort_order, ordering=ordering)

    @staticmethod
    def _first(params: Mapping[str, Any], key: str):
        # QueryDict.get returns the last value of a repeated parameter; use the first
        if hasattr(params, 'getlist'):
            values = params.getlist(key)
            return values[0] if values else None
        return params.get(key)

    @staticmethod
    def parse_key(key: str) -> Tuple[str, str]:
        for suffix in OPERATOR_SUFFIXES:
            if key.endswith(suffix) and len(key) > len(suffix):
                return key[:-len(suffix)], suffix[1:]
        return key, 'eq'

    # ------------------------------------------------------------------
    # search
    # ------------------------------------------------------------------
    def _build_search(self, term: str) -> Q:
        if len(term) > MAX_SEARCH_LENGTH:
            raise ApiError(f'Search term must be at most {MAX_SEARCH_LENGTH} characters', code='INVALID_FILTER')
        term = term.strip()
        if not term or not self.config.search_fields:
            return Q()
        q = Q()
        for path in self.config.search_fields:
            q |= Q(**{f'{path}__icontains': term})
        return q

    # ------------------------------------------------------------------
    # filters
    # ------------------------------------------------------------------
    def _build_filter(self, name: str, operator: str, raw, spec: FieldSpec) -> Q:
        path = spec.lookup or name
        if operator in ('null', 'not_null'):
            flag = parse_boolean(raw)
            if flag is None:
                raise ApiError(f'Invalid boolean value for {name}_{operator}', code='INVALID_FILTER')
            is_null = flag if operator == 'null' else not flag
            return Q(**{f'{path}__isnull': is_null})

        try:
            value = self.convert(raw, spec, operator)
        except ValueError as exc:
            raise ApiError(str(exc), code='INVALID_FILTER')

        if operator == 'ne':
            return ~Q(**{path: value})
        return Q(**{f'{path}__{_LOOKUPS[operator]}': value})

    def convert(self, raw, spec: FieldSpec, operator: str):
        if raw is None:
            raise ValueError('Missing filter value')
        raw = str(raw)
        if operator == 'in':
            parts = [p.strip() for p in raw.split(',')]
            if len(parts) > MAX_IN_VALUES:
                raise ValueError(f'Maximum {MAX_IN_VALUES} values allowed for _in operator')
            return [self._convert_one(p, spec) for p in parts]
        if operator == 'between':
            parts = [p.strip() for p in raw.split(',')]
            if len(parts) != 2:
                raise ValueError('_between requires exactly 2 comma-separated values')
            return tuple(self._convert_one(p, spec) for p in parts)
        if operator in ('like', 'ilike'):
            return raw
        return self._convert_one(raw.strip() if spec.type != 'string' else raw, spec)

    def _convert_one(self, value: str, spec: FieldSpec):
        kind = spec.type
        if kind == 'integer':
            try:
                return int(value)
            except ValueError:
                raise ValueError(f'Invalid integer: {value}')
        if kind in ('float', 'decimal'):
            try:
                return Decimal(value) if kind == 'decimal' else float(value)
            except (ValueError, InvalidOperation):
                raise ValueError(f'Invalid number: {value}')
        if kind == 'boolean':
            flag = parse_boolean(value)
            if flag is None:
                raise ValueError(f'Invalid boolean value: {value}')
            return flag
        if kind == 'date':
            return parse_date_value(value)
        if kind == 'datetime':
            return parse_datetime_value(value)
        if kind == 'enum':
            if not spec.values:
                raise ValueError('Enum values not configured')
            for allowed in spec.values:
                if allowed.lower() == value.lower():
                    return allowed
            raise ValueError(f"Invalid enum value: {value}. Must be one of: {', '.join(spec.values)}")
        if kind == 'uuid':
            if not UUID_RE.match(value):
                raise ValueError(f'Invalid UUID: {value}')
            return value
        return value

    # ------------------------------------------------------------------
    # pagination & sort
    # ------------------------------------------------------------------
    def _build_pagination(self, params) -> Tuple[int, int]:
        limit = _to_int(self._first(params, 'limit'))
        offset = _to_int(self._first(params, 'offset'))
        if limit is None or limit <= 0:
            limit = self.config.default_limit
        limit = min(limit, self.config.max_limit)
        if offset is None or offset < 0:
            offset = 0
        return limit, offset

    def _build_sort(self, params) -> Tuple[str, str]:
        default_field, default_order = self.config.default_sort
        sort_by = self._first(params, 'sort_by') or default_field
        if sort_by not in self.config.sortable_fields:
            sort_by = default_field
        sort_order = str(self._first(params, 'sort_order') or default_order).upper()
        if sort_order not in ('ASC', 'DESC'):
            sort_order = default_order
        return sort_by, sort_order


def parse_boolean(value) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return {1: True, 0: False}.get(value)
    if isinstance(value, str):
        lower = value.strip().lower()
        if lower in ('true', '1'):
            return True
        if lower in ('false', '0'):
            return False
    return None


def parse_date_value(value: str) -> dt.date:
    try:
        parsed = parse_date(value)
    except ValueError:
        parsed = None
    if parsed is None:
        moment = _parse_datetime_or_none(value)
        if moment is None:
            raise ValueError(f'Invalid date: {value}')
        return moment.date()
    return parsed


def parse_datetime_value(value: str) -> dt.datetime:
    moment = _parse_datetime_or_none(value)
    if moment is None:
        try:
            day = parse_date(value)
        except ValueError:
            day = None
        if day is None:
            raise ValueError(f'Invalid date: {value}')
        moment = dt.datetime.combine(day, dt.time.min)
    if timezone.is_naive(moment):
        moment = timezone.make_aware(moment)
    return moment


def _parse_datetime_or_none(value: str) -> Optional[dt.datetime]:
    try:
        return parse_datetime(value)
    except ValueError:
        return None


def _to_int(value) -> Optional[int]:
    if value is None or value == '':
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
