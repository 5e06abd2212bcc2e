"""The compiler turning filter trees into mongodb filters and aggregation pipelines"""

import logging
from collections.abc import Mapping
from datetime import date, datetime
from typing import Any

from bson import json_util
from bson.json_util import RELAXED_JSON_OPTIONS
from pydantic import BaseModel, ValidationError

from .._errors import StructuralError
from .._options import FilterOptions
from .coercion import convert_to_expected_type, to_mongo_comparable
from .global_search import GlobalSearchResolver
from .handlers import OperatorRegistry, get_registry
from .operators import (
    LIST_OPERATORS,
    RANGE_OPERATORS,
    VALUELESS_OPERATORS,
    FilterOperator,
    LogicMode,
)
from .parsers import parse_expression
from .predicate import FilterGroup, FilterRequest, format_value
from .schema import ResolvedField, resolve_field
from .selectors import Pipeline, QuerySelector, and_, nor_, or_
from .validation import (
    as_single_entry,
    as_value_list,
    validate_expression,
    validate_operator,
    validate_value,
    validate_value_count,
)
from .virtual import log_pipeline, resolve_virtual_stages

MAX_DEPTH = 100
"""the deepest a filter tree may be nested"""

Query = FilterGroup | FilterRequest | str | Mapping | list | None
"""anything that can be compiled: a tree, a textual expression or its JSON form"""

_READABLE_OPERATORS = {
    "$eq": "==",
    "$ne": "!=",
    "$gt": ">",
    "$gte": ">=",
    "$lt": "<",
    "$lte": "<=",
    "$in": "in",
    "$nin": "!in",
    "$regex": "~",
    "$exists": "exists",
    "$size": "size",
    "$type": "type",
}


class FilterCompiler:
    """Compiles filters for a given schema into mongodb filters or pipelines

    Every request is checked against the schema: the field must exist, the operator
    must suit the field's type and the value is converted to that type.
    If no schema is given, requests are compiled as they are.

    Args:
        registry: the registry of operator handlers; the default registry if not given
    """

    def __init__(self, registry: OperatorRegistry | None = None):
        self._registry = registry or get_registry()

    def to_mongo(
        self,
        model: type[BaseModel] | None,
        query: Query,
        options: FilterOptions | None = None,
    ) -> QuerySelector:
        """Compiles the query into a mongodb filter

        Args:
            model: the schema of the documents; None to skip all checks
            query: the filter as a tree, a textual expression or its JSON form
            options: the default options; CONTROL requests in the query override them

        Returns:
            the mongodb filter; ``{}`` if the query is empty

        Raises:
            FilterError: the query is malformed or does not suit the schema
        """
        group, options = self.prepare(query, options)
        selector = self.compile_group(model, group, options)
        if options.debug:
            logging.info(f"compiled filter for {_name(model)}: {to_json(selector)}")
        return selector

    def to_pipeline(
        self,
        model: type[BaseModel] | None,
        query: Query = None,
        options: FilterOptions | None = None,
    ) -> Pipeline:
        """Compiles the query into a mongodb aggregation pipeline

        The stages are, in order: the virtual field stages if ``resolve_virtual_fields``
        is set, the ``$match`` of the filter if it is not empty, and the ``$project``
        of the projection if any.

        Args:
            model: the schema of the documents; None to skip all checks
            query: the filter as a tree, a textual expression or its JSON form
            options: the default options; CONTROL requests in the query override them

        Returns:
            the list of stages

        Raises:
            FilterError: the query is malformed or does not suit the schema
        """
        group, options = self.prepare(query, options)
        selector = self.compile_group(model, group, options)

        pipeline: Pipeline = []
        if options.resolve_virtual_fields and model is not None:
            pipeline.extend(resolve_virtual_stages(model))
        if selector:
            pipeline.append({"$match": selector})

        projection = build_projection(options)
        if projection:
            pipeline.append({"$project": projection})

        if options.debug:
            log_pipeline(pipeline)
        return pipeline

    def prepare(
        self, query: Query, options: FilterOptions | None = None
    ) -> tuple[FilterGroup, FilterOptions]:
        """Converts the query into a fresh FilterGroup and extracts its CONTROL requests

        The given query is never modified.

        Returns:
            tuple of (the group without CONTROL requests, the resulting options)
        """
        group = to_filter_group(query)
        options = FilterOptions.from_filter_group(group, options)
        return group, options

    def compile_group(
        self,
        model: type[BaseModel] | None,
        group: FilterGroup,
        options: FilterOptions,
        depth: int = 1,
    ) -> QuerySelector:
        """Compiles a group whose CONTROL requests have already been extracted

        The components are bucketed by their logic. AND components are all required,
        at least one OR component is required and NOR or NOT components must all be false.
        Several non-empty buckets are combined with ``$and``.

        Raises:
            StructuralError: Maximum filter nesting depth exceeded
        """
        if depth > MAX_DEPTH:
            raise StructuralError(
                "Maximum filter nesting depth exceeded",
                hint=f"filters can be nested at most {MAX_DEPTH} levels deep",
            )

        buckets: dict[LogicMode, list[QuerySelector]] = {mode: [] for mode in LogicMode}
        for item in group.components:
            if isinstance(item, FilterGroup):
                selector = self.compile_group(model, item, options, depth + 1)
            else:
                selector = self.compile_request(model, item, options)

            if selector:
                buckets[item.logic].append(selector)

        return and_(
            [
                and_(buckets[LogicMode.AND]),
                or_(buckets[LogicMode.OR]),
                nor_(buckets[LogicMode.NOR]),
                nor_(buckets[LogicMode.NOT]),
            ]
        )

    def compile_request(
        self,
        model: type[BaseModel] | None,
        request: FilterRequest,
        options: FilterOptions,
    ) -> QuerySelector:
        """Compiles a single request into a mongodb filter

        Raises:
            StructuralError: the request is a CONTROL request or an invalid EXPR
            FieldResolutionError: the field is not on the schema
            FilterValidationError: the operator or value does not suit the field
            CoercionError: the value cannot be converted to the field's type
            UnknownOperatorError: the operator has no handler
        """
        op = request.filter_operator
        if op == FilterOperator.CONTROL:
            raise StructuralError(
                f"CONTROL request '{request.field}' cannot be compiled into a filter",
                hint="extract the options of the filter first",
            )

        if op == FilterOperator.GLOBAL:
            if model is None:
                raise StructuralError("Global search requires a model")
            return GlobalSearchResolver(model, options).resolve(request.value)

        if op == FilterOperator.EXPR:
            return {"$expr": validate_expression(request.value)}

        handler = self._registry.get(request.operator)
        if model is None or op is None:
            value = request.value
            if op in RANGE_OPERATORS or op in LIST_OPERATORS:
                value = validate_value_count(request.field, op, value)
            return handler(request.field, to_mongo_comparable(value))

        resolved = resolve_field(model, request.field)
        validate_operator(resolved, op, model)
        if op in VALUELESS_OPERATORS:
            return handler(request.field, request.value)

        validate_value(resolved, op, request.value)
        value = _coerce(resolved, op, request.value)
        parse_strings = resolved.value_type is not str
        return handler(request.field, to_mongo_comparable(value, parse_strings))


def to_filter_group(query: Query) -> FilterGroup:
    """Converts anything that can be compiled into a new FilterGroup

    Args:
        query: a FilterGroup or FilterRequest, a textual expression, the JSON form
            of a group or request, or a list of components

    Returns:
        a FilterGroup that shares nothing with the query

    Raises:
        StructuralError: the query cannot be read as a filter
    """
    if query is None:
        return FilterGroup()
    if isinstance(query, FilterGroup):
        return query.model_copy(deep=True)
    if isinstance(query, FilterRequest):
        return FilterGroup(components=[query])
    if isinstance(query, str):
        return parse_expression(query)
    try:
        if isinstance(query, list):
            return FilterGroup.model_validate({"components": query})
        if isinstance(query, Mapping):
            if "components" in query or str(query.get("type", "")).lower() == "group":
                return FilterGroup.model_validate(query)
            return FilterGroup(components=[FilterRequest.model_validate(query)])
    except ValidationError as exp:
        raise StructuralError(f"Malformed filter: {exp}") from exp

    raise StructuralError(f"Cannot read a filter from {type(query).__name__}")


def build_projection(options: FilterOptions) -> dict[str, int]:
    """Builds the mongodb projection from the project or, failing that, exclude options"""
    if options.project:
        return {v: 1 for v in options.project}
    if options.exclude:
        return {v: 0 for v in options.exclude}
    return {}


def to_json(selector: QuerySelector | Pipeline) -> str:
    """Serializes a compiled filter or pipeline as relaxed extended JSON"""
    return json_util.dumps(selector, json_options=RELAXED_JSON_OPTIONS)


def to_readable_expression(selector: QuerySelector) -> str:
    """Renders a compiled mongodb filter as an infix expression

    Example: ``{"$or": [{"age": {"$gte": 18}}, {"city": "NY"}]}`` becomes
    ``age >= 18 || city == "NY"``
    """
    parts = []
    for key, value in selector.items():
        if key in ("$and", "$or"):
            connective = " && " if key == "$and" else " || "
            parts.append(connective.join(_readable_operand(v) for v in value))
        elif key == "$nor":
            parts.append(f"!({' || '.join(to_readable_expression(v) for v in value)})")
        elif key == "$expr":
            parts.append(f"expr {to_json(value)}")
        else:
            parts.extend(_readable_conditions(key, value))
    return " && ".join(parts)


def _readable_operand(selector: QuerySelector) -> str:
    text = to_readable_expression(selector)
    if len(selector) > 1 or any(k in ("$and", "$or") for k in selector):
        return f"({text})"
    if len(selector) == 1:
        (value,) = selector.values()
        if isinstance(value, Mapping) and len(value) > 1 and "$options" not in value:
            return f"({text})"
    return text


def _readable_conditions(field: str, value: Any) -> list[str]:
    if not (isinstance(value, Mapping) and value and all(k.startswith("$") for k in value)):
        return [f"{field} == {_readable_value(value)}"]

    conditions = []
    for operator, operand in value.items():
        if operator == "$options":
            continue
        if operator == "$not":
            nested = " && ".join(_readable_conditions(field, operand))
            conditions.append(f"!({nested})")
            continue
        symbol = _READABLE_OPERATORS.get(operator, operator)
        conditions.append(f"{field} {symbol} {_readable_value(operand)}")
    return conditions


def _readable_value(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, Mapping):
        return to_json(value)
    if isinstance(value, (list, tuple)):
        return f"[{', '.join(_readable_value(v) for v in value)}]"
    return format_value(value)


def _coerce(resolved: ResolvedField, op: FilterOperator, value: Any) -> Any:
    """Converts the value of a request to the type of the field it applies to"""
    target = resolved.value_type

    if op in RANGE_OPERATORS or op in LIST_OPERATORS:
        return [convert_to_expected_type(v, target) for v in as_value_list(value)]

    if op == FilterOperator.MAP_VALUE_CONTAINS:
        key, item = as_single_entry(value)
        return {key: str(item)}

    if op == FilterOperator.MAP_VALUE_EQUALS:
        key, item = as_single_entry(value)
        return {key: convert_to_expected_type(item, target)}

    if op in (FilterOperator.MAP_VALUE_EXISTS, FilterOperator.MAP_KEY_EQUALS):
        return value

    return convert_to_expected_type(value, target)


def _name(model: Any) -> str:
    return getattr(model, "__name__", "schema-less query")
