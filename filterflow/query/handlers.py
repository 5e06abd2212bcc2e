"""The registry mapping operators to the functions building their mongodb selectors"""

import re
import threading
from typing import Any, Callable, Iterable

from .._errors import RegistryError, UnknownOperatorError
from .operators import SPECIAL_OPERATORS, FilterOperator, get_operator
from .patterns import wildcard_to_regex
from .selectors import QuerySelector, and_, or_, regex

OperatorHandler = Callable[[str, Any], QuerySelector]
"""builds the selector for a field given the already coerced value"""

CUSTOM_CATEGORY = "Custom"
_default_registry: "OperatorRegistry | None" = None
_default_registry_lock = threading.Lock()


class OperatorRegistry:
    """Maps operator names to the handlers that build their selectors

    Registration is permanent. Registering an operator twice, or registering any of
    the operators the compiler handles itself (GLOBAL, EXPR, CONTROL), raises a
    RegistryError.
    """

    def __init__(self):
        self._handlers: dict[str, OperatorHandler] = {}
        self._categories: dict[str, list[str]] = {}

    def register(
        self,
        operator: FilterOperator | str,
        handler: OperatorHandler,
        category: str = CUSTOM_CATEGORY,
    ):
        """Registers a handler for the given operator

        Args:
            operator: the operator, or the name of a custom operator
            handler: the function building the selector from the field and value
            category: the category under which the operator is listed in help texts

        Raises:
            RegistryError: the operator is reserved or already has a handler
        """
        name = FilterOperator.canonical_name(operator)
        if not name:
            raise RegistryError("Operator name cannot be empty")

        if get_operator(name) in SPECIAL_OPERATORS:
            raise RegistryError(
                f"Operator {name} is compiled by the compiler and cannot have a handler"
            )

        if name in self._handlers:
            raise RegistryError(f"Handler already registered for: {name}")

        self._handlers[name] = handler
        self._categories.setdefault(category, []).append(name)

    def register_many(
        self, handlers: dict[FilterOperator | str, OperatorHandler], category: str
    ):
        """Registers all the given handlers under the same category"""
        for operator, handler in handlers.items():
            self.register(operator, handler, category=category)

    def get(self, operator: FilterOperator | str) -> OperatorHandler:
        """Gets the handler for the given operator

        Raises:
            UnknownOperatorError: Unsupported operator
        """
        name = FilterOperator.canonical_name(operator)
        try:
            return self._handlers[name]
        except KeyError:
            raise UnknownOperatorError(
                f"Unsupported operator: {name}",
                hint=self.grouped_operators_message(),
            ) from None

    def is_registered(self, operator: FilterOperator | str) -> bool:
        return FilterOperator.canonical_name(operator) in self._handlers

    @property
    def operator_names(self) -> list[str]:
        """The names of all operators with handlers, in registration order"""
        return list(self._handlers)

    def grouped_operators_message(self) -> str:
        """Lists the available operators grouped by category

        Returns:
            one line per category, sorted by category, e.g. ``Collections: IN, NOT_IN``
        """
        lines = [
            f"{category}: {', '.join(names)}"
            for category, names in sorted(self._categories.items())
        ]
        special = sorted(v.name for v in SPECIAL_OPERATORS)
        lines.append(f"Special: {', '.join(special)}")
        return "\n".join(lines)


def get_registry() -> OperatorRegistry:
    """Gets the process-wide registry, creating it with the default handlers on first use"""
    global _default_registry

    if _default_registry is None:
        with _default_registry_lock:
            if _default_registry is None:
                registry = OperatorRegistry()
                register_default_handlers(registry)
                _default_registry = registry

    return _default_registry


def register_default_handlers(registry: OperatorRegistry):
    """Registers the handlers of all standard operators on the given registry"""
    for category, handlers in _DEFAULT_HANDLERS.items():
        registry.register_many(handlers, category=category)


# Comparison


def _eq(field: str, value: Any) -> QuerySelector:
    return {field: {"$eq": value}}


def _ne(field: str, value: Any) -> QuerySelector:
    return {field: {"$ne": value}}


def _gt(field: str, value: Any) -> QuerySelector:
    return {field: {"$gt": value}}


def _gte(field: str, value: Any) -> QuerySelector:
    return {field: {"$gte": value}}


def _lt(field: str, value: Any) -> QuerySelector:
    return {field: {"$lt": value}}


def _lte(field: str, value: Any) -> QuerySelector:
    return {field: {"$lte": value}}


def _between(field: str, value: Iterable[Any]) -> QuerySelector:
    start, end = value
    bounds = {}
    if start is not None:
        bounds["$gte"] = start
    if end is not None:
        bounds["$lte"] = end
    return {field: bounds}


def _not_between(field: str, value: Iterable[Any]) -> QuerySelector:
    start, end = value
    selectors = []
    if start is not None:
        selectors.append({field: {"$lt": start}})
    if end is not None:
        selectors.append({field: {"$gt": end}})
    return or_(selectors)


# String matching


def _like(field: str, value: Any) -> QuerySelector:
    return regex(field, wildcard_to_regex(str(value)))


def _starts_with(field: str, value: Any) -> QuerySelector:
    return regex(field, f"^{re.escape(str(value))}")


def _ends_with(field: str, value: Any) -> QuerySelector:
    return regex(field, f"{re.escape(str(value))}$")


def _contains_word(field: str, value: Any) -> QuerySelector:
    word = re.escape(str(value))
    return regex(field, rf"(^|[^\p{{L}}]){word}([^\p{{L}}]|$)")


def _regex(field: str, value: Any) -> QuerySelector:
    return regex(field, str(value))


# Existence & null


def _exists(field: str, value: Any) -> QuerySelector:
    # empty arrays count as missing
    should_exist = value is None or str(value).strip().lower() == "true"
    if should_exist:
        return and_(
            [
                {field: {"$exists": True}},
                {field: {"$ne": None}},
                {
                    "$or": [
                        {field: {"$not": {"$type": "array"}}},
                        {f"{field}.0": {"$exists": True}},
                    ]
                },
            ]
        )

    return {
        "$or": [
            {field: {"$exists": False}},
            {field: None},
            {field: {"$size": 0}},
        ]
    }


def _is_null(field: str, value: Any) -> QuerySelector:
    return {field: None}


def _is_not_null(field: str, value: Any) -> QuerySelector:
    return {field: {"$ne": None}}


# Collections


def _in(field: str, value: Iterable[Any]) -> QuerySelector:
    return {field: {"$in": list(value)}}


def _not_in(field: str, value: Iterable[Any]) -> QuerySelector:
    return {field: {"$nin": list(value)}}


# Maps


def _map_value_equals(field: str, value: dict[str, Any]) -> QuerySelector:
    ((key, item),) = value.items()
    return {f"{field}.{key}": item}


def _map_value_contains(field: str, value: dict[str, Any]) -> QuerySelector:
    ((key, item),) = value.items()
    return regex(f"{field}.{key}", f".*{re.escape(str(item))}.*")


def _map_value_exists(field: str, value: str | bool) -> QuerySelector:
    if isinstance(value, bool):
        return {field: {"$exists": value}}
    return {f"{field}.{value}": {"$exists": True, "$ne": None}}


def _map_key_equals(field: str, value: str) -> QuerySelector:
    return {f"{field}.{value}": {"$exists": True}}


_DEFAULT_HANDLERS: dict[str, dict[FilterOperator, OperatorHandler]] = {
    "Comparison": {
        FilterOperator.EQUALS: _eq,
        FilterOperator.NOT_EQUALS: _ne,
        FilterOperator.GREATER_THAN: _gt,
        FilterOperator.GREATER_THAN_EQUAL: _gte,
        FilterOperator.LESS_THAN: _lt,
        FilterOperator.LESS_THAN_EQUAL: _lte,
        FilterOperator.BETWEEN: _between,
        FilterOperator.NOT_BETWEEN: _not_between,
    },
    "String Matching": {
        FilterOperator.LIKE: _like,
        FilterOperator.STARTS_WITH: _starts_with,
        FilterOperator.ENDS_WITH: _ends_with,
        FilterOperator.CONTAINS_WORD: _contains_word,
        FilterOperator.REGEX: _regex,
    },
    "Existence & Null": {
        FilterOperator.EXISTS: _exists,
        FilterOperator.IS_NULL: _is_null,
        FilterOperator.IS_NOT_NULL: _is_not_null,
    },
    "Collections": {
        FilterOperator.IN: _in,
        FilterOperator.NOT_IN: _not_in,
    },
    "Map-Specific": {
        FilterOperator.MAP_VALUE_EQUALS: _map_value_equals,
        FilterOperator.MAP_VALUE_CONTAINS: _map_value_contains,
        FilterOperator.MAP_VALUE_EXISTS: _map_value_exists,
        FilterOperator.MAP_KEY_EQUALS: _map_key_equals,
    },
}
"""the handlers of the standard operators, per category"""
