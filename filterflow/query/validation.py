"""Validation of operators and values against the fields they are applied to"""

import json
import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any

from bson import ObjectId

from .._errors import FilterValidationError, StructuralError
from .._field import describe_type
from .coercion import is_compatible_type, is_numeric_type, is_temporal_type
from .operators import FilterOperator
from .patterns import compile_pattern
from .schema import ResolvedField

_Op = FilterOperator

_STRING_OPERATORS = frozenset(
    {
        _Op.EQUALS,
        _Op.NOT_EQUALS,
        _Op.STARTS_WITH,
        _Op.ENDS_WITH,
        _Op.IN,
        _Op.NOT_IN,
        _Op.IS_NULL,
        _Op.IS_NOT_NULL,
        _Op.LIKE,
        _Op.REGEX,
        _Op.CONTAINS_WORD,
    }
)
_NUMERIC_OPERATORS = frozenset(
    {
        _Op.EQUALS,
        _Op.NOT_EQUALS,
        _Op.LESS_THAN,
        _Op.LESS_THAN_EQUAL,
        _Op.GREATER_THAN,
        _Op.GREATER_THAN_EQUAL,
        _Op.IN,
        _Op.NOT_IN,
        _Op.IS_NULL,
        _Op.IS_NOT_NULL,
        _Op.BETWEEN,
        _Op.NOT_BETWEEN,
    }
)
_TEMPORAL_OPERATORS = _NUMERIC_OPERATORS - {_Op.IN, _Op.NOT_IN}
_BOOLEAN_OPERATORS = frozenset(
    {_Op.EQUALS, _Op.NOT_EQUALS, _Op.IS_NULL, _Op.IS_NOT_NULL}
)
_ENUM_OPERATORS = _BOOLEAN_OPERATORS | {_Op.IN, _Op.NOT_IN}
_OBJECT_ID_OPERATORS = _NUMERIC_OPERATORS - {_Op.BETWEEN, _Op.NOT_BETWEEN}
_MAP_OPERATORS = frozenset(
    {
        _Op.EXPR,
        _Op.MAP_KEY_EQUALS,
        _Op.MAP_VALUE_EQUALS,
        _Op.MAP_VALUE_CONTAINS,
        _Op.MAP_VALUE_EXISTS,
    }
)
_COLLECTION_OPERATORS = frozenset({_Op.IN, _Op.NOT_IN, _Op.IS_NULL, _Op.IS_NOT_NULL})

ALLOWED_OPERATORS: dict[str, frozenset[FilterOperator]] = {
    "string": _STRING_OPERATORS,
    "numeric": _NUMERIC_OPERATORS,
    "temporal": _TEMPORAL_OPERATORS,
    "boolean": _BOOLEAN_OPERATORS,
    "enum": _ENUM_OPERATORS,
    "object_id": _OBJECT_ID_OPERATORS,
    "map": _MAP_OPERATORS,
    "collection": _COLLECTION_OPERATORS,
}
"""the operators allowed for each category of field"""

UNIVERSAL_OPERATORS = frozenset({_Op.EXISTS, _Op.IS_NULL, _Op.IS_NOT_NULL})
"""operators that are legal on any field"""


def field_category(resolved: ResolvedField) -> str | None:
    """Gets the category of the field whose operators are listed in ALLOWED_OPERATORS

    Args:
        resolved: the resolved field

    Returns:
        the category, "any" for untyped fields, or None if the type has no category
    """
    if resolved.is_map:
        return "map"

    if resolved.value_type is Any:
        return "any"

    base, _, is_collection, is_map = describe_type(resolved.value_type)
    if base is Any:
        return "any"
    if is_map:
        return "map"
    if is_collection:
        return "collection"
    if base is str:
        return "string"
    if base is bool:
        return "boolean"
    if isinstance(base, type) and issubclass(base, Enum):
        return "enum"
    if is_numeric_type(base):
        return "numeric"
    if is_temporal_type(base):
        return "temporal"
    if isinstance(base, type) and issubclass(base, ObjectId):
        return "object_id"
    return None


def validate_operator(resolved: ResolvedField, operator: FilterOperator, model: Any):
    """Checks that the operator is legal for the type of the field

    Args:
        resolved: the resolved field
        operator: the operator
        model: the root schema, used in error messages

    Raises:
        FilterValidationError: Operator '{operator}' is not allowed for field '{field}'
    """
    if operator in UNIVERSAL_OPERATORS:
        return

    category = field_category(resolved)
    if category == "any":
        logging.warning(
            f"field '{resolved.path}' has no declared type; skipping strict type validation"
        )
        return

    allowed = ALLOWED_OPERATORS.get(category, frozenset())
    if operator not in allowed:
        allowed_names = sorted(v.name for v in allowed)
        raise FilterValidationError(
            f"Operator '{operator.name}' is not allowed for field "
            f"'{_model_name(model)}.{resolved.path}'. Allowed: {allowed_names}",
            target_type=resolved.value_type,
        )


def validate_value(resolved: ResolvedField, operator: FilterOperator, value: Any):
    """Checks that the value has the right shape and type for the operator and field

    Args:
        resolved: the resolved field
        operator: the operator
        value: the raw value of the request

    Raises:
        FilterValidationError: the value is not valid
    """
    field = resolved.path
    field_type = resolved.value_type

    if operator == _Op.EXISTS:
        return

    if operator in (_Op.MAP_VALUE_EQUALS, _Op.MAP_VALUE_CONTAINS):
        entry = as_single_entry(value)
        if entry is None:
            raise FilterValidationError(
                f"{operator.name} on '{field}' requires a map with exactly one string key",
                hint='e.g. {"color": "red"}',
            )
        return

    if operator == _Op.MAP_VALUE_EXISTS:
        if not isinstance(value, (str, bool)):
            raise FilterValidationError(
                f"{operator.name} on '{field}' requires a string key or a boolean"
            )
        return

    if operator == _Op.MAP_KEY_EQUALS:
        if not isinstance(value, str):
            raise FilterValidationError(
                f"{operator.name} on '{field}' requires a string key"
            )
        return

    if operator == _Op.REGEX:
        if not isinstance(value, str):
            raise FilterValidationError(
                f"REGEX on '{field}' requires a string pattern"
            )
        compile_pattern(value)
        return

    if operator == _Op.CONTAINS_WORD:
        if not isinstance(value, str):
            raise FilterValidationError(
                f"CONTAINS_WORD on '{field}' requires a string value"
            )
        return

    if operator in (_Op.BETWEEN, _Op.NOT_BETWEEN):
        _validate_range(field, field_type, operator, value)
        return

    if operator in (_Op.IN, _Op.NOT_IN):
        _validate_list(field, field_type, operator, value)
        return

    if not is_compatible_type(value, field_type):
        raise FilterValidationError(
            f"Type mismatch on field '{field}': value '{value}' is not compatible "
            f"with {_model_name(field_type)}",
            target_type=field_type,
        )


def validate_expression(value: Any) -> dict[str, Any]:
    """Checks that the value is a raw mongodb expression

    The expression must be a non-empty, string-keyed mapping whose top-level keys
    are operators i.e. begin with '$'. A JSON string is also accepted.

    Args:
        value: the value of an EXPR request

    Returns:
        the expression as a dict

    Raises:
        StructuralError: the expression is invalid
    """
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError as exp:
            raise StructuralError(
                f"Invalid expression '{value}': not valid JSON"
            ) from exp

    if not isinstance(value, Mapping) or not value:
        raise StructuralError(
            "Expression must be a non-empty map",
            hint='e.g. {"$gt": ["$spent", "$budget"]}',
        )

    for key in value:
        if not isinstance(key, str) or not key.startswith("$"):
            raise StructuralError(
                f"Invalid operator '{key}'. Expression keys must start with '$'."
            )

    _check_string_keys(value)
    return dict(value)


def as_value_list(value: Any) -> list[Any] | None:
    """Gets the value as a list

    Collections are listed as they are, JSON arrays are parsed and other strings
    are split on commas.

    Returns:
        the values, or None if the value is neither a collection nor a string
    """
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)

    if not isinstance(value, str):
        return None

    text = value.strip()
    if text.startswith("[") and text.endswith("]"):
        try:
            parsed = json.loads(text)
        except ValueError:
            text = text[1:-1]
        else:
            return parsed if isinstance(parsed, list) else None

    return [v.strip() for v in text.split(",")] if text.strip() else []


def validate_value_count(field: str, operator: FilterOperator, value: Any) -> list[Any]:
    """Checks that a list or range request has the right number of values

    Args:
        field: the field of the request
        operator: one of the list or range operators
        value: the raw value of the request

    Returns:
        the values as a list

    Raises:
        FilterValidationError: a list is empty, or a range does not have 2 bounds with at least one set
    """
    values = as_value_list(value)
    if operator in (_Op.BETWEEN, _Op.NOT_BETWEEN):
        if values is None or len(values) != 2:
            raise FilterValidationError(
                f"{operator.name} on '{field}' requires exactly 2 values",
                hint="e.g. [100, 500]; use null for an open bound",
            )
        if all(v is None for v in values):
            raise FilterValidationError(
                f"{operator.name} on '{field}' requires at least one non-null bound"
            )
    elif not values:
        raise FilterValidationError(
            f"{operator.name} on '{field}' requires a non-empty list of values"
        )
    return values


def as_single_entry(value: Any) -> tuple[str, Any] | None:
    """Gets the only (key, value) of a one-entry map or JSON object, else None"""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            return None

    if isinstance(value, Mapping) and len(value) == 1:
        key, item = next(iter(value.items()))
        if isinstance(key, str):
            return key, item

    return None


def _validate_range(field: str, field_type: Any, operator: FilterOperator, value: Any):
    for item in validate_value_count(field, operator, value):
        if not is_compatible_type(item, field_type):
            raise FilterValidationError(
                f"Type mismatch in {operator.name} for '{field}': "
                f"'{item}' is not compatible with {_model_name(field_type)}",
                target_type=field_type,
            )


def _validate_list(field: str, field_type: Any, operator: FilterOperator, value: Any):
    for item in validate_value_count(field, operator, value):
        if not is_compatible_type(item, field_type):
            raise FilterValidationError(
                f"Type mismatch in {operator.name} for '{field}': "
                f"element '{item}' is not compatible with {_model_name(field_type)}",
                target_type=field_type,
            )


def _check_string_keys(value: Any):
    if isinstance(value, Mapping):
        for key, item in value.items():
            if not isinstance(key, str):
                raise StructuralError(f"Expression keys must be strings, got '{key}'")
            _check_string_keys(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _check_string_keys(item)


def _model_name(tp: Any) -> str:
    return getattr(tp, "__name__", str(tp))
