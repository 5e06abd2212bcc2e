"""Resolution of dotted field paths against pydantic schemas"""

import re
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from .._errors import FieldResolutionError
from .._field import FieldDefinition, get_field_definitions

_INDEX_PATTERN = re.compile(r"\[\d*]")
_RESOLVED_FIELDS: dict[tuple[type, str], "ResolvedField"] = {}


@dataclass(frozen=True)
class ResolvedField:
    """The result of resolving a field path on a schema

    Attributes:
        path: the path as given e.g. ``"books.title"``
        definition: the definition of the last named field on the path
        value_type: the type values compared to this path are coerced to.
            For collections this is the item type, for maps the value type.
        is_map: whether the path points at a whole mapping field
    """

    path: str
    definition: FieldDefinition | None
    value_type: Any
    is_map: bool = False


def resolve_field(model: type[BaseModel], path: str) -> ResolvedField:
    """Resolves the field at the given path, which may or may not be dotted

    Collections resolve to their item type, and the segment after a mapping
    field is treated as a key of that mapping. ``[0]`` style indexes and
    numeric segments are skipped.

    Args:
        model: the root schema
        path: the path to the field where dots signify nesting; example books.title

    Returns:
        the resolved field

    Raises:
        FieldResolutionError: the path is empty, does not exist or points at a
            field that is transient, ignored or deprecated
    """
    if path is None or not str(path).strip():
        raise FieldResolutionError(
            "Field name cannot be null or empty", target_type=model
        )

    key = (model, path)
    try:
        return _RESOLVED_FIELDS[key]
    except KeyError:
        pass

    resolved = _resolve(model, path)
    return _RESOLVED_FIELDS.setdefault(key, resolved)


def _resolve(model: type[BaseModel], path: str) -> ResolvedField:
    segments = _INDEX_PATTERN.sub("", path.strip()).split(".")
    current: Any = model
    definition = None
    value_type: Any = model
    is_map = False
    expect_map_key = False

    for segment in segments:
        if not segment:
            raise FieldResolutionError(
                f"Invalid field path '{path}'", target_type=model
            )

        if expect_map_key:
            expect_map_key = False
            is_map = False
            continue

        if segment.isdigit():
            continue

        if current is Any:
            return ResolvedField(path=path, definition=definition, value_type=Any)

        if not (isinstance(current, type) and issubclass(current, BaseModel)):
            raise FieldResolutionError(
                f"Could not resolve field type for '{path}': "
                f"'{segment}' cannot be looked up on {_type_name(current)}",
                target_type=model,
            )

        table = get_field_definitions(current)
        try:
            definition = table[segment]
        except KeyError:
            raise FieldResolutionError(
                f"Invalid field: '{segment}' in {current.__name__}",
                target_type=current,
                hint=f"valid fields are {_filterable_names(table)}",
            ) from None

        _check_flags(definition, current, table)
        value_type = definition.element_type
        current = definition.element_type
        is_map = definition.is_map
        expect_map_key = definition.is_map

    return ResolvedField(
        path=path, definition=definition, value_type=value_type, is_map=is_map
    )


def _check_flags(
    definition: FieldDefinition,
    model: type[BaseModel],
    table: dict[str, FieldDefinition],
):
    """Raises FieldResolutionError if the field cannot be filtered on"""
    if definition.transient and not definition.is_virtual:
        transient = sorted({v.name for v in table.values() if v.transient})
        raise FieldResolutionError(
            f"Field '{definition.name}' in {model.__name__} is transient and cannot be filtered on",
            target_type=model,
            hint=f"transient fields are {transient}",
        )

    if definition.ignored:
        raise FieldResolutionError(
            f"Field '{definition.name}' in {model.__name__} is not filterable",
            target_type=model,
        )

    if definition.deprecated:
        raise FieldResolutionError(
            f"Field '{definition.name}' in {model.__name__} is deprecated",
            target_type=model,
        )


def _filterable_names(table: dict[str, FieldDefinition]) -> list[str]:
    return sorted(
        name
        for name, v in table.items()
        if not (v.ignored or v.deprecated or (v.transient and not v.is_virtual))
    )


def _type_name(tp: Any) -> str:
    return getattr(tp, "__name__", str(tp))
