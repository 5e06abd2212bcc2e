"""Resolution of GLOBAL requests into searches across many fields of a schema"""

import logging
import re
from typing import Any

from pydantic import BaseModel

from .._field import FieldDefinition, get_field_definitions
from .._options import FilterOptions
from .coercion import is_numeric_type, is_temporal_type, try_parse_to_date
from .selectors import QuerySelector, regex

STRING, NUMERIC, TEMPORAL = "string", "numeric", "temporal"
_NUMBER_PATTERN = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_SEARCHABLE_PATHS: dict[tuple[type, str, int], tuple[str, ...]] = {}


class GlobalSearchResolver:
    """Builds the selector searching a keyword across the fields of a schema

    String fields are matched with a case-insensitive regex of the keyword.
    Numeric and temporal fields are only matched for equality, and only if the
    keyword can be read as a number or a date respectively.

    Args:
        model: the schema whose fields are searched
        options: the options limiting which fields are searched and how deep
    """

    def __init__(self, model: type[BaseModel], options: FilterOptions | None = None):
        self._model = model
        self._options = options or FilterOptions()

    def resolve(self, keyword: Any) -> QuerySelector:
        """Builds the selector for the given keyword

        Args:
            keyword: the text to search for

        Returns:
            the selector; empty if the keyword is blank or no field can match it
        """
        text = "" if keyword is None else str(keyword).strip()
        if not text:
            return {}

        conditions: list[QuerySelector] = [
            regex(path, re.escape(text)) for path in self.get_paths(STRING)
        ]

        if _NUMBER_PATTERN.match(text):
            number = int(text) if text.lstrip("+-").isdigit() else float(text)
            conditions.extend({path: number} for path in self.get_paths(NUMERIC))

        moment = try_parse_to_date(text)
        if moment is not None:
            conditions.extend({path: moment} for path in self.get_paths(TEMPORAL))

        if self._options.debug:
            logging.info(
                f"global search for '{text}' on {self._model.__name__} "
                f"expanded to {len(conditions)} condition(s)"
            )

        if not conditions:
            return {}
        if len(conditions) == 1:
            return conditions[0]
        return {"$or": conditions}

    def get_paths(self, category: str) -> list[str]:
        """Gets the dotted paths of the searchable fields of the given category

        Args:
            category: one of "string", "numeric" or "temporal"

        Returns:
            the paths, filtered by the allowed and excluded global search fields
        """
        depth = self._options.global_search_depth
        paths = list(get_searchable_paths(self._model, category, depth))

        allowed = self._options.allowed_global_search_fields
        excluded = self._options.excluded_global_search_fields
        if allowed is not None:
            paths = [v for v in paths if _is_listed(v, allowed)]
        if excluded:
            paths = [v for v in paths if not _is_listed(v, excluded)]
        return paths


def get_searchable_paths(
    model: type[BaseModel], category: str, depth: int
) -> tuple[str, ...]:
    """Collects the paths of the fields of the given category, up to the given depth

    Nested models, including the items of collections, are searched too.
    Transient, ignored, deprecated and map fields are skipped, as are virtual fields other than
    the projected fields of virtual objects. The result is cached.

    Args:
        model: the schema
        category: one of "string", "numeric" or "temporal"
        depth: how many levels of nested models are searched; 0 searches the top-level fields only

    Returns:
        the dotted paths
    """
    key = (model, category, depth)
    try:
        return _SEARCHABLE_PATHS[key]
    except KeyError:
        pass

    paths: list[str] = []
    _collect_paths(model, "", category, depth, paths, visited=(model,))
    return _SEARCHABLE_PATHS.setdefault(key, tuple(paths))


def _collect_paths(
    model: type[BaseModel],
    prefix: str,
    category: str,
    depth: int,
    paths: list[str],
    visited: tuple[type, ...],
):
    if depth < 0:
        return

    for name, definition in get_field_definitions(model).items():
        if name != definition.name or definition.is_map:
            continue
        if definition.ignored or definition.deprecated:
            continue

        path = f"{prefix}{name}"
        if definition.virtual_object is not None:
            alias = f"{prefix}{definition.virtual_object.alias or name}"
            paths.extend(_virtual_object_paths(alias, definition, category))
            continue

        if definition.transient or definition.is_virtual:
            continue

        element = definition.element_type
        if _in_category(element, category):
            paths.append(path)
        elif _is_model(element) and element not in visited:
            _collect_paths(
                element, f"{path}.", category, depth - 1, paths, visited + (element,)
            )


def _virtual_object_paths(
    path: str, definition: FieldDefinition, category: str
) -> list[str]:
    marker = definition.virtual_object
    related = marker.from_model
    paths = []
    for field in marker.project_fields:
        if related is None:
            if category == STRING:
                paths.append(f"{path}.{field}")
            continue

        related_definition = get_field_definitions(related).get(field)
        if related_definition and _in_category(related_definition.element_type, category):
            paths.append(f"{path}.{field}")
    return paths


def _in_category(tp: Any, category: str) -> bool:
    if category == STRING:
        return tp is str
    if category == NUMERIC:
        return is_numeric_type(tp)
    if category == TEMPORAL:
        return is_temporal_type(tp)
    return False


def _is_model(tp: Any) -> bool:
    return isinstance(tp, type) and issubclass(tp, BaseModel)


def _is_listed(path: str, fields: set[str]) -> bool:
    return any(path == v or path.startswith(f"{v}.") for v in fields)
