"""The markers and field tables describing how schema fields take part in filtering

Schemas are pydantic models. Extra filtering metadata is attached through
``typing.Annotated`` e.g.

    class User(BaseModel):
        name: str
        password: Annotated[str, FilterIgnore()]
        group_count: Annotated[int, VirtualField(from_collection="groups", count=True)] = 0
"""

import collections.abc
import types
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal, Union, get_args, get_origin

from pydantic import BaseModel
from pydantic.fields import FieldInfo

from ._errors import FieldResolutionError

_COLLECTION_ORIGINS = (
    list,
    set,
    frozenset,
    tuple,
    collections.abc.Sequence,
    collections.abc.MutableSequence,
    collections.abc.Set,
    collections.abc.MutableSet,
    collections.abc.Collection,
    collections.abc.Iterable,
)
_MAP_ORIGINS = (dict, collections.abc.Mapping, collections.abc.MutableMapping)
_FIELD_TABLES: dict[type, dict[str, "FieldDefinition"]] = {}


@dataclass(frozen=True)
class FilterIgnore:
    """Marks a field that must never be filtered on nor searched"""


@dataclass(frozen=True)
class VirtualField:
    """Declares a field whose value is computed by aggregation pipeline stages

    Attributes:
        from_model: the model whose collection is joined
        from_collection: the name of the joined collection; used if from_model is not set
        local_field: the field on this document used for the join
        foreign_field: the field on the joined documents used for the join
        project_field: a single field of the joined documents to return
        unwind: whether to unwind the joined documents before projecting
        preserve_null_and_empty_arrays: whether unwinding keeps documents with no matches
        count: whether the value is the number of joined documents
        local_field_as_object_id: whether to convert the local field to an ObjectId first
        recursive: whether to do a recursive (graph) lookup
        children_field: the field holding the children for recursive lookups
        criteria: extra aggregation expression the joined documents must satisfy
        expression: aggregation expression to compute the value from the joined documents
        enum_class: the Enum whose members are displayed instead of joining
        enum_field: the attribute of the enum member to display; the name if empty
    """

    from_model: type[BaseModel] | None = None
    from_collection: str = ""
    local_field: str = "_id"
    foreign_field: str = "_id"
    project_field: str = ""
    unwind: bool = False
    preserve_null_and_empty_arrays: bool = True
    count: bool = False
    local_field_as_object_id: bool = False
    recursive: bool = False
    children_field: str = "children"
    criteria: dict | str = ""
    expression: dict | str = ""
    enum_class: type[Enum] | None = None
    enum_field: str = ""

    @property
    def collection_name(self) -> str:
        """The name of the collection to join"""
        return _resolve_collection(self.from_model, self.from_collection)


@dataclass(frozen=True)
class VirtualObject:
    """Declares a field holding at most one related document per local value

    Attributes:
        from_model: the model whose collection is joined
        from_collection: the name of the joined collection; used if from_model is not set
        local_field: the field on this document holding the reference(s)
        foreign_field: the field on the joined documents matching the reference
        alias: the name of the resulting field; the field name if empty
        local_field_as_object_id: whether to convert the local field to an ObjectId first
        project_fields: the only fields of the joined documents to return
    """

    local_field: str
    from_model: type[BaseModel] | None = None
    from_collection: str = ""
    foreign_field: str = "_id"
    alias: str = ""
    local_field_as_object_id: bool = False
    project_fields: tuple[str, ...] = field(default_factory=tuple)

    @property
    def collection_name(self) -> str:
        """The name of the collection to join"""
        return _resolve_collection(self.from_model, self.from_collection)


@dataclass(frozen=True)
class FieldDefinition:
    """The filtering view of a single field of a schema

    Attributes:
        name: the python name of the field
        alias: the alias of the field if any
        annotation: the declared annotation
        base_type: the annotation without Optional/Annotated wrappers
        element_type: the item type for collections, the value type for maps, else base_type
        is_collection: whether the field holds a collection
        is_map: whether the field holds a mapping
        transient: whether the field is excluded from persistence
        ignored: whether the field is marked with FilterIgnore
        deprecated: whether the field is deprecated
        virtual_field: the VirtualField metadata if any
        virtual_object: the VirtualObject metadata if any
    """

    name: str
    alias: str | None
    annotation: Any
    base_type: Any
    element_type: Any
    is_collection: bool = False
    is_map: bool = False
    transient: bool = False
    ignored: bool = False
    deprecated: bool = False
    virtual_field: VirtualField | None = None
    virtual_object: VirtualObject | None = None

    @property
    def is_virtual(self) -> bool:
        return self.virtual_field is not None or self.virtual_object is not None


def get_field_definitions(model: type[BaseModel]) -> dict[str, FieldDefinition]:
    """Gets the flattened table of field definitions for the given model

    The table is built once per model and looked up by field name or alias.

    Args:
        model: the pydantic model

    Returns:
        a mapping of field name (and alias) to its definition

    Raises:
        FieldResolutionError: the model is not a pydantic model
    """
    try:
        return _FIELD_TABLES[model]
    except KeyError:
        pass

    if not (isinstance(model, type) and issubclass(model, BaseModel)):
        raise FieldResolutionError(
            f"'{model}' is not a pydantic model", target_type=model
        )

    table: dict[str, FieldDefinition] = {}
    for name, field_info in model.model_fields.items():
        definition = _get_field_definition(name, field_info)
        table[name] = definition
        if field_info.alias and field_info.alias != name:
            table.setdefault(field_info.alias, definition)

    return _FIELD_TABLES.setdefault(model, table)


def describe_type(annotation: Any) -> tuple[Any, Any, bool, bool]:
    """Breaks down an annotation into what filtering needs to know about it

    Args:
        annotation: the type annotation e.g. ``list[str] | None``

    Returns:
        tuple of (base_type, element_type, is_collection, is_map)
    """
    tp = unwrap_optional(annotation)
    origin = get_origin(tp)
    args = get_args(tp)

    if origin in _COLLECTION_ORIGINS:
        element = Any
        if args and not (origin is tuple and len(set(args) - {Ellipsis}) > 1):
            element = unwrap_optional(args[0])
        return origin, element, True, False

    if origin in _MAP_ORIGINS:
        value_type = unwrap_optional(args[1]) if len(args) == 2 else Any
        return dict, value_type, False, True

    if tp in (list, set, frozenset, tuple):
        return tp, Any, True, False

    if tp is dict:
        return dict, Any, False, True

    return tp, tp, False, False


def unwrap_optional(annotation: Any) -> Any:
    """Removes Optional, Annotated and Literal wrappers from an annotation

    Unions of more than one non-None type cannot be narrowed and become ``Any``.
    """
    origin = get_origin(annotation)
    if origin is Annotated:
        return unwrap_optional(get_args(annotation)[0])

    if origin is Literal:
        literals = get_args(annotation)
        return type(literals[0]) if literals else Any

    if origin in (Union, types.UnionType):
        args = [v for v in get_args(annotation) if v is not type(None)]
        if len(args) == 1:
            return unwrap_optional(args[0])
        return Any

    return annotation


def get_collection_name(model: type[BaseModel]) -> str:
    """Gets the name of the mongodb collection for the given model

    The name is read from the model's inner ``Settings.name`` if defined,
    otherwise it is the class name.
    """
    settings = getattr(model, "Settings", None)
    name = getattr(settings, "name", None)
    return name or model.__name__


def _get_field_definition(name: str, field_info: FieldInfo) -> FieldDefinition:
    """Converts a pydantic FieldInfo into a FieldDefinition"""
    base_type, element_type, is_collection, is_map = describe_type(
        field_info.annotation
    )
    metadata = field_info.metadata

    return FieldDefinition(
        name=name,
        alias=field_info.alias,
        annotation=field_info.annotation,
        base_type=base_type,
        element_type=element_type,
        is_collection=is_collection,
        is_map=is_map,
        transient=field_info.exclude is True,
        ignored=any(isinstance(v, FilterIgnore) for v in metadata),
        deprecated=bool(getattr(field_info, "deprecated", None)),
        virtual_field=_find_marker(metadata, VirtualField),
        virtual_object=_find_marker(metadata, VirtualObject),
    )


def _find_marker(metadata: list[Any], marker_type: type) -> Any:
    for value in metadata:
        if isinstance(value, marker_type):
            return value
    return None


def _resolve_collection(model: type[BaseModel] | None, collection: str) -> str:
    if model is not None:
        return get_collection_name(model)
    if collection:
        return collection
    raise FieldResolutionError(
        "a virtual field must specify either from_model or from_collection"
    )
