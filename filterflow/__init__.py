from ._errors import (
    CoercionError,
    FieldResolutionError,
    FilterError,
    FilterValidationError,
    RegistryError,
    StructuralError,
    UnknownOperatorError,
)
from ._field import FilterIgnore, VirtualField, VirtualObject
from ._mongo import MongoStore
from ._options import DbExplainOptions, FilterOptions
from .query.compiler import FilterCompiler, to_readable_expression
from .query.handlers import get_registry
from .query.operators import FilterOperator, LogicMode
from .query.parsers import parse_expression
from .query.predicate import FilterGroup, FilterRequest

__all__ = [
    "MongoStore",
    "FilterCompiler",
    "FilterGroup",
    "FilterRequest",
    "FilterOperator",
    "LogicMode",
    "FilterOptions",
    "DbExplainOptions",
    "FilterIgnore",
    "VirtualField",
    "VirtualObject",
    "parse_expression",
    "to_readable_expression",
    "get_registry",
    "FilterError",
    "StructuralError",
    "UnknownOperatorError",
    "FieldResolutionError",
    "FilterValidationError",
    "CoercionError",
    "RegistryError",
]
