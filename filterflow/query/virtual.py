"""Resolution of virtual fields and virtual objects into aggregation pipeline stages

Given::

    class Author(BaseModel):
        id: str
        book_count: Annotated[
            int, VirtualField(from_collection="books", foreign_field="author_id", count=True)
        ] = Field(0, exclude=True)

the stages computing ``book_count`` are::

    [
        {"$lookup": {"from": "books", "localField": "_id", "foreignField": "author_id", "as": "book_count_lookup"}},
        {"$addFields": {"book_count": {"$size": {"$ifNull": ["$book_count_lookup", []]}}}},
        {"$project": {"book_count_lookup": 0}},
    ]
"""

import json
import logging
import re
from typing import Any

from pydantic import BaseModel

from .._errors import StructuralError
from .._field import FieldDefinition, VirtualField, VirtualObject, get_field_definitions
from .selectors import Pipeline, PipelineStage

_NON_WORD = re.compile(r"\W")
_ITEM = "item"


class VirtualFieldResolver:
    """Builds the stages computing the virtual fields of a schema

    Args:
        model: the schema
        converted_fields: the local fields already converted to ObjectId by earlier stages;
            it is updated as conversions are added
    """

    def __init__(self, model: type[BaseModel], converted_fields: set[str] | None = None):
        self._model = model
        self._converted = converted_fields if converted_fields is not None else set()

    def resolve(self) -> Pipeline:
        stages: Pipeline = []
        for definition in _unique_definitions(self._model):
            if definition.virtual_field is not None:
                stages.extend(self.resolve_field(definition))
        return stages

    def resolve_field(self, definition: FieldDefinition) -> Pipeline:
        """Builds the stages computing a single virtual field

        Args:
            definition: the definition of the field carrying the VirtualField marker

        Returns:
            the stages in the order they must run
        """
        marker = definition.virtual_field
        alias = definition.alias or definition.name

        if marker.enum_class is not None:
            return [_enum_stage(alias, marker)]

        temp = f"{alias}_lookup"
        stages = _object_id_conversion(
            marker.local_field, marker.local_field_as_object_id, self._converted
        )
        stages.append(_lookup_stage(marker, temp))

        if marker.count:
            stages.append(
                {"$addFields": {alias: {"$size": {"$ifNull": [f"${temp}", []]}}}}
            )
        elif marker.recursive:
            stages.append(
                {
                    "$graphLookup": {
                        "from": marker.collection_name,
                        "startWith": f"${marker.local_field}",
                        "connectFromField": "_id",
                        "connectToField": marker.children_field,
                        "as": alias,
                    }
                }
            )
        else:
            stages.extend(_projection_stages(alias, temp, marker, definition.is_collection))

        stages.append({"$project": {temp: 0}})
        return stages


class VirtualObjectResolver:
    """Builds the stages joining the related document of each virtual object of a schema

    The local field may hold a single reference or a list of references.

    Args:
        model: the schema
        converted_fields: the local fields already converted to ObjectId by earlier stages
    """

    def __init__(self, model: type[BaseModel], converted_fields: set[str] | None = None):
        self._model = model
        self._converted = converted_fields if converted_fields is not None else set()

    def resolve(self) -> Pipeline:
        stages: Pipeline = []
        for definition in _unique_definitions(self._model):
            if definition.virtual_object is not None:
                stages.extend(self.resolve_object(definition))
        return stages

    def resolve_object(self, definition: FieldDefinition) -> Pipeline:
        marker: VirtualObject = definition.virtual_object
        alias = marker.alias or definition.alias or definition.name
        local = f"${marker.local_field}"
        variable = f"lk_{_NON_WORD.sub('_', alias)}"

        pipeline: Pipeline = [
            {"$match": {"$expr": {"$in": [f"${marker.foreign_field}", f"$${variable}"]}}}
        ]
        if marker.project_fields:
            pipeline.append({"$project": {v: 1 for v in marker.project_fields}})

        stages = _object_id_conversion(
            marker.local_field, marker.local_field_as_object_id, self._converted
        )
        stages.append(
            {
                "$lookup": {
                    "from": marker.collection_name,
                    "let": {variable: {"$cond": [{"$isArray": local}, local, [local]]}},
                    "pipeline": pipeline,
                    "as": alias,
                }
            }
        )

        if not definition.is_collection:
            stages.append({"$addFields": {alias: {"$arrayElemAt": [f"${alias}", 0]}}})
        return stages


def resolve_virtual_stages(model: type[BaseModel]) -> Pipeline:
    """Builds the stages computing the virtual fields and virtual objects of the schema

    The stages follow the order in which the fields are declared.
    """
    converted: set[str] = set()
    fields = VirtualFieldResolver(model, converted)
    objects = VirtualObjectResolver(model, converted)

    stages: Pipeline = []
    for definition in _unique_definitions(model):
        if definition.virtual_field is not None:
            stages.extend(fields.resolve_field(definition))
        elif definition.virtual_object is not None:
            stages.extend(objects.resolve_object(definition))
    return stages


def generate_operation_info(pipeline: Pipeline) -> list[str]:
    """Summarizes each stage of the pipeline, one line per stage

    Example: ``Op #1 - $lookup: 4, [from, localField, foreignField, as]``
    """
    lines = []
    for index, stage in enumerate(pipeline, start=1):
        for operator, body in stage.items():
            keys = list(body) if isinstance(body, dict) else []
            lines.append(f"Op #{index} - {operator}: {len(keys)}, [{', '.join(keys)}]")
    return lines


def log_pipeline(pipeline: Pipeline):
    for line in generate_operation_info(pipeline):
        logging.info(line)


def _unique_definitions(model: type[BaseModel]) -> list[FieldDefinition]:
    return [v for k, v in get_field_definitions(model).items() if k == v.name]


def _object_id_conversion(
    local_field: str, enabled: bool, converted: set[str]
) -> Pipeline:
    if not enabled or local_field in converted:
        return []

    converted.add(local_field)
    return [{"$addFields": {local_field: {"$toObjectId": f"${local_field}"}}}]


def _enum_stage(alias: str, marker: VirtualField) -> PipelineStage:
    branches = []
    for member in marker.enum_class:
        display = getattr(member, marker.enum_field, None) if marker.enum_field else None
        branches.append(
            {
                "case": {"$eq": [f"${marker.local_field}", member.value]},
                "then": display if display is not None else member.name,
            }
        )

    return {"$addFields": {alias: {"$switch": {"branches": branches, "default": None}}}}


def _lookup_stage(marker: VirtualField, temp: str) -> PipelineStage:
    criteria = _parse_document(marker.criteria, "criteria")
    if not criteria:
        return {
            "$lookup": {
                "from": marker.collection_name,
                "localField": marker.local_field,
                "foreignField": marker.foreign_field,
                "as": temp,
            }
        }

    return {
        "$lookup": {
            "from": marker.collection_name,
            "let": {"localVar": f"${marker.local_field}"},
            "pipeline": [
                {
                    "$match": {
                        "$expr": {
                            "$and": [
                                {"$eq": [f"${marker.foreign_field}", "$$localVar"]},
                                criteria,
                            ]
                        }
                    }
                }
            ],
            "as": temp,
        }
    }


def _projection_stages(
    alias: str, temp: str, marker: VirtualField, is_collection: bool
) -> Pipeline:
    stages: Pipeline = []
    if marker.unwind:
        stages.append(
            {
                "$unwind": {
                    "path": f"${temp}",
                    "preserveNullAndEmptyArrays": marker.preserve_null_and_empty_arrays,
                }
            }
        )

    expression = _parse_document(marker.expression, "expression")
    if expression:
        if is_collection and not marker.unwind:
            value: Any = {
                "$map": {
                    "input": f"${temp}",
                    "as": _ITEM,
                    "in": _rewrite_references(expression, f"$${_ITEM}"),
                }
            }
        else:
            value = _rewrite_references(expression, f"${temp}")
    elif marker.project_field:
        value = f"${temp}.{marker.project_field}"
    else:
        value = f"${temp}"

    if not is_collection and not marker.unwind:
        value = {"$arrayElemAt": [value, 0]}

    stages.append({"$addFields": {alias: value}})
    return stages


def _rewrite_references(expression: Any, root: str) -> Any:
    """Points field references like ``$price`` at the joined documents, leaving ``$$`` variables"""
    if isinstance(expression, dict):
        return {k: _rewrite_references(v, root) for k, v in expression.items()}
    if isinstance(expression, list):
        return [_rewrite_references(v, root) for v in expression]
    if isinstance(expression, str) and expression.startswith("$") and not expression.startswith("$$"):
        return f"{root}.{expression[1:]}"
    return expression


def _parse_document(value: dict | str, name: str) -> dict:
    if isinstance(value, dict):
        return value
    if not value or not value.strip():
        return {}

    try:
        document = json.loads(value)
    except ValueError as exp:
        raise StructuralError(f"virtual field {name} is invalid JSON: {value}") from exp

    if not isinstance(document, dict):
        raise StructuralError(f"virtual field {name} must be a JSON object: {value}")
    return document
