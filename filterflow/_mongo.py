"""MongoDB implementation"""

import logging
from typing import Any, TypeVar

from bson import json_util
from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorCollection,
)
from pydantic import BaseModel

from ._base import BaseStore
from ._field import get_collection_name
from ._options import FilterOptions
from .query.compiler import FilterCompiler, Query, build_projection
from .query.schema import resolve_field
from .query.selectors import Pipeline, PipelineStage, QuerySelector

_T = TypeVar("_T", bound=BaseModel)
_Sort = None | str | list[tuple[str, int]]


class MongoStore(BaseStore):
    """The store that runs compiled filters against a mongo db

    Queries that need virtual fields are run as aggregation pipelines,
    all others as plain finds.
    """

    def __init__(
        self,
        uri: str,
        database: str,
        compiler: FilterCompiler | None = None,
        **kwargs,
    ):
        """
        Args:
            uri: the URI of the mongodb server to connect to
            database: the name of the database
            compiler: the compiler turning filters into mongodb queries
            kwargs: extra key-word args to pass to AsyncIOMotorClient
        """
        super().__init__(uri, compiler=compiler)
        self._client = AsyncIOMotorClient(uri, **kwargs)
        self._db = self._client[database]
        self._db_name = database

    async def find(
        self,
        model: type[_T],
        query: Query = None,
        skip: int = 0,
        limit: int = 0,
        sort: _Sort = None,
        options: FilterOptions | None = None,
        session: AsyncIOMotorClientSession | None = None,
        **pymongo_kwargs: Any,
    ) -> list[_T]:
        group, options = self._compiler.prepare(query, options)
        collection = self._get_collection(model)

        if options.resolve_virtual_fields:
            pipeline = self._compiler.to_pipeline(model, group, options)
            pipeline = _insert_paging(pipeline, skip, limit, sort, options)
            if options.db_explain_options.explain_enabled():
                await self._explain(
                    {"aggregate": collection.name, "pipeline": pipeline, "cursor": {}},
                    options,
                )
            cursor = collection.aggregate(pipeline, session=session, **pymongo_kwargs)
        else:
            selector = self._compiler.compile_group(model, group, options)
            projection = build_projection(options) or None
            if options.db_explain_options.explain_enabled():
                await self._explain(
                    _find_command(collection.name, selector, projection, skip, limit, sort),
                    options,
                )
            cursor = collection.find(
                selector,
                projection=projection,
                skip=skip,
                limit=limit,
                sort=sort,
                session=session,
                **pymongo_kwargs,
            )

        raw_results = await cursor.to_list(length=None)
        return [model.model_validate(v) for v in raw_results]

    async def count(
        self,
        model: type[_T],
        query: Query = None,
        options: FilterOptions | None = None,
        session: AsyncIOMotorClientSession | None = None,
        **pymongo_kwargs: Any,
    ) -> int:
        group, options = self._compiler.prepare(query, options)
        collection = self._get_collection(model)

        if options.resolve_virtual_fields:
            pipeline = self._compiler.to_pipeline(
                model, group, options.model_copy(update={"project": None, "exclude": None})
            )
            pipeline.append({"$count": "total"})
            cursor = collection.aggregate(pipeline, session=session, **pymongo_kwargs)
            raw_results = await cursor.to_list(length=None)
            return raw_results[0]["total"] if raw_results else 0

        selector = self._compiler.compile_group(model, group, options)
        return await collection.count_documents(
            selector, session=session, **pymongo_kwargs
        )

    async def suggest(
        self,
        model: type[_T],
        field: str,
        query: Query = None,
        skip: int = 0,
        limit: int = 0,
        sort: _Sort = None,
        options: FilterOptions | None = None,
        session: AsyncIOMotorClientSession | None = None,
        **pymongo_kwargs: Any,
    ) -> list[Any]:
        group, options = self._compiler.prepare(query, options)
        resolve_field(model, field)
        collection = self._get_collection(model)

        if options.resolve_virtual_fields:
            pipeline = self._compiler.to_pipeline(
                model, group, options.model_copy(update={"project": None, "exclude": None})
            )
        else:
            pipeline = [{"$match": self._compiler.compile_group(model, group, options)}]

        pipeline += _unwind_collections(model, field)
        pipeline.append({"$group": {"_id": f"${field}", "value": {"$first": f"${field}"}}})
        pipeline.append({"$sort": _to_sort_spec(sort or "value")})
        if skip:
            pipeline.append({"$skip": skip})
        if limit:
            pipeline.append({"$limit": limit})

        if options.debug:
            logging.info(
                f"suggestions for '{field}' on {model.__name__}: {json_util.dumps(pipeline)}"
            )
        if options.db_explain_options.explain_enabled():
            await self._explain(
                {"aggregate": collection.name, "pipeline": pipeline, "cursor": {}},
                options,
            )

        cursor = collection.aggregate(pipeline, session=session, **pymongo_kwargs)
        raw_results = await cursor.to_list(length=None)
        return [v["_id"] for v in raw_results if v.get("_id") is not None]

    async def _explain(self, command: dict[str, Any], options: FilterOptions):
        """Logs the query plan of the given command"""
        verbosity = options.db_explain_options.verbosity()
        plan = await self._db.command({"explain": command, "verbosity": verbosity})
        logging.info(f"explain ({verbosity}): {json_util.dumps(plan)}")

    def _get_collection(self, model: type[_T]) -> AsyncIOMotorCollection:
        """Gets the collection for the given model

        Args:
            model: the model class whose collection is to be obtained

        Returns:
            the AsyncIOMotorCollection for the given model
        """
        collection_name = get_collection_name(model)
        return self._db[collection_name]


def _insert_paging(
    pipeline: Pipeline, skip: int, limit: int, sort: _Sort, options: FilterOptions
) -> Pipeline:
    """Adds the sort, skip and limit stages before the final projection if any"""
    paging: Pipeline = []
    if sort:
        paging.append({"$sort": _to_sort_spec(sort)})
    if skip:
        paging.append({"$skip": skip})
    if limit:
        paging.append({"$limit": limit})

    position = len(pipeline) - 1 if build_projection(options) else len(pipeline)
    return pipeline[:position] + paging + pipeline[position:]


def _to_sort_spec(sort: str | list[tuple[str, int]]) -> dict[str, int]:
    if isinstance(sort, str):
        return {sort: 1}
    return dict(sort)


def _find_command(
    collection: str,
    selector: QuerySelector,
    projection: dict[str, int] | None,
    skip: int,
    limit: int,
    sort: _Sort,
) -> PipelineStage:
    command: dict[str, Any] = {"find": collection, "filter": selector}
    if projection:
        command["projection"] = projection
    if sort:
        command["sort"] = _to_sort_spec(sort)
    if skip:
        command["skip"] = skip
    if limit:
        command["limit"] = limit
    return command


def _unwind_collections(model: type[BaseModel], field: str) -> Pipeline:
    """Unwinds the collections along the path so that their items are grouped one by one

    Paths with indexes e.g. ``books.0.title`` already point at single items.
    """
    segments = field.split(".")
    if any(v.isdigit() or "[" in v for v in segments):
        return []

    stages: Pipeline = []
    for i in range(1, len(segments) + 1):
        prefix = ".".join(segments[:i])
        definition = resolve_field(model, prefix).definition
        if definition is not None and definition.is_collection:
            stages.append({"$unwind": f"${prefix}"})
    return stages
