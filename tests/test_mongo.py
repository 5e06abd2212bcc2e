import logging

import pytest

from filterflow import FieldResolutionError, FilterOptions
from tests.conftest import Library
from tests.utils import load_fixture

_LIBRARY_DATA = load_fixture("libraries.json")


@pytest.fixture
def libraries(fake_db):
    """The libraries collection, filled with the library fixtures"""
    collection = fake_db["libraries"]
    collection.documents = list(_LIBRARY_DATA)
    yield collection


@pytest.mark.asyncio
async def test_find(mongo_store, libraries):
    """Find runs the compiled filter as a plain find"""
    got = await mongo_store.find(Library, "rating >= 4", skip=1, limit=5, sort="name")

    assert [v.name for v in got] == [v["name"] for v in _LIBRARY_DATA]
    assert libraries.calls == [
        (
            "find",
            {"rating": {"$gte": 4.0}},
            {"projection": None, "skip": 1, "limit": 5, "sort": "name", "session": None},
        )
    ]


@pytest.mark.asyncio
async def test_find_with_projection(mongo_store, libraries):
    """Find passes the projection from the options"""
    await mongo_store.find(Library, "project # name")
    _, selector, kwargs = libraries.calls[0]
    assert selector == {}
    assert kwargs["projection"] == {"name": 1}


@pytest.mark.asyncio
async def test_find_with_virtual_fields(mongo_store, libraries):
    """Queries with virtual fields run as pipelines, paged before the projection"""
    libraries.aggregated = [{"name": "Kampala Public Library", "book_count": 2}]
    options = FilterOptions(project=["name", "book_count"])
    got = await mongo_store.find(
        Library,
        "resolveVF # true && name ^ kampala",
        skip=1,
        limit=2,
        sort=[("name", -1)],
        options=options,
    )

    assert got[0].book_count == 2
    kind, pipeline, _ = libraries.calls[0]
    assert kind == "aggregate"
    assert pipeline[-5:] == [
        {"$match": {"name": {"$regex": "^kampala", "$options": "i"}}},
        {"$sort": {"name": -1}},
        {"$skip": 1},
        {"$limit": 2},
        {"$project": {"name": 1, "book_count": 1}},
    ]


@pytest.mark.asyncio
async def test_count(mongo_store, libraries):
    """Count counts the documents matching the compiled filter"""
    got = await mongo_store.count(Library, "tags in [public]")
    assert got == 2
    assert libraries.calls == [
        ("count_documents", {"tags": {"$in": ["public"]}}, {"session": None})
    ]


@pytest.mark.asyncio
async def test_count_with_virtual_fields(mongo_store, libraries):
    """Count with virtual fields counts at the end of the pipeline, without projecting"""
    libraries.aggregated = [{"total": 7}]
    got = await mongo_store.count(Library, "resolveVF # true && project # name && book_count > 1")

    assert got == 7
    _, pipeline, _ = libraries.calls[0]
    assert pipeline[-2:] == [
        {"$match": {"book_count": {"$gt": 1}}},
        {"$count": "total"},
    ]


@pytest.mark.asyncio
async def test_count_with_virtual_fields_no_match(mongo_store, libraries):
    """An empty count result means zero"""
    libraries.aggregated = []
    assert await mongo_store.count(Library, "resolveVF # true") == 0


@pytest.mark.asyncio
async def test_find_page(mongo_store, libraries):
    """find_page returns the page and the total"""
    items, total = await mongo_store.find_page(Library, "rating > 1", limit=1)

    assert len(items) == 2
    assert total == 2
    assert [v[0] for v in libraries.calls] == ["find", "count_documents"]


@pytest.mark.asyncio
async def test_find_page_skip_count(mongo_store, libraries):
    """find_page does not count if skipCount is set"""
    items, total = await mongo_store.find_page(Library, "skipCount # true && rating > 1")

    assert len(items) == 2
    assert total is None
    assert [v[0] for v in libraries.calls] == ["find"]


@pytest.mark.asyncio
async def test_explain(mongo_store, libraries, fake_db, caplog):
    """The query plan is logged when explain options are set"""
    with caplog.at_level(logging.INFO):
        await mongo_store.find(Library, "dbExplainOptions.timing # true && name == x")

    assert fake_db.commands == [
        {
            "explain": {"find": "libraries", "filter": {"name": {"$eq": "x"}}},
            "verbosity": "executionStats",
        }
    ]
    assert "explain (executionStats)" in caplog.text


@pytest.mark.asyncio
async def test_suggest(mongo_store, libraries):
    """suggest groups the matching documents by the field, sorted by value by default"""
    libraries.aggregated = [{"_id": "Hoima"}, {"_id": "Kampala"}, {"_id": None}]
    got = await mongo_store.suggest(Library, "location.city", "rating >= 3", skip=2, limit=10)

    assert got == ["Hoima", "Kampala"]
    kind, pipeline, _ = libraries.calls[0]
    assert kind == "aggregate"
    assert pipeline == [
        {"$match": {"rating": {"$gte": 3.0}}},
        {"$group": {"_id": "$location.city", "value": {"$first": "$location.city"}}},
        {"$sort": {"value": 1}},
        {"$skip": 2},
        {"$limit": 10},
    ]


@pytest.mark.asyncio
async def test_suggest_collection_items(mongo_store, libraries):
    """Collections along the path are unwound so that each item is suggested"""
    libraries.aggregated = []
    await mongo_store.suggest(Library, "tags", sort=[("value", -1)])
    await mongo_store.suggest(Library, "books.title")

    _, tags_pipeline, _ = libraries.calls[0]
    assert tags_pipeline[:3] == [
        {"$match": {}},
        {"$unwind": "$tags"},
        {"$group": {"_id": "$tags", "value": {"$first": "$tags"}}},
    ]
    assert tags_pipeline[3] == {"$sort": {"value": -1}}

    _, books_pipeline, _ = libraries.calls[1]
    assert books_pipeline[1] == {"$unwind": "$books"}
    assert books_pipeline[2]["$group"]["_id"] == "$books.title"


@pytest.mark.asyncio
async def test_suggest_with_virtual_fields(mongo_store, libraries):
    """Suggestions on virtual fields are grouped after the virtual field stages"""
    libraries.aggregated = [{"_id": 2}]
    got = await mongo_store.suggest(Library, "book_count", "resolveVF # true && project # name")

    assert got == [2]
    _, pipeline, _ = libraries.calls[0]
    assert pipeline[0]["$lookup"]["from"] == "books"
    assert {"$project": {"name": 1}} not in pipeline
    assert pipeline[-2:] == [
        {"$group": {"_id": "$book_count", "value": {"$first": "$book_count"}}},
        {"$sort": {"value": 1}},
    ]


@pytest.mark.asyncio
async def test_suggest_unknown_field(mongo_store, libraries):
    """Suggestions are only given for fields of the model"""
    with pytest.raises(FieldResolutionError, match="Invalid field: 'colour' in Library"):
        await mongo_store.suggest(Library, "colour")
    assert libraries.calls == []
