"""Tests for compiling filters into mongodb filters and pipelines"""

from datetime import datetime

import pytest

from filterflow import (
    FieldResolutionError,
    FilterGroup,
    FilterOperator,
    FilterOptions,
    FilterRequest,
    FilterValidationError,
    LogicMode,
    StructuralError,
    get_registry,
    to_readable_expression,
)
from filterflow.query.compiler import MAX_DEPTH, build_projection
from tests.conftest import Library, Person
from tests.utils import load_fixture

_FILTERS = load_fixture("filters.json")
_ADULTS_IN_NY_OR_LA = {
    "$and": [
        {"age": {"$gte": 18}},
        {"$or": [{"city": {"$eq": "NY"}}, {"city": {"$eq": "LA"}}]},
    ]
}


@pytest.fixture(scope="module")
def size_operator():
    """A custom operator registered on the default registry"""
    registry = get_registry()
    if not registry.is_registered("SIZE_OF"):
        registry.register(
            "SIZE_OF", lambda field, value: {field: {"$size": int(value)}}, "Arrays"
        )
    yield "SIZE_OF"


def test_compile_expression(compiler):
    """A textual expression compiles with values converted to the field types"""
    got = compiler.to_mongo(Person, "age >= 18 && (city == 'NY' || city == 'LA')")
    assert got == _ADULTS_IN_NY_OR_LA


def test_compile_tree(compiler):
    """The JSON form of a tree compiles the same as its textual form"""
    got = compiler.to_mongo(Person, _FILTERS["adults_in_ny_or_la"])
    assert got == _ADULTS_IN_NY_OR_LA


@pytest.mark.parametrize(
    "model, field, operator, text, value",
    [
        (Person, "age", FilterOperator.EQUALS, "18", 18),
        (Person, "age", FilterOperator.NOT_EQUALS, "18", 18),
        (Person, "age", FilterOperator.GREATER_THAN, "18", 18),
        (Person, "age", FilterOperator.LESS_THAN, "18", 18),
        (Person, "age", FilterOperator.LESS_THAN_EQUAL, "18", 18),
        (Person, "age", FilterOperator.GREATER_THAN_EQUAL, "18", 18),
        (Person, "name", FilterOperator.CONTAINS_WORD, "jo", "jo"),
        (Person, "name", FilterOperator.ENDS_WITH, "jo", "jo"),
        (Person, "name", FilterOperator.STARTS_WITH, "jo", "jo"),
        (Person, "name", FilterOperator.LIKE, "jo*", "jo*"),
        (Person, "name", FilterOperator.REGEX, "^jo", "^jo"),
        (Person, "tags", FilterOperator.IN, "[a, b]", ["a", "b"]),
        (Person, "tags", FilterOperator.NOT_IN, "[a]", ["a"]),
        (Person, "city", FilterOperator.EXISTS, "", None),
        (Person, "city", FilterOperator.IS_NULL, "", None),
        (Person, "city", FilterOperator.IS_NOT_NULL, "", None),
        (Person, "age", FilterOperator.BETWEEN, "[1, 5]", [1, 5]),
        (Person, "age", FilterOperator.NOT_BETWEEN, "[1, 5]", [1, 5]),
        (Library, "attributes", FilterOperator.MAP_VALUE_EQUALS, '{"color":"red"}', {"color": "red"}),
        (Library, "attributes", FilterOperator.MAP_VALUE_CONTAINS, '{"color":"re"}', {"color": "re"}),
        (Library, "attributes", FilterOperator.MAP_VALUE_EXISTS, "color", "color"),
        (Library, "attributes", FilterOperator.MAP_KEY_EQUALS, "color", "color"),
    ],
)
def test_expression_matches_tree(compiler, model, field, operator, text, value):
    """Expressions using the symbol, name or alias compile the same as the tree"""
    expected = compiler.to_mongo(
        model, FilterRequest(field=field, operator=operator, value=value)
    )
    for form in (operator.symbol, operator.name, operator.alias):
        expression = f"{field} {form} {text}".strip()
        assert compiler.to_mongo(model, expression) == expected


def test_compile_single_request(compiler):
    """Single requests and lists of requests can be compiled directly"""
    request = {"field": "age", "operator": ">", "value": "3"}
    assert compiler.to_mongo(Person, request) == {"age": {"$gt": 3}}
    assert compiler.to_mongo(Person, [request]) == {"age": {"$gt": 3}}
    assert compiler.to_mongo(Person, FilterRequest.gt("age", 3)) == {"age": {"$gt": 3}}


def test_empty_query(compiler):
    """An empty query matches everything"""
    assert compiler.to_mongo(Person, None) == {}
    assert compiler.to_mongo(Person, "") == {}
    assert compiler.to_pipeline(Person) == []


def test_unreadable_query(compiler):
    """Queries of unknown shape are rejected"""
    with pytest.raises(StructuralError, match="Cannot read a filter from int"):
        compiler.to_mongo(Person, 42)


def test_mixed_logic(compiler):
    """AND requests are all required and at least one OR request is required"""
    group = FilterGroup(
        components=[
            FilterRequest.eq("city", "NY", logic=LogicMode.OR),
            FilterRequest.eq("city", "LA", logic=LogicMode.OR),
            FilterRequest.gte("age", 18),
        ]
    )
    assert compiler.to_mongo(Person, group) == _ADULTS_IN_NY_OR_LA


def test_negations(compiler):
    """NOR and NOT requests must all be false"""
    group = FilterGroup(
        components=[
            FilterRequest.eq("name", "a", logic=LogicMode.NOR),
            FilterRequest.eq("name", "b", logic=LogicMode.NOT),
        ]
    )
    assert compiler.to_mongo(Person, group) == {
        "$and": [
            {"$nor": [{"name": {"$eq": "a"}}]},
            {"$nor": [{"name": {"$eq": "b"}}]},
        ]
    }


def test_between(compiler):
    """BETWEEN converts both bounds and may be open on one side"""
    closed = FilterRequest(field="age", operator="BETWEEN", value=["100", 500])
    assert compiler.to_mongo(Person, closed) == {"age": {"$gte": 100, "$lte": 500}}

    open_ended = FilterRequest(field="age", operator="range", value=[None, 500])
    assert compiler.to_mongo(Person, open_ended) == {"age": {"$lte": 500}}


@pytest.mark.parametrize(
    "expression, expected",
    [
        ("created >= 2024-01-31", {"created": {"$gte": datetime(2024, 1, 31)}}),
        ("status == ACTIVE", {"status": {"$eq": "active"}}),
        ("tags in [a, b]", {"tags": {"$in": ["a", "b"]}}),
        ("name ^ jo", {"name": {"$regex": "^jo", "$options": "i"}}),
        ("city null", {"city": None}),
    ],
)
def test_values_follow_field_types(compiler, expression, expected):
    """Values are converted to what the field stores"""
    assert compiler.to_mongo(Person, expression) == expected


def test_string_fields_keep_date_like_values(compiler):
    """Date-like values compared with string fields stay strings"""
    got = compiler.to_mongo(Person, "name == 2024-01-31")
    assert got == {"name": {"$eq": "2024-01-31"}}


def test_operator_not_allowed(compiler):
    """Operators that do not suit the field type are rejected"""
    with pytest.raises(FilterValidationError, match="CONTAINS_WORD"):
        compiler.to_mongo(Person, "age ~w 5")


def test_unknown_field(compiler):
    """Fields missing from the schema are rejected"""
    with pytest.raises(FieldResolutionError, match="Invalid field: 'colour' in Person"):
        compiler.to_mongo(Person, "colour == red")


def test_schema_less(compiler):
    """Without a schema, values are passed on with only dates parsed"""
    got = compiler.to_mongo(None, "age >= 18 && created >= 2024-01-31")
    assert got == {
        "$and": [
            {"age": {"$gte": "18"}},
            {"created": {"$gte": datetime(2024, 1, 31)}},
        ]
    }


def test_expression(compiler):
    """EXPR requests are passed on as $expr"""
    request = FilterRequest(operator="expr", value={"$gt": ["$age", 18]})
    assert compiler.to_mongo(Person, request) == {"$expr": {"$gt": ["$age", 18]}}


def test_global_search(compiler):
    """GLOBAL requests search the allowed string fields"""
    options = FilterOptions(allowed_global_search_fields={"name"})
    got = compiler.to_mongo(Library, "@ kampala", options)
    assert got == {"name": {"$regex": "kampala", "$options": "i"}}


def test_global_search_requires_model(compiler):
    """GLOBAL requests cannot be compiled without a schema"""
    with pytest.raises(StructuralError, match="Global search requires a model"):
        compiler.to_mongo(None, "@ kampala")


def test_global_search_with_null_field(compiler):
    """Serialized GLOBAL requests may carry a null field"""
    options = FilterOptions(allowed_global_search_fields={"name"})
    request = {"field": None, "operator": "GLOBAL", "value": "kampala"}
    assert compiler.to_mongo(Library, request, options) == {
        "name": {"$regex": "kampala", "$options": "i"}
    }


@pytest.mark.parametrize(
    "query",
    [
        {"field": "name", "operator": "==", "value": "x", "logic": "XOR"},
        {"logic": "XOR", "components": [{"field": "name", "operator": "==", "value": "x"}]},
        [{"field": "name", "operator": "==", "value": "x", "logic": "XOR"}],
    ],
)
def test_invalid_logic(compiler, query):
    """Unknown logic modes are reported as structural errors"""
    with pytest.raises(StructuralError, match="Invalid logic mode 'XOR'"):
        compiler.to_mongo(Person, query)


def test_malformed_filter(compiler):
    """Filters of the wrong shape are reported as structural errors"""
    with pytest.raises(StructuralError, match="Malformed filter"):
        compiler.to_mongo(Person, {"components": 5})


@pytest.mark.parametrize(
    "request_, expected",
    [
        (FilterRequest(field="tags", operator="IN", value="ab,cd"), {"tags": {"$in": ["ab", "cd"]}}),
        (FilterRequest(field="tags", operator="!in", value=["ab"]), {"tags": {"$nin": ["ab"]}}),
        (FilterRequest(field="age", operator="BETWEEN", value="1,50"), {"age": {"$gte": "1", "$lte": "50"}}),
        (FilterRequest(field="age", operator="range", value="[1, 50]"), {"age": {"$gte": 1, "$lte": 50}}),
    ],
)
def test_schema_less_lists(compiler, request_, expected):
    """Without a schema, list and range values are still read as lists"""
    assert compiler.to_mongo(None, request_) == expected


@pytest.mark.parametrize(
    "request_, message",
    [
        (FilterRequest(field="tags", operator="IN", value=""), "requires a non-empty list"),
        (FilterRequest(field="age", operator="BETWEEN", value="1,2,3"), "requires exactly 2 values"),
        (FilterRequest(field="age", operator="BETWEEN", value=[None, None]), "at least one non-null bound"),
    ],
)
def test_schema_less_list_errors(compiler, request_, message):
    """Without a schema, list and range values must still have the right number of values"""
    with pytest.raises(FilterValidationError, match=message):
        compiler.to_mongo(None, request_)


def test_control_requests(compiler):
    """CONTROL requests become options and are left out of the filter"""
    query = FilterGroup.model_validate(_FILTERS["with_controls"])
    group, options = compiler.prepare(query)

    assert options.debug
    assert options.global_search_depth == 2
    assert options.db_explain_options.enabled
    assert compiler.compile_group(Library, group, options) == {
        "name": {"$regex": "^jo", "$options": "i"}
    }
    assert query.count_components() == 4


def test_unknown_control_key(compiler):
    """Unknown control keys are rejected"""
    with pytest.raises(FilterValidationError, match="Unknown control key: colour"):
        compiler.to_mongo(Person, _FILTERS["unknown_control"])


def test_control_request_cannot_be_compiled(compiler):
    """CONTROL requests never reach the filter"""
    request = FilterRequest(field="debug", operator="#", value=True)
    with pytest.raises(StructuralError):
        compiler.compile_request(Person, request, FilterOptions())


def test_maximum_depth(compiler):
    """Trees nested deeper than the limit are rejected"""
    group = FilterGroup(components=[FilterRequest.eq("name", "a")])
    for _ in range(MAX_DEPTH):
        group = FilterGroup(components=[group])

    with pytest.raises(StructuralError, match="Maximum filter nesting depth exceeded"):
        compiler.compile_group(Person, group, FilterOptions())


def test_custom_operator(compiler, size_operator):
    """Custom operators are compiled by their handlers, without type checks"""
    assert compiler.to_mongo(Person, f"tags {size_operator} 2") == {
        "tags": {"$size": 2}
    }


def test_pipeline(compiler):
    """Pipelines hold the virtual field stages, the match and the projection"""
    query = "resolveVF # true && project # name,rating && name == x"
    got = compiler.to_pipeline(Library, query)

    assert [next(iter(v)) for v in got] == [
        "$lookup",
        "$addFields",
        "$project",
        "$lookup",
        "$addFields",
        "$match",
        "$project",
    ]
    assert got[-2] == {"$match": {"name": {"$eq": "x"}}}
    assert got[-1] == {"$project": {"name": 1, "rating": 1}}


def test_pipeline_without_virtual_fields(compiler):
    """Virtual field stages are only added on request"""
    got = compiler.to_pipeline(Library, "name == x")
    assert got == [{"$match": {"name": {"$eq": "x"}}}]


def test_build_projection():
    """project wins over exclude"""
    assert build_projection(FilterOptions(project=["a"], exclude=["b"])) == {"a": 1}
    assert build_projection(FilterOptions(exclude=["b"])) == {"b": 0}
    assert build_projection(FilterOptions()) == {}


@pytest.mark.parametrize(
    "selector, expected",
    [
        (
            {"$or": [{"age": {"$gte": 18}}, {"city": "NY"}]},
            'age >= 18 || city == "NY"',
        ),
        (
            {
                "$and": [
                    {"age": {"$gte": 18}},
                    {"$or": [{"city": {"$eq": "NY"}}, {"city": {"$eq": "LA"}}]},
                ]
            },
            'age >= 18 && (city == "NY" || city == "LA")',
        ),
        ({"$nor": [{"name": {"$eq": "x"}}]}, '!(name == "x")'),
        ({"is_public": True}, "is_public == true"),
        ({"tags": {"$in": ["a", "b"]}}, 'tags in ["a", "b"]'),
    ],
)
def test_to_readable_expression(selector, expected):
    """Compiled filters can be rendered back as infix expressions"""
    assert to_readable_expression(selector) == expected
