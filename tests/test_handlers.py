"""Tests for the operator registry and the default handlers"""

import pytest

from filterflow import FilterOperator, RegistryError, UnknownOperatorError


def test_eq(registry):
    """EQUALS uses $eq"""
    got = registry.get(FilterOperator.EQUALS)("name", "Hoima")
    assert got == {"name": {"$eq": "Hoima"}}


def test_between(registry):
    """BETWEEN is an inclusive range"""
    got = registry.get("BETWEEN")("rating", [100, 500])
    assert got == {"rating": {"$gte": 100, "$lte": 500}}


def test_between_open_bound(registry):
    """BETWEEN with a null bound is single-sided"""
    got = registry.get("range")("rating", [None, 500])
    assert got == {"rating": {"$lte": 500}}


def test_not_between(registry):
    """NOT_BETWEEN is outside the range on either side"""
    got = registry.get("!between")("rating", [1, 5])
    assert got == {"$or": [{"rating": {"$lt": 1}}, {"rating": {"$gt": 5}}]}


def test_not_between_open_bound(registry):
    """NOT_BETWEEN with a null bound is single-sided"""
    got = registry.get("NOT_BETWEEN")("rating", [1, None])
    assert got == {"rating": {"$lt": 1}}


def test_like(registry):
    """LIKE turns wildcards into an anchored case-insensitive regex"""
    got = registry.get("LIKE")("name", "Ho*a")
    assert got == {"name": {"$regex": "^Ho[^/]*a$", "$options": "i"}}


def test_like_without_wildcards(registry):
    """LIKE without wildcards matches substrings"""
    got = registry.get("LIKE")("name", "oim")
    assert got == {"name": {"$regex": "^.*oim.*$", "$options": "i"}}


def test_starts_with(registry):
    """STARTS_WITH escapes the value"""
    got = registry.get("^")("name", "a.b")
    assert got == {"name": {"$regex": r"^a\.b", "$options": "i"}}


def test_ends_with(registry):
    """ENDS_WITH anchors at the end"""
    got = registry.get("ew")("name", "ma")
    assert got == {"name": {"$regex": "ma$", "$options": "i"}}


def test_contains_word(registry):
    """CONTAINS_WORD matches whole words"""
    got = registry.get("~w")("address", "road")
    assert got == {
        "address": {"$regex": r"(^|[^\p{L}])road([^\p{L}]|$)", "$options": "i"}
    }


def test_exists_true(registry):
    """EXISTS true means present, not null and not an empty array"""
    got = registry.get("EXISTS")("tags", True)
    assert got == {
        "$and": [
            {"tags": {"$exists": True}},
            {"tags": {"$ne": None}},
            {"$or": [{"tags": {"$not": {"$type": "array"}}}, {"tags.0": {"$exists": True}}]},
        ]
    }


def test_exists_without_value(registry):
    """EXISTS without a value means EXISTS true"""
    got_none = registry.get("EXISTS")("tags", None)
    got_true = registry.get("EXISTS")("tags", "true")
    assert got_none == got_true


def test_exists_false(registry):
    """EXISTS false means absent, null or an empty array"""
    got = registry.get("EXISTS")("tags", False)
    assert got == {
        "$or": [{"tags": {"$exists": False}}, {"tags": None}, {"tags": {"$size": 0}}]
    }


def test_null(registry):
    """IS_NULL and IS_NOT_NULL compare with null"""
    assert registry.get("null")("city", None) == {"city": None}
    assert registry.get("!null")("city", None) == {"city": {"$ne": None}}


def test_in(registry):
    """IN and NOT_IN take lists"""
    assert registry.get("in")("tags", ("a", "b")) == {"tags": {"$in": ["a", "b"]}}
    assert registry.get("nin")("tags", ["a"]) == {"tags": {"$nin": ["a"]}}


def test_map_operators(registry):
    """The map operators address keys with dot notation"""
    assert registry.get(":=")("attributes", {"color": "red"}) == {
        "attributes.color": "red"
    }
    assert registry.get(":~")("attributes", {"color": "re"}) == {
        "attributes.color": {"$regex": ".*re.*", "$options": "i"}
    }
    assert registry.get(":?")("attributes", "color") == {
        "attributes.color": {"$exists": True, "$ne": None}
    }
    assert registry.get(":?")("attributes", False) == {
        "attributes": {"$exists": False}
    }
    assert registry.get("key=")("attributes", "color") == {
        "attributes.color": {"$exists": True}
    }


def test_duplicate_registration(registry):
    """Registering an operator twice fails"""
    with pytest.raises(RegistryError, match="Handler already registered for: EQUALS"):
        registry.register("==", lambda field, value: {field: value})


@pytest.mark.parametrize("operator", ["GLOBAL", "expr", "#"])
def test_reserved_registration(registry, operator):
    """GLOBAL, EXPR and CONTROL cannot have handlers"""
    with pytest.raises(RegistryError):
        registry.register(operator, lambda field, value: {field: value})


def test_custom_operator(registry):
    """Custom operators can be registered under their own category"""
    registry.register("SIZE", lambda field, value: {field: {"$size": value}}, "Arrays")
    assert registry.get("SIZE")("tags", 2) == {"tags": {"$size": 2}}
    assert registry.is_registered("SIZE")
    assert "Arrays: SIZE" in registry.grouped_operators_message()


def test_unsupported_operator(registry):
    """Getting an unregistered operator fails"""
    with pytest.raises(UnknownOperatorError, match="Unsupported operator: SIZE"):
        registry.get("SIZE")


def test_grouped_operators_message(registry):
    """The operators are listed per category, sorted by category"""
    lines = registry.grouped_operators_message().splitlines()
    assert lines[0] == "Collections: IN, NOT_IN"
    assert lines[-1] == "Special: CONTROL, EXPR, GLOBAL"
