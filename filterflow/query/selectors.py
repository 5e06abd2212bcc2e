"""Module containing the mongodb selectors and stages that filters compile to

See: https://www.mongodb.com/docs/manual/reference/operator/query/#std-label-query-selectors
"""

from typing import Any, Iterable, TypedDict

# Query Selectors

## Comparison
_EqSelector = TypedDict("_EqSelector", {"$eq": Any})
"""field is equal to value: ``{ $eq: <value> }``"""

_NeSelector = TypedDict("_NeSelector", {"$ne": Any})
"""field is not equal to value: ``{ $ne: value }``"""

_RangeSelector = TypedDict(
    "_RangeSelector",
    {"$gt": Any, "$gte": Any, "$lt": Any, "$lte": Any},
    total=False,
)
"""field is within bounds: ``{ $gte: <start>, $lte: <end> }``; any bound is optional"""

_InSelector = TypedDict("_InSelector", {"$in": list[Any]})
"""field is in list: ``{ $in: [<value1>, <value2>, ... <valueN> ] }``"""

_NinSelector = TypedDict("_NinSelector", {"$nin": list[Any]})
"""field is not in list: ``{ $nin: [ <value1>, <value2> ... <valueN> ] }``"""

## Evaluation
_RegexSelector = TypedDict(
    "_RegexSelector", {"$regex": str, "$options": str}, total=False
)
"""field matches given regular expression: ``{ "$regex": "pattern", "$options": "<options>" }``

``$options`` is optional
"""

_ExprSelector = TypedDict("_ExprSelector", {"$expr": dict[str, Any]})
"""raw aggregation expression: ``{ $expr: { <expression> } }``"""

## Element
_ExistsSelector = TypedDict("_ExistsSelector", {"$exists": bool})
"""field exists: ``{ $exists: <boolean> }``"""

_TypeSelector = TypedDict("_TypeSelector", {"$type": Any})
"""field is given BSON type: ``{ $type: <value1> }``"""

OperatorSelector = (
    _EqSelector
    | _NeSelector
    | _RangeSelector
    | _InSelector
    | _NinSelector
    | _RegexSelector
    | _ExistsSelector
    | _TypeSelector
)
FieldSelector = dict[str, OperatorSelector | Any]
"""a comparison on a given field: ``{ field: { <operator>: <operand>}}``"""

## Logical
_AndSelector = TypedDict("_AndSelector", {"$and": list[FieldSelector]})
"""all expressions are true: ``{ $and: [ { <expression1> }, { <expression2> } , ... , { <expressionN> } ] }``"""

_NorSelector = TypedDict("_NorSelector", {"$nor": list[FieldSelector]})
"""no expression is true: ``{ $nor: [ { <expression1> }, { <expression2> }, ...  { <expressionN> } ] }``"""

_OrSelector = TypedDict("_OrSelector", {"$or": list[FieldSelector]})
"""any expression is true: ``{ $or: [ { <expression1> }, { <expression2> }, ... , { <expressionN> } ] }``"""

QuerySelector = (
    FieldSelector | _AndSelector | _NorSelector | _OrSelector | _ExprSelector
)
"""query predicate for filtering records; an empty dict matches everything"""

# Pipeline stages
PipelineStage = dict[str, Any]
"""a single aggregation stage e.g. ``{ $lookup: {...} }``"""

Pipeline = list[PipelineStage]
"""an ordered list of aggregation stages"""


def and_(selectors: Iterable[QuerySelector]) -> QuerySelector:
    """Combines selectors such that all of them must be true

    Empty selectors are dropped and a single remaining selector is returned as is.

    Args:
        selectors: the selectors to combine

    Returns:
        the combined selector; ``{}`` if there was nothing to combine
    """
    items = [v for v in selectors if v]
    if not items:
        return {}
    if len(items) == 1:
        return items[0]
    return {"$and": items}


def or_(selectors: Iterable[QuerySelector]) -> QuerySelector:
    """Combines selectors such that at least one of them must be true

    Empty selectors are dropped and a single remaining selector is returned as is.

    Args:
        selectors: the selectors to combine

    Returns:
        the combined selector; ``{}`` if there was nothing to combine
    """
    items = [v for v in selectors if v]
    if not items:
        return {}
    if len(items) == 1:
        return items[0]
    return {"$or": items}


def nor_(selectors: Iterable[QuerySelector]) -> QuerySelector:
    """Combines selectors such that none of them may be true

    Args:
        selectors: the selectors to combine

    Returns:
        the combined selector; ``{}`` if there was nothing to combine
    """
    items = [v for v in selectors if v]
    if not items:
        return {}
    return {"$nor": items}


def regex(field: str, pattern: str, options: str = "i") -> FieldSelector:
    """Builds a regex selector on the given field"""
    selector: _RegexSelector = {"$regex": pattern}
    if options:
        selector["$options"] = options
    return {field: selector}
