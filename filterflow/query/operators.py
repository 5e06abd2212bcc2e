"""Module containing the operators and logic modes understood by filters"""

from enum import Enum


class LogicMode(str, Enum):
    """How a component combines with its siblings in a group"""

    AND = "AND"
    OR = "OR"
    NOR = "NOR"
    NOT = "NOT"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            for member in cls:
                if member.value == value.strip().upper():
                    return member
        return None


class FilterOperator(Enum):
    """The operators a FilterRequest can have

    Each operator carries a symbol, used in textual expressions, and a short alias.
    Any of the name, the symbol or the alias can be used to refer to an operator.
    """

    # comparison
    EQUALS = ("==", "eq")
    NOT_EQUALS = ("!=", "ne")
    GREATER_THAN = (">", "gt")
    GREATER_THAN_EQUAL = (">=", "gte")
    LESS_THAN = ("<", "lt")
    LESS_THAN_EQUAL = ("<=", "lte")

    # string matching
    CONTAINS_WORD = ("~w", "cw")
    STARTS_WITH = ("^", "sw")
    ENDS_WITH = ("$", "ew")
    LIKE = ("*", "like")
    REGEX = ("r", "regex")

    # collections
    IN = ("in", "in")
    NOT_IN = ("!in", "nin")

    # existence & null
    EXISTS = ("exists", "exists")
    IS_NULL = ("null", "null")
    IS_NOT_NULL = ("!null", "notNull")

    # ranges
    BETWEEN = ("between", "range")
    NOT_BETWEEN = ("!between", "notRange")

    # special
    EXPR = ("expr", "expr")
    GLOBAL = ("@", "text")
    CONTROL = ("#", "ctl")

    # maps
    MAP_VALUE_EQUALS = (":=", "mve")
    MAP_VALUE_CONTAINS = (":~", "mvc")
    MAP_VALUE_EXISTS = (":?", "mvx")
    MAP_KEY_EQUALS = ("key=", "mke")

    def __init__(self, symbol: str, alias: str):
        self.symbol = symbol
        self.alias = alias

    @classmethod
    def from_string(cls, value: str) -> "FilterOperator":
        """Gets the operator whose name, symbol or alias matches the value

        The match is case-insensitive.

        Args:
            value: the name, symbol or alias of the operator

        Returns:
            the matching operator

        Raises:
            ValueError: unknown operator '{value}'
        """
        if isinstance(value, FilterOperator):
            return value

        text = str(value).strip()
        lowered = text.lower()
        for op in cls:
            if lowered in (op.name.lower(), op.symbol.lower(), op.alias.lower()):
                return op
        raise ValueError(f"unknown operator '{value}'")

    @classmethod
    def is_convertible(cls, value: str) -> bool:
        """Checks whether the value refers to a known operator"""
        try:
            cls.from_string(value)
        except ValueError:
            return False
        return True

    @classmethod
    def canonical_name(cls, value: "str | FilterOperator") -> str:
        """Gets the canonical name of the operator if known, else returns the value as is"""
        try:
            return cls.from_string(value).name
        except ValueError:
            return str(value).strip()


SPECIAL_OPERATORS = frozenset(
    {FilterOperator.GLOBAL, FilterOperator.EXPR, FilterOperator.CONTROL}
)
"""operators compiled by the compiler itself, never through the registry"""

VALUELESS_OPERATORS = frozenset(
    {
        FilterOperator.IS_NULL,
        FilterOperator.IS_NOT_NULL,
        FilterOperator.EXISTS,
        FilterOperator.GLOBAL,
        FilterOperator.EXPR,
    }
)
"""operators whose requests need no value"""

FIELDLESS_OPERATORS = frozenset({FilterOperator.GLOBAL, FilterOperator.EXPR})
"""operators whose requests need no field"""

RANGE_OPERATORS = frozenset({FilterOperator.BETWEEN, FilterOperator.NOT_BETWEEN})
LIST_OPERATORS = frozenset({FilterOperator.IN, FilterOperator.NOT_IN})
MAP_OPERATORS = frozenset(
    {
        FilterOperator.MAP_VALUE_EQUALS,
        FilterOperator.MAP_VALUE_CONTAINS,
        FilterOperator.MAP_VALUE_EXISTS,
        FilterOperator.MAP_KEY_EQUALS,
    }
)


def get_operator(name: str) -> FilterOperator | None:
    """Gets the operator for the given canonical name, or None for custom operators"""
    try:
        return FilterOperator.from_string(name)
    except ValueError:
        return None
