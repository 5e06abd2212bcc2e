"""Parser of textual filter expressions

Example::

    age >= 18 && (city == 'NY' || city == "LA") && tags in [a, b]

``&&`` binds tighter than ``||`` and parentheses group sub-expressions.
Any operator can be referred to by its symbol, its name or its alias.
"""

import re
from typing import Any

from .._errors import StructuralError
from .handlers import get_registry
from .operators import VALUELESS_OPERATORS, FilterOperator, LogicMode
from .predicate import FilterGroup, FilterRequest

TOKEN_PATTERN = re.compile(
    r"""\s*(
        \( | \) | && | \|\|
        | >= | <= | != | == | := | key= | > | < | =
        | \[[^\]]*\]
        | "[^"]*" | '[^']*'
        | [^\s()&|<>=!]+
        | ![^\s()&|<>=!]+
    )\s*""",
    re.VERBOSE,
)
"""the tokens in order of priority"""

MAX_LIST_TOKENS = 100
_AND, _OR, _OPEN, _CLOSE = "&&", "||", "(", ")"
_CONNECTIVES = (_AND, _OR, _CLOSE)
_QUOTES = ("'", '"')
_LIST_ITEM_PATTERN = re.compile(r"\s*('[^']*'|\"[^\"]*\"|[^,]+)\s*(?:,|$)")
_WORD_SYMBOL = re.compile(r"^!?[A-Za-z]")


def tokenize(expression: str) -> list[str]:
    """Splits the expression into tokens

    Args:
        expression: the textual expression

    Returns:
        the tokens, without surrounding whitespace

    Raises:
        StructuralError: a character does not start any token e.g. a single '&'
    """
    tokens = []
    position = 0
    while position < len(expression):
        if not expression[position:].strip():
            break

        match = TOKEN_PATTERN.match(expression, position)
        if match is None:
            raise StructuralError(
                f"Unexpected character '{expression[position:].strip()[0]}' "
                f"in expression: {expression}"
            )
        tokens.append(match.group(1))
        position = match.end()

    return tokens


def parse_expression(expression: str) -> FilterGroup:
    """Parses the textual expression into a FilterGroup

    Args:
        expression: the textual expression e.g. ``"age >= 18 && name ^ 'jo'"``

    Returns:
        the parsed FilterGroup; an empty group for a blank expression

    Raises:
        StructuralError: the expression is malformed
        UnknownOperatorError: the expression uses an unknown operator
    """
    return ExpressionParser(expression).parse()


def parse_condition(condition: str) -> FilterRequest:
    """Parses a single ``field operator value`` condition

    The operator symbols are tried longest first and the condition is split on the
    first case-insensitive match. Symbols made of letters must stand on their own.

    Args:
        condition: the condition e.g. ``"name^jo"``

    Returns:
        the FilterRequest

    Raises:
        StructuralError: No valid operator found in expression
    """
    lowered = condition.lower()
    for symbol, operator in _SYMBOLS:
        index = _find_symbol(lowered, symbol.lower())
        if index <= 0:
            continue

        field = condition[:index].strip()
        raw_value = condition[index + len(symbol) :].strip()
        if not field or " " in field:
            continue

        value = _unquote(raw_value) if raw_value else None
        return FilterRequest(field=field, operator=operator, value=value)

    raise StructuralError(f"No valid operator found in expression: {condition}")


class ExpressionParser:
    """Precedence climbing parser turning tokens into a FilterGroup

    Conditions joined by ``&&`` get the AND logic and those joined by ``||``
    get the OR logic. Chains of the same connective are flattened into one group.
    """

    def __init__(self, expression: str):
        self._expression = expression
        self._tokens = tokenize(expression)
        self._position = 0

    def parse(self) -> FilterGroup:
        if not self._tokens:
            return FilterGroup()

        group = self._parse_or()
        if self._peek() is not None:
            raise StructuralError(
                f"Unexpected token '{self._peek()}' in expression: {self._expression}"
            )
        return group

    def _parse_or(self) -> FilterGroup:
        left = self._parse_and()
        while self._peek() == _OR:
            self._advance()
            right = self._parse_and()
            left = _combine(left, right, LogicMode.OR)
        return left

    def _parse_and(self) -> FilterGroup:
        left = self._parse_primary()
        while self._peek() == _AND:
            self._advance()
            right = self._parse_primary()
            left = _combine(left, right, LogicMode.AND)
        return left

    def _parse_primary(self) -> FilterGroup:
        token = self._peek()
        if token == _OPEN:
            self._advance()
            group = self._parse_or()
            self._expect(_CLOSE)
            return group

        if token is None or token in (_AND, _OR, _CLOSE):
            raise StructuralError(
                f"Expected field but found {_describe(token)} in expression: {self._expression}"
            )

        if token == FilterOperator.GLOBAL.symbol:
            self._advance()
            value = self._parse_value(FilterOperator.GLOBAL)
            request = FilterRequest(operator=FilterOperator.GLOBAL, value=value)
            return FilterGroup(components=[request])

        field = self._advance()
        operator = self._operator_for(self._peek())
        if operator is None:
            return FilterGroup(components=[self._parse_fused_condition(field)])

        self._advance()
        value = self._parse_value(operator)
        request = FilterRequest(field=field, operator=operator, value=value)
        return FilterGroup(components=[request])

    def _parse_fused_condition(self, field: str) -> FilterRequest:
        """Parses conditions whose operator is glued to the field e.g. ``name^jo``"""
        parts = [field]
        while self._peek() is not None and self._peek() not in _CONNECTIVES:
            parts.append(self._advance())

        if len(parts) == 1 and _find_any_symbol(field) <= 0:
            raise StructuralError(
                f"Expected operator after field '{field}' in expression: {self._expression}"
            )
        return parse_condition(" ".join(parts))

    def _parse_value(self, operator: FilterOperator | str) -> Any:
        token = self._peek()
        if token is None or token in _CONNECTIVES:
            if operator in VALUELESS_OPERATORS:
                return None
            raise StructuralError(
                f"Expected value after operator '{_name(operator)}' but found {_describe(token)}"
            )

        if token.startswith(_QUOTES):
            self._advance()
            return _unquote(token)

        if token.startswith("["):
            return _parse_list(self._collect_list(operator))

        parts = []
        while self._peek() is not None and self._peek() not in _CONNECTIVES:
            parts.append(self._advance())
        return " ".join(parts)

    def _collect_list(self, operator: FilterOperator | str) -> str:
        """Gathers the tokens of a list literal up to the token closing it"""
        parts = [self._advance()]
        while not parts[-1].endswith("]"):
            if len(parts) > MAX_LIST_TOKENS:
                raise StructuralError(
                    "Too many tokens without closing ] in list value"
                )
            if self._peek() is None:
                raise StructuralError(
                    f"Unclosed list value for operator {_name(operator)}"
                )
            parts.append(self._advance())
        return " ".join(parts)

    def _operator_for(self, token: str | None) -> FilterOperator | str | None:
        if token is None or token in (_AND, _OR, _OPEN, _CLOSE):
            return None
        if token == "=":
            return FilterOperator.EQUALS
        if FilterOperator.is_convertible(token):
            return FilterOperator.from_string(token)
        if get_registry().is_registered(token):
            return token
        return None

    def _expect(self, token: str):
        if self._peek() != token:
            raise StructuralError(
                f"Expected '{token}' but found {_describe(self._peek())} "
                f"in expression: {self._expression}"
            )
        self._advance()

    def _peek(self) -> str | None:
        if self._position < len(self._tokens):
            return self._tokens[self._position]
        return None

    def _advance(self) -> str:
        token = self._tokens[self._position]
        self._position += 1
        return token


def _combine(left: FilterGroup, right: FilterGroup, logic: LogicMode) -> FilterGroup:
    """Joins two parsed sub-expressions with the given connective

    Single conditions take the logic of the connective. If both sides are made
    up of components with that logic only, the right side is merged into the left;
    otherwise both sides are nested in a new group.
    """
    left = _adopt_logic(left, logic)
    right = _adopt_logic(right, logic)

    if _all_have_logic(left, logic) and _all_have_logic(right, logic):
        return left.add_component(right.components)

    left.logic = logic
    right.logic = logic
    return FilterGroup(components=[_unwrap(left), _unwrap(right)])


def _adopt_logic(group: FilterGroup, logic: LogicMode) -> FilterGroup:
    if len(group.components) == 1 and isinstance(group.components[0], FilterRequest):
        group.components = [group.components[0].with_logic(logic)]
    return group


def _all_have_logic(group: FilterGroup, logic: LogicMode) -> bool:
    return all(v.logic == logic for v in group.components)


def _unwrap(group: FilterGroup) -> FilterGroup | FilterRequest:
    if len(group.components) == 1 and isinstance(group.components[0], FilterRequest):
        return group.components[0]
    return group


def _unquote(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] in _QUOTES and text[-1] == text[0]:
        return text[1:-1]
    return text


def _parse_list(text: str) -> list[Any]:
    inner = text.strip()[1:-1].strip()
    if not inner:
        return []

    items = []
    for match in _LIST_ITEM_PATTERN.finditer(inner):
        item = match.group(1).strip()
        if item.lower() == "null":
            items.append(None)
        else:
            items.append(_unquote(item))
    return items


def _find_symbol(text: str, symbol: str) -> int:
    """Finds the symbol in the text; symbols made of letters must be surrounded by spaces"""
    if not _WORD_SYMBOL.match(symbol):
        return text.find(symbol)

    match = re.search(rf"(?<=\s){re.escape(symbol)}(?=\s|$)", text)
    return match.start() if match else -1


def _find_any_symbol(text: str) -> int:
    lowered = text.lower()
    return max(_find_symbol(lowered, v.lower()) for v, _ in _SYMBOLS)


def _describe(token: str | None) -> str:
    return "end of expression" if token is None else f"'{token}'"


def _name(operator: FilterOperator | str) -> str:
    return operator.name if isinstance(operator, FilterOperator) else str(operator)


_SYMBOLS: list[tuple[str, FilterOperator]] = sorted(
    ((v.symbol, v) for v in FilterOperator),
    key=lambda item: len(item[0]),
    reverse=True,
)
"""operator symbols, longest first"""
