"""Module containing the FilterRequest and FilterGroup that make up a filter tree"""

from collections.abc import Mapping
from typing import Annotated, Any, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    field_validator,
    model_validator,
)

from .._errors import StructuralError, UnknownOperatorError
from .handlers import get_registry
from .operators import (
    FIELDLESS_OPERATORS,
    VALUELESS_OPERATORS,
    FilterOperator,
    LogicMode,
    get_operator,
)

_MAX_SUGGESTION_DISTANCE = 3
_CONNECTIVES = {
    LogicMode.AND: "&&",
    LogicMode.OR: "||",
    LogicMode.NOR: "NOR",
    LogicMode.NOT: "!",
}


class FilterRequest(BaseModel):
    """A single condition on a field

    Format::

        { "field": "age", "operator": ">=", "value": 18, "logic": "AND" }

    The operator is stored by its canonical name e.g. ``GREATER_THAN_EQUAL``.
    The logic is how this condition combines with its siblings in a group.
    """

    model_config = ConfigDict(frozen=True)

    field: str = ""
    operator: str
    value: Any = None
    logic: LogicMode = LogicMode.AND

    @field_validator("field", mode="before")
    @classmethod
    def _normalize_field(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("operator", mode="before")
    @classmethod
    def _normalize_operator(cls, value: Any) -> str:
        return resolve_operator_name(value)

    @field_validator("logic", mode="before")
    @classmethod
    def _normalize_logic(cls, value: Any) -> LogicMode:
        return to_logic_mode(value)

    @model_validator(mode="after")
    def _check_required_parts(self) -> "FilterRequest":
        op = get_operator(self.operator)
        if not self.field.strip() and op not in FIELDLESS_OPERATORS:
            raise StructuralError(
                f"Operator '{self.operator}' requires a field",
                hint="only GLOBAL and EXPR requests may omit the field",
            )

        if self.value is None and op not in VALUELESS_OPERATORS:
            raise StructuralError(
                f"Operator '{self.operator}' requires a value for field '{self.field}'"
            )
        return self

    @property
    def filter_operator(self) -> FilterOperator | None:
        """The operator as a FilterOperator; None for custom operators"""
        return get_operator(self.operator)

    @property
    def symbol(self) -> str:
        """The symbol of the operator as used in textual expressions"""
        op = self.filter_operator
        return op.symbol if op else self.operator

    def with_logic(self, logic: LogicMode) -> "FilterRequest":
        """Creates a copy of this request with the given logic"""
        return self.model_copy(update={"logic": logic})

    def to_readable(self) -> str:
        """Renders the request as ``(field symbol value)``"""
        parts = [v for v in (self.field, self.symbol) if v]
        if self.value is not None or self.filter_operator not in VALUELESS_OPERATORS:
            parts.append(format_value(self.value))
        return f"({' '.join(parts)})"

    @classmethod
    def eq(cls, field: str, value: Any, **kwargs) -> "FilterRequest":
        return cls(field=field, operator=FilterOperator.EQUALS, value=value, **kwargs)

    @classmethod
    def ne(cls, field: str, value: Any, **kwargs) -> "FilterRequest":
        return cls(
            field=field, operator=FilterOperator.NOT_EQUALS, value=value, **kwargs
        )

    @classmethod
    def gt(cls, field: str, value: Any, **kwargs) -> "FilterRequest":
        return cls(
            field=field, operator=FilterOperator.GREATER_THAN, value=value, **kwargs
        )

    @classmethod
    def gte(cls, field: str, value: Any, **kwargs) -> "FilterRequest":
        return cls(
            field=field,
            operator=FilterOperator.GREATER_THAN_EQUAL,
            value=value,
            **kwargs,
        )

    @classmethod
    def lt(cls, field: str, value: Any, **kwargs) -> "FilterRequest":
        return cls(field=field, operator=FilterOperator.LESS_THAN, value=value, **kwargs)

    @classmethod
    def lte(cls, field: str, value: Any, **kwargs) -> "FilterRequest":
        return cls(
            field=field, operator=FilterOperator.LESS_THAN_EQUAL, value=value, **kwargs
        )

    @classmethod
    def between(cls, field: str, start: Any, end: Any, **kwargs) -> "FilterRequest":
        return cls(
            field=field, operator=FilterOperator.BETWEEN, value=[start, end], **kwargs
        )

    @classmethod
    def in_(cls, field: str, values: list[Any], **kwargs) -> "FilterRequest":
        return cls(field=field, operator=FilterOperator.IN, value=values, **kwargs)

    @classmethod
    def global_search(cls, keyword: str, **kwargs) -> "FilterRequest":
        return cls(operator=FilterOperator.GLOBAL, value=keyword, **kwargs)

    @classmethod
    def control(cls, key: str, value: Any) -> "FilterRequest":
        return cls(field=key, operator=FilterOperator.CONTROL, value=value)


def _component_tag(value: Any) -> str:
    """Tells apart groups from requests; explicit 'type' wins over the shape"""
    if isinstance(value, FilterGroup):
        return "group"
    if isinstance(value, FilterRequest):
        return "filter"
    if isinstance(value, Mapping):
        kind = str(value.get("type", "")).lower()
        if kind in ("group", "filter"):
            return kind
        return "group" if "components" in value else "filter"
    return "filter"


FilterComponent = Annotated[
    Union[
        Annotated[FilterRequest, Tag("filter")],
        Annotated["FilterGroup", Tag("group")],
    ],
    Discriminator(_component_tag),
]
"""either a FilterRequest or a FilterGroup"""


class FilterGroup(BaseModel):
    """A group of filter components

    Format::

        { "logic": "AND", "components": [ <request or group>, ... ] }

    Components are combined per their own logic: all AND components must hold,
    at least one OR component must hold and no NOR or NOT component may hold.
    The group's own logic is how the group as a whole combines with its siblings.

    Within a group that also has nested groups, consecutive requests sharing a
    logic are wrapped into their own sub-group.
    """

    logic: LogicMode = Field(
        default=LogicMode.AND, validation_alias=AliasChoices("logic", "logicMode")
    )
    components: list[FilterComponent] = Field(default_factory=list)

    @field_validator("logic", mode="before")
    @classmethod
    def _normalize_logic(cls, value: Any) -> LogicMode:
        return to_logic_mode(value)

    @model_validator(mode="after")
    def _normalize_on_creation(self) -> "FilterGroup":
        return self.normalize()

    def add_component(
        self, component: "FilterRequest | FilterGroup | list[FilterRequest | FilterGroup]"
    ) -> "FilterGroup":
        """Adds a component, or a list of components, to this group

        Args:
            component: the request(s) or group(s) to add

        Returns:
            this group, normalized

        Raises:
            StructuralError: the component is this group or contains this group
        """
        components = component if isinstance(component, list) else [component]
        for item in components:
            if item is self:
                raise StructuralError("Cannot add FilterGroup to itself")
            if isinstance(item, FilterGroup) and item._contains(self):
                raise StructuralError(
                    "Cannot add a parent FilterGroup to a child FilterGroup"
                )
            self.components.append(item)

        return self.normalize()

    def clear(self):
        """Removes all components"""
        self.components = []

    def normalize(self) -> "FilterGroup":
        """Wraps runs of requests sharing a logic into sub-groups if this group has nested groups

        A wrapped run of AND or OR requests gets that logic. NOR and NOT runs are wrapped
        in an AND group since their negations all have to hold anyway.
        The semantics are preserved and normalizing twice gives the same tree.

        Returns:
            this group
        """
        for item in self.components:
            if isinstance(item, FilterGroup):
                item.normalize()

        if not any(isinstance(v, FilterGroup) for v in self.components):
            return self

        normalized: list[FilterRequest | FilterGroup] = []
        run: list[FilterRequest] = []
        for item in self.components:
            if isinstance(item, FilterRequest) and (
                not run or run[-1].logic == item.logic
            ):
                run.append(item)
                continue

            normalized.extend(_wrap_run(run))
            run = []
            if isinstance(item, FilterRequest):
                run.append(item)
            else:
                normalized.append(item)

        normalized.extend(_wrap_run(run))
        self.components = normalized
        return self

    def iter_requests(self):
        """Iterates over all requests in this group and its nested groups, depth first"""
        for item in self.components:
            if isinstance(item, FilterGroup):
                yield from item.iter_requests()
            else:
                yield item

    def count_components(self) -> int:
        """Counts all requests in this group and its nested groups"""
        return sum(1 for _ in self.iter_requests())

    def count_logic_operations(self) -> int:
        """Counts the connectives joining siblings across the whole tree"""
        return sum(self.count_logic_by_mode().values())

    def count_logic_by_mode(self) -> dict[LogicMode, int]:
        """Counts the connectives joining siblings across the whole tree, per logic mode

        Every component after the first in a group contributes its own logic.
        """
        counts = {mode: 0 for mode in LogicMode}
        for item in self.components[1:]:
            counts[item.logic] += 1

        for item in self.components:
            if isinstance(item, FilterGroup):
                for mode, count in item.count_logic_by_mode().items():
                    counts[mode] += count

        return counts

    def compute_depth(self) -> int:
        """Computes the nesting depth; a group without nested groups has depth 1"""
        nested = [v.compute_depth() for v in self.components if isinstance(v, FilterGroup)]
        return 1 + max(nested, default=0)

    def to_simple_string(self) -> str:
        """Renders the tree as an indented view, one condition per line"""
        legend = ", ".join(f"{sym} = {mode.value}" for mode, sym in _CONNECTIVES.items())
        lines = [f"LOGIC OPERATORS: {legend}"]
        self._append_simple_lines(lines, level=1)
        return "\n".join(lines)

    def to_symbolic_expression(self) -> str:
        """Renders the tree as an infix boolean expression over lettered conditions

        Example::

            Total Components: 3
            Logic Operations: AND=1, OR=1, NOR=0, NOT=0
            Max Depth: 2
            A = (age >= 18)
            B = (city == "NY")
            C = (city == "LA")
            Expression: A && (B || C)
        """
        symbols: dict[int, str] = {}
        legend = []
        for idx, request in enumerate(self.iter_requests()):
            name = _symbol_name(idx)
            symbols[id(request)] = name
            legend.append(f"{name} = {request.to_readable()}")

        counts = ", ".join(
            f"{mode.value}={count}" for mode, count in self.count_logic_by_mode().items()
        )
        header = [
            f"Total Components: {self.count_components()}",
            f"Logic Operations: {counts}",
            f"Max Depth: {self.compute_depth()}",
        ]
        expression = _render_symbolic(self, symbols)
        return "\n".join([*header, *legend, f"Expression: {expression}"])

    def _append_simple_lines(self, lines: list[str], level: int):
        indent = "  " * (level - 1)
        lines.append(f"{indent}{{ * Level {level} [{self.logic.value}]")
        for item in self.components:
            if isinstance(item, FilterGroup):
                item._append_simple_lines(lines, level + 1)
            else:
                lines.append(f"{indent}  {_CONNECTIVES[item.logic]} {item.to_readable()}")
        lines.append(f"{indent}}}")

    def _contains(self, group: "FilterGroup") -> bool:
        for item in self.components:
            if item is group:
                return True
            if isinstance(item, FilterGroup) and item._contains(group):
                return True
        return False


FilterGroup.model_rebuild()


def to_logic_mode(value: Any) -> LogicMode:
    """Gets the LogicMode for the given value, AND if it is None

    Raises:
        StructuralError: the value is not a known logic mode
    """
    if value is None:
        return LogicMode.AND
    try:
        return LogicMode(value)
    except ValueError as exp:
        raise StructuralError(
            f"Invalid logic mode '{value}'",
            hint=f"use one of {[v.value for v in LogicMode]}",
        ) from exp


def resolve_operator_name(value: Any) -> str:
    """Gets the canonical name of an operator given its name, symbol or alias

    Custom operators registered on the default registry keep their name.

    Args:
        value: the FilterOperator, or its name, symbol or alias

    Returns:
        the canonical name

    Raises:
        UnknownOperatorError: the operator is unknown; a suggestion is given if one is close enough
    """
    if isinstance(value, FilterOperator):
        return value.name

    text = str(value).strip() if value is not None else ""
    if FilterOperator.is_convertible(text):
        return FilterOperator.from_string(text).name

    registry = get_registry()
    if text and registry.is_registered(text):
        return text

    candidates = [v.name for v in FilterOperator] + registry.operator_names
    suggestion = suggest(text, candidates)
    message = f"Invalid operator '{text}'.\nAllowed operators:\n{registry.grouped_operators_message()}"
    raise UnknownOperatorError(
        message, hint=f"Did you mean '{suggestion}'?" if suggestion else None
    )


def suggest(text: str, candidates: list[str]) -> str | None:
    """Gets the candidate closest to the text, if within an edit distance of 3"""
    best, best_distance = None, _MAX_SUGGESTION_DISTANCE + 1
    for candidate in candidates:
        distance = levenshtein(text.upper(), candidate.upper())
        if distance < best_distance:
            best, best_distance = candidate, distance
    return best


def levenshtein(first: str, second: str) -> int:
    """Computes the edit distance between two strings"""
    previous = list(range(len(second) + 1))
    for i, a in enumerate(first, start=1):
        current = [i]
        for j, b in enumerate(second, start=1):
            current.append(
                min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + (a != b))
            )
        previous = current
    return previous[-1]


def format_value(value: Any) -> str:
    """Formats a value for the readable renderings; strings are quoted"""
    if value is None:
        return "null"
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, (list, tuple, set)):
        return f"[{', '.join(format_value(v) for v in value)}]"
    return str(value)


def _wrap_run(run: list[FilterRequest]) -> list[FilterRequest | FilterGroup]:
    if len(run) < 2:
        return list(run)
    logic = run[0].logic if run[0].logic in (LogicMode.AND, LogicMode.OR) else LogicMode.AND
    return [FilterGroup(logic=logic, components=list(run))]


def _symbol_name(index: int) -> str:
    name = ""
    index += 1
    while index:
        index, rem = divmod(index - 1, 26)
        name = chr(ord("A") + rem) + name
    return name


def _render_symbolic(group: FilterGroup, symbols: dict[int, str]) -> str:
    buckets: dict[LogicMode, list[str]] = {mode: [] for mode in LogicMode}
    for item in group.components:
        if isinstance(item, FilterGroup):
            text = _render_symbolic(item, symbols)
            if not text:
                continue
            if " " in text:
                text = f"({text})"
        else:
            text = symbols[id(item)]
        buckets[item.logic].append(text)

    rendered = []
    if buckets[LogicMode.AND]:
        rendered.append(" && ".join(buckets[LogicMode.AND]))
    if buckets[LogicMode.OR]:
        rendered.append(" || ".join(buckets[LogicMode.OR]))
    if buckets[LogicMode.NOR]:
        rendered.append(f"NOR({', '.join(buckets[LogicMode.NOR])})")
    if buckets[LogicMode.NOT]:
        rendered.append(" && ".join(f"!{v}" for v in buckets[LogicMode.NOT]))

    if len(rendered) > 1:
        return " && ".join(f"({v})" if " || " in v else v for v in rendered)
    return rendered[0] if rendered else ""
