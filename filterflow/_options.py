"""The options that tune how filters are compiled and executed

Options can be passed in directly or travel inside the filter itself as
CONTROL requests e.g. ``{"field": "globalSearchDepth", "operator": "#", "value": 2}``
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ._errors import FilterValidationError
from .query.coercion import convert_to_expected_type
from .query.operators import FilterOperator
from .query.predicate import FilterGroup, FilterRequest

_CONTROL_KEY_ALIASES = {"resolvevf": "resolve_virtual_fields"}


class _Options(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def apply(self, key: str, value: Any):
        """Sets the option at the given, possibly dotted, key

        The value is converted to the type of the option first.

        Args:
            key: the name or camelCase alias of the option e.g. ``dbExplainOptions.enabled``
            value: the raw value

        Raises:
            FilterValidationError: Unknown control key
            CoercionError: the value cannot be converted to the option's type
        """
        target = self
        *parents, leaf = key.strip().split(".")
        for parent in parents:
            target = getattr(target, _option_name(target, parent, key))
            if not isinstance(target, _Options):
                raise _unknown_key(key)

        name = _option_name(target, leaf, key)
        annotation = type(target).model_fields[name].annotation
        setattr(target, name, convert_to_expected_type(value, annotation))

    @classmethod
    def control_keys(cls) -> list[str]:
        """Lists all control keys, in camelCase, nested ones dotted"""
        keys = []
        for name, info in cls.model_fields.items():
            alias = info.alias or name
            nested = info.annotation
            if isinstance(nested, type) and issubclass(nested, _Options):
                keys.extend(f"{alias}.{v}" for v in nested.control_keys())
            else:
                keys.append(alias)
        return keys


class DbExplainOptions(_Options):
    """Options asking the database to explain the query plan"""

    enabled: bool = False
    verbose: bool = False
    timing: bool = False
    scan_stats: bool = False
    index_stats: bool = False
    query_planner_stats: bool = False
    all_plans: bool = False

    def explain_enabled(self) -> bool:
        return (
            self.enabled
            or self.verbose
            or self.timing
            or self.scan_stats
            or self.index_stats
            or self.query_planner_stats
            or self.all_plans
        )

    def verbosity(self) -> str:
        """The mongodb explain verbosity matching the enabled statistics"""
        if self.all_plans:
            return "allPlansExecution"
        if self.verbose or self.timing or self.scan_stats or self.index_stats:
            return "executionStats"
        return "queryPlanner"


class FilterOptions(_Options):
    """Options for compiling and running a filter

    Attributes:
        debug: whether to log the compiled filter and pipeline
        resolve_virtual_fields: whether to add the stages computing virtual fields
        skip_count: whether paginated finds should skip counting the total
        db_explain_options: whether and how to log the query plan
        project: the only fields to return
        exclude: the fields not to return
        allowed_global_search_fields: the only fields global search may look at
        excluded_global_search_fields: the fields global search must not look at
        global_search_depth: how many levels of nested models global search goes into; 0 for top-level fields only
    """

    debug: bool = False
    resolve_virtual_fields: bool = False
    skip_count: bool = False
    db_explain_options: DbExplainOptions = Field(default_factory=DbExplainOptions)
    project: list[str] | None = None
    exclude: list[str] | None = None
    allowed_global_search_fields: set[str] | None = None
    excluded_global_search_fields: set[str] | None = None
    global_search_depth: int = 4

    def extract_from_filter_group(self, group: FilterGroup) -> FilterGroup:
        """Moves the CONTROL requests of the group into these options

        The CONTROL requests are removed from the group, as are the sub-groups
        left empty by their removal.

        Args:
            group: the filter group; it is modified in place

        Returns:
            the group, without CONTROL requests

        Raises:
            FilterValidationError: Unknown control key
        """
        for request in _pop_control_requests(group):
            self.apply(request.field, request.value)
        return group.normalize()

    @classmethod
    def from_filter_group(
        cls, group: FilterGroup, defaults: "FilterOptions | None" = None
    ) -> "FilterOptions":
        """Builds options from the defaults and the CONTROL requests in the group

        The group is modified in place, see ``extract_from_filter_group``.
        """
        options = defaults.model_copy(deep=True) if defaults else cls()
        options.extract_from_filter_group(group)
        return options


def _pop_control_requests(group: FilterGroup) -> list[FilterRequest]:
    controls = []
    kept = []
    for item in group.components:
        if isinstance(item, FilterGroup):
            controls.extend(_pop_control_requests(item))
            if item.components:
                kept.append(item)
        elif item.filter_operator == FilterOperator.CONTROL:
            controls.append(item)
        else:
            kept.append(item)

    group.components = kept
    return controls


def _option_name(options: _Options, key: str, full_key: str) -> str:
    fields = type(options).model_fields
    lowered = key.lower()
    for name, info in fields.items():
        if lowered in (name.lower(), (info.alias or name).lower()):
            return name

    alias = _CONTROL_KEY_ALIASES.get(lowered)
    if alias in fields:
        return alias
    raise _unknown_key(full_key)


def _unknown_key(key: str) -> FilterValidationError:
    return FilterValidationError(
        f"Unknown control key: {key}",
        target_type=FilterOptions,
        hint=f"allowed control keys: {', '.join(FilterOptions.control_keys())}",
    )
