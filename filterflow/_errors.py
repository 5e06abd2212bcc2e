"""The errors raised when building, parsing or compiling filters"""

from typing import Any


class FilterError(Exception):
    """Base error for anything that goes wrong with a filter

    Attributes:
        message: the human readable description of the error
        target_type: the schema or python type the error relates to, if any
        hint: a suggestion on how to fix the problem, if any
    """

    def __init__(
        self, message: str, target_type: Any = None, hint: str | None = None
    ):
        self.message = message
        self.target_type = target_type
        self.hint = hint
        super().__init__(self._render())

    def _render(self) -> str:
        text = self.message
        if self.target_type is not None:
            name = getattr(self.target_type, "__name__", str(self.target_type))
            text += f"\n [Target: {name}]"
        if self.hint:
            text += f"\n Hint: {self.hint}"
        return text


class StructuralError(FilterError):
    """The filter tree or expression is malformed"""


class UnknownOperatorError(FilterError):
    """The operator is neither a known operator nor a registered custom one"""


class FieldResolutionError(FilterError):
    """The field path does not resolve to a filterable field on the schema"""


class FilterValidationError(FilterError):
    """The operator or value is not legal for the given field"""


class CoercionError(FilterError):
    """The value cannot be converted to the type expected by the field"""


class RegistryError(RuntimeError):
    """The operator registry was misconfigured at start up"""
