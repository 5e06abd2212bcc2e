"""The engine converting raw filter values to the types expected by schema fields

Conversions are memoized process-wide. A conversion only depends on the value and
the target type, so cached entries are never invalidated.
"""

import json
import re
from collections.abc import Mapping
from dataclasses import asdict, is_dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from functools import lru_cache
from typing import Any

from bson import Decimal128, ObjectId
from bson.datetime_ms import DatetimeMS
from dateutil import parser as date_parser
from dateutil.parser import ParserError
from pydantic import AwareDatetime, BaseModel, NaiveDatetime, TypeAdapter
from pydantic import ValidationError as _PydanticValidationError

from .._errors import CoercionError
from .._field import describe_type

DATE_OR_TIME_PATTERN = re.compile(
    r"^((\d{4}[-/]\d{2}[-/]\d{2}|\d{2}-\d{2}-\d{4})"
    r"([T\s]\d{2}:\d{2}(:\d{2}(\.\d{1,9})?)?(Z|([+-]\d{2}:\d{2}))?)?"
    r"|\d{2}:\d{2}(:\d{2}(\.\d{1,9})?)?)$"
)
"""strings that possibly hold a date, a date-time or a time"""

EPOCH_DATE = date(1970, 1, 1)
_EPOCH_DATETIME = datetime(1970, 1, 1)
_DAY_FIRST_DATE = re.compile(r"^\d{2}-\d{2}-\d{4}")
_INTEGER = re.compile(r"^[+-]?\d+$")
_CONVERSION_CACHE: dict[tuple, Any] = {}
_COMPARABLE_CACHE: dict[tuple, Any] = {}
_MUTABLE_RESULTS = (list, dict, set)


def convert_to_expected_type(value: Any, expected_type: Any) -> Any:
    """Converts the value to the given type

    The conversions are tried in order: identity, temporal, numeric,
    string parsing, collections and finally maps/models.

    Args:
        value: the raw value e.g. ``"18"``
        expected_type: the type to convert to e.g. ``int`` or ``list[date]``

    Returns:
        the converted value. Strings that look temporal but cannot be parsed are returned as is.

    Raises:
        CoercionError: the value cannot be converted to the expected type
    """
    if value is None:
        return None

    key = (type(value), str(value), expected_type)
    try:
        return _CONVERSION_CACHE[key]
    except KeyError:
        pass
    except TypeError:
        # unhashable target types are not cached
        return _convert(value, expected_type)

    result = _convert(value, expected_type)
    if isinstance(result, _MUTABLE_RESULTS):
        return result
    return _CONVERSION_CACHE.setdefault(key, result)


def is_compatible_type(value: Any, expected_type: Any) -> bool:
    """Checks whether the value is, or can be converted to, the expected type

    Args:
        value: the raw value
        expected_type: the type of the field

    Returns:
        True if the value is compatible with the type else False
    """
    if value is None:
        return True

    base, element, is_collection, is_map = describe_type(expected_type)
    if base is Any or base is object:
        return True

    if _is_number(value) and _is_numeric_type(base):
        return True

    if _temporal_kind(base) and _value_kind(value):
        return True

    if _is_instance(value, base) or (
        is_collection and isinstance(value, (list, tuple, set, frozenset))
    ):
        if is_collection and not isinstance(value, str):
            return all(is_compatible_type(v, element) for v in value)
        if is_map:
            return all(isinstance(k, str) for k in value)
        return True

    if is_map and isinstance(value, Mapping):
        return all(isinstance(k, str) for k in value)

    if isinstance(value, str):
        return _can_parse_string(value, base, is_collection, is_map)

    if _is_enum_type(base):
        return _lookup_enum(value, base) is not None

    return False


def to_mongo_comparable(value: Any, parse_strings: bool = True) -> Any:
    """Converts the value into something mongodb can store and compare

    Dates and times become datetimes, decimals become Decimal128 and enums
    become their values. Strings that look like dates are parsed into datetimes
    if ``parse_strings`` is True.

    Args:
        value: the (already coerced) value
        parse_strings: whether strings that look like dates should be parsed

    Returns:
        the value mongodb can compare
    """
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_mongo_comparable(v, parse_strings) for v in value]

    if isinstance(value, Mapping):
        return {k: to_mongo_comparable(v, parse_strings) for k, v in value.items()}

    key = (type(value), value, parse_strings)
    try:
        return _COMPARABLE_CACHE[key]
    except KeyError:
        pass
    except TypeError:
        return _to_comparable(value, parse_strings)

    return _COMPARABLE_CACHE.setdefault(key, _to_comparable(value, parse_strings))


def try_parse_to_date(text: str) -> datetime | None:
    """Parses strings like ``2024-01-31``, ``31-01-2024``, ``2024/01/31 10:00`` or ``10:00:00``

    Time-only strings fall on the 1st of January 1970.

    Args:
        text: the string to parse

    Returns:
        the parsed datetime, aware if the string had an offset, or None if it could not be parsed
    """
    text = text.strip()
    if not DATE_OR_TIME_PATTERN.match(text):
        return None

    try:
        return date_parser.parse(
            text,
            default=_EPOCH_DATETIME,
            dayfirst=_DAY_FIRST_DATE.match(text) is not None,
        )
    except (ParserError, OverflowError):
        return None


def is_numeric_type(tp: Any) -> bool:
    """Checks whether the type is a number type (booleans are not numbers)"""
    base, *_ = describe_type(tp)
    return _is_numeric_type(base)


def is_temporal_type(tp: Any) -> bool:
    """Checks whether the type is a date, time or datetime type"""
    base, *_ = describe_type(tp)
    return _temporal_kind(base) is not None


def _convert(value: Any, expected_type: Any) -> Any:
    base, element, is_collection, is_map = describe_type(expected_type)
    if base is Any or base is object:
        return value

    if not (is_collection or is_map) and _is_instance(value, base):
        return value

    target_kind = _temporal_kind(base)
    if target_kind:
        return _convert_to_temporal(value, base, target_kind)

    if _is_numeric_type(base):
        if _is_number(value):
            return _convert_number(value, base)
        if isinstance(value, str):
            return _parse_number(value, base)
        raise _mismatch(value, base)

    if isinstance(value, str):
        if base is bool:
            return _parse_bool(value)
        if _is_object_id_type(base):
            return _parse_object_id(value, base)
        if _looks_like_json(value) and (is_collection or is_map or _is_model(base)):
            return _parse_json(value, expected_type)

    if _is_enum_type(base):
        member = _lookup_enum(value, base)
        if member is None:
            raise _mismatch(value, base, hint=f"use one of {list(base.__members__)}")
        return member

    if is_collection:
        return _convert_collection(value, base, element)

    if is_map:
        return _convert_map(value, element)

    if _is_model(base) and isinstance(value, Mapping):
        try:
            return base.model_validate(value)
        except _PydanticValidationError as exp:
            raise _mismatch(value, base, hint=str(exp)) from exp

    raise _mismatch(value, base)


def _convert_to_temporal(value: Any, base: Any, target_kind: str) -> Any:
    value_kind = _value_kind(value)
    if value_kind:
        return _convert_temporal(value, value_kind, target_kind)

    if isinstance(value, str):
        parsed = try_parse_to_date(value)
        if parsed is None:
            if DATE_OR_TIME_PATTERN.match(value.strip()):
                return value
            raise _mismatch(value, base, hint="use ISO 8601 e.g. 2024-01-31T10:00:00")
        if _is_instance(parsed, base):
            return parsed
        return _convert_temporal(parsed, _value_kind(parsed), target_kind)

    raise _mismatch(value, base)


def _convert_temporal(value: Any, value_kind: str, target_kind: str) -> Any:
    if value_kind == target_kind:
        return value

    if target_kind == "zoned":
        if value_kind == "instant":
            return _instant_to_local(value)
        return _to_local_datetime(value, value_kind).astimezone()

    if target_kind == "instant":
        if value_kind == "zoned":
            return DatetimeMS(value)
        return DatetimeMS(_to_local_datetime(value, value_kind).astimezone())

    local = _to_local_datetime(value, value_kind)
    if target_kind == "date":
        return local.date()
    if target_kind == "time":
        return local.time()
    return local


def _to_local_datetime(value: Any, value_kind: str) -> datetime:
    """Gets the naive wall-clock datetime of the given temporal value"""
    if value_kind == "datetime":
        return value
    if value_kind == "zoned":
        return value.replace(tzinfo=None)
    if value_kind == "date":
        return datetime.combine(value, time.min)
    if value_kind == "time":
        return datetime.combine(EPOCH_DATE, value)
    return _instant_to_local(value).replace(tzinfo=None)


def _instant_to_local(value: DatetimeMS) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).astimezone()


def _temporal_kind(tp: Any) -> str | None:
    if tp is AwareDatetime:
        return "zoned"
    if tp is NaiveDatetime:
        return "datetime"
    if not isinstance(tp, type):
        return None
    if issubclass(tp, DatetimeMS):
        return "instant"
    if issubclass(tp, datetime):
        return "datetime"
    if issubclass(tp, date):
        return "date"
    if issubclass(tp, time):
        return "time"
    return None


def _value_kind(value: Any) -> str | None:
    if isinstance(value, DatetimeMS):
        return "instant"
    if isinstance(value, datetime):
        return "zoned" if value.utcoffset() is not None else "datetime"
    if isinstance(value, date):
        return "date"
    if isinstance(value, time):
        return "time"
    return None


def _is_instance(value: Any, base: Any) -> bool:
    if not isinstance(base, type):
        return False
    if isinstance(value, bool) and base is not bool:
        return False
    if isinstance(value, datetime) and base is date:
        return False
    return isinstance(value, base)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal, Decimal128)) and not isinstance(
        value, bool
    )


def _is_numeric_type(tp: Any) -> bool:
    return (
        isinstance(tp, type)
        and issubclass(tp, (int, float, Decimal))
        and not issubclass(tp, (bool, Enum))
    )


def _is_enum_type(tp: Any) -> bool:
    return isinstance(tp, type) and issubclass(tp, Enum)


def _is_object_id_type(tp: Any) -> bool:
    return isinstance(tp, type) and issubclass(tp, ObjectId)


def _is_model(tp: Any) -> bool:
    return isinstance(tp, type) and issubclass(tp, BaseModel)


def _convert_number(value: Any, base: type) -> Any:
    if isinstance(value, Decimal128):
        value = value.to_decimal()
    if issubclass(base, int):
        return base(value)
    if issubclass(base, float):
        return base(value)
    return base(str(value)) if isinstance(value, float) else base(value)


def _parse_number(text: str, base: type) -> Any:
    text = text.strip()
    try:
        if issubclass(base, int):
            if not _INTEGER.match(text):
                raise ValueError(text)
            return base(text)
        return base(text)
    except (ValueError, InvalidOperation) as exp:
        raise CoercionError(
            f"Failed to parse number '{text}' as {base.__name__}", target_type=base
        ) from exp


def _parse_bool(text: str) -> bool:
    lowered = text.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    raise _mismatch(text, bool, hint="use 'true' or 'false'")


def _parse_object_id(text: str, base: type) -> ObjectId:
    if not ObjectId.is_valid(text.strip()):
        raise _mismatch(text, base, hint="an ObjectId is a 24 character hex string")
    return base(text.strip())


def _lookup_enum(value: Any, enum_type: type[Enum]) -> Enum | None:
    if isinstance(value, enum_type):
        return value
    if isinstance(value, str) and value in enum_type.__members__:
        return enum_type[value]
    try:
        return enum_type(value)
    except ValueError:
        return None


def _looks_like_json(text: str) -> bool:
    text = text.strip()
    return (text.startswith("{") and text.endswith("}")) or (
        text.startswith("[") and text.endswith("]")
    )


def _parse_json(text: str, expected_type: Any) -> Any:
    try:
        data = json.loads(text)
        return _type_adapter(expected_type).validate_python(data)
    except (ValueError, _PydanticValidationError) as exp:
        raise CoercionError(
            f"Failed to parse JSON value '{text}' into {_type_name(expected_type)}",
            target_type=expected_type,
        ) from exp


@lru_cache(maxsize=256)
def _type_adapter(tp: Any) -> TypeAdapter:
    return TypeAdapter(tp)


def _convert_collection(value: Any, base: Any, element: Any) -> Any:
    if isinstance(value, str):
        items = [v.strip() for v in value.split(",")] if value.strip() else []
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
    else:
        items = [value]

    if element is not Any:
        items = [convert_to_expected_type(v, element) for v in items]

    if base in (set, frozenset, tuple):
        return base(items)
    if isinstance(base, type) and base.__name__ in ("Set", "MutableSet"):
        return set(items)
    return items


def _convert_map(value: Any, value_type: Any) -> dict[str, Any]:
    if isinstance(value, Mapping):
        data = dict(value)
    elif isinstance(value, str):
        try:
            data = json.loads(value)
        except ValueError as exp:
            raise _mismatch(value, dict) from exp
        if not isinstance(data, dict):
            raise _mismatch(value, dict)
    elif isinstance(value, BaseModel):
        data = value.model_dump()
    elif is_dataclass(value) and not isinstance(value, type):
        data = asdict(value)
    else:
        raise _mismatch(value, dict)

    if value_type is Any:
        return {str(k): v for k, v in data.items()}
    return {str(k): convert_to_expected_type(v, value_type) for k, v in data.items()}


def _can_parse_string(text: str, base: Any, is_collection: bool, is_map: bool) -> bool:
    if is_collection:
        return True
    if is_map or _is_model(base):
        return _looks_like_json(text)
    if _is_numeric_type(base):
        try:
            _parse_number(text, base)
        except CoercionError:
            return False
        return True
    if base is bool:
        return text.strip().lower() in ("true", "false")
    if _is_enum_type(base):
        return _lookup_enum(text, base) is not None
    if _temporal_kind(base):
        return DATE_OR_TIME_PATTERN.match(text.strip()) is not None
    if _is_object_id_type(base):
        return ObjectId.is_valid(text.strip())
    return False


def _to_comparable(value: Any, parse_strings: bool) -> Any:
    if isinstance(value, str):
        if parse_strings and DATE_OR_TIME_PATTERN.match(value.strip()):
            parsed = try_parse_to_date(value)
            return value if parsed is None else parsed
        return value
    if isinstance(value, datetime) or isinstance(value, DatetimeMS):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, time):
        return datetime.combine(EPOCH_DATE, value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return Decimal128(value)
    return value


def _mismatch(value: Any, base: Any, hint: str | None = None) -> CoercionError:
    return CoercionError(
        f"Type mismatch. Cannot convert value '{value}' ({type(value).__name__}) "
        f"to expected type {_type_name(base)}",
        target_type=base,
        hint=hint,
    )


def _type_name(tp: Any) -> str:
    return getattr(tp, "__name__", str(tp))
