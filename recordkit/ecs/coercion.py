"""
Value coercion between representational types.

Three entry points share one rule chain:

- `try_coerce`  returns a CoercionResult and never raises
- `coerce`      returns the converted value or raises ConversionError
- `coerce_or_default` returns the converted value or None

Targets are plain types or `Optional[...]` annotations. Only an Optional
target is nullable.
"""
import logging
import math
import re
from datetime import date, datetime
from decimal import ROUND_HALF_EVEN, Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union, get_args, get_origin
from uuid import UUID
import types

from pydantic import BaseModel, ConfigDict

from recordkit.ecs.descriptors import unwrap_optional

_TRUE_TEXT = "true"
_FALSE_TEXT = "false"

_NUMERIC_TYPES = (int, float, Decimal)

# Canonical 8-4-4-4-12 form only; braces, urn prefixes and bare hex are rejected
_UUID_TEXT = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}")


class ConversionError(ValueError):
    """A value could not be converted to the requested type."""

    def __init__(self, message: str, source_type: Optional[str] = None, target_type: Optional[str] = None):
        super().__init__(message)
        self.source_type = source_type
        self.target_type = target_type


class CoercionResult(BaseModel):
    """Outcome of a conversion attempt."""
    ok: bool
    value: Any = None
    error: Optional[str] = None
    source_type: Optional[str] = None
    target_type: Optional[str] = None

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    def unwrap(self) -> Any:
        """Return the value, raising ConversionError for a failed result."""
        if self.ok:
            return self.value
        raise ConversionError(self.error or "Conversion failed", self.source_type, self.target_type)


def _type_name(target: Any) -> str:
    return getattr(target, "__name__", None) or str(target)


class ValueCoercer:
    """
    Rule chain, in order:
    1. None input: None for nullable targets, error otherwise
    2. Value already of the target type: returned unchanged
    3. Blank string: None for nullable targets, error otherwise
    4. UUID text parsed strictly, canonical hyphenated form only
    5. Enum by case-insensitive member name or by member value
    6. bool / int / float / Decimal / str / datetime / date conversions
    7. A `parse(str)` hook exposed by the target type
    8. Error naming source and target
    """
    _logger = logging.getLogger("ValueCoercer")

    def __init__(self) -> None:
        self._converters: Dict[type, Callable[[Any], Any]] = {
            bool: self._to_bool,
            int: self._to_int,
            float: self._to_float,
            Decimal: self._to_decimal,
            str: self._to_str,
            datetime: self._to_datetime,
            date: self._to_date,
        }

    def coerce(self, value: Any, target: Any) -> Any:
        """Convert value to target, raising ConversionError on failure."""
        return self.try_coerce(value, target).unwrap()

    def coerce_or_default(self, value: Any, target: Any) -> Any:
        """Convert value to target, returning None on failure."""
        result = self.try_coerce(value, target)
        return result.value if result.ok else None

    def try_coerce(self, value: Any, target: Any) -> CoercionResult:
        effective, nullable = unwrap_optional(target)
        source_name = type(value).__name__
        target_name = _type_name(target)

        def failure(reason: str) -> CoercionResult:
            self._logger.debug(f"Cannot convert {source_name} to {target_name}: {reason}")
            return CoercionResult(ok=False, error=f"Cannot convert {source_name} to {target_name}: {reason}",
                                  source_type=source_name, target_type=target_name)

        def success(converted: Any) -> CoercionResult:
            return CoercionResult(ok=True, value=converted, source_type=source_name, target_type=target_name)

        if target is Any or effective is Any:
            return success(value)

        if value is None:
            if nullable:
                return success(None)
            return failure("None is not allowed for a non-nullable target")

        origin = get_origin(effective)
        if origin is Union or origin is types.UnionType:
            for member in get_args(effective):
                result = self.try_coerce(value, member)
                if result.ok:
                    return success(result.value)
            return failure("no union member accepted the value")

        if origin is not None:
            # Parameterized generics are only checked against their container type
            if isinstance(value, origin):
                return success(value)
            return failure(f"expected {_type_name(origin)}")

        if not isinstance(effective, type):
            return failure("target is not a type")

        if self._is_instance(value, effective):
            return success(value)

        if isinstance(value, str) and not value.strip():
            if nullable:
                return success(None)
            return failure("blank string")

        try:
            if effective is UUID:
                text = str(value).strip()
                if not _UUID_TEXT.fullmatch(text):
                    return failure(f"'{text}' is not a canonical UUID")
                return success(UUID(text))

            if issubclass(effective, Enum):
                return self._to_enum(value, effective, success, failure)

            converter = self._converters.get(effective)
            if converter is not None:
                return success(converter(value))
        except ConversionError as e:
            return failure(str(e))
        except (ValueError, TypeError, ArithmeticError, OverflowError) as e:
            return failure(str(e))

        parse = getattr(effective, "parse", None)
        if callable(parse):
            # Caller-supplied hook; whatever it raises is a failed conversion
            try:
                return success(parse(str(value)))
            except Exception as e:
                return failure(f"{type(e).__name__}: {e}")

        return failure("no conversion rule applies")

    @staticmethod
    def _is_instance(value: Any, effective: type) -> bool:
        if isinstance(value, bool) and effective is not bool and effective is not object:
            return False
        if effective is date and isinstance(value, datetime):
            return False
        return isinstance(value, effective)

    def _to_enum(self, value: Any, enum_type: type, success: Callable, failure: Callable) -> CoercionResult:
        if isinstance(value, str):
            text = value.strip()
            lowered = text.lower()
            for member in enum_type:
                if member.name.lower() == lowered:
                    return success(member)
            try:
                number = int(text)
            except ValueError:
                return failure(f"'{value}' is not a member of {enum_type.__name__}")
            value = number
        if isinstance(value, Enum):
            value = value.value
        for member in enum_type:
            if member.value == value:
                return success(member)
        return failure(f"{value!r} is not a valid value of {enum_type.__name__}")

    @staticmethod
    def _to_bool(value: Any) -> bool:
        if isinstance(value, str):
            text = value.strip().lower()
            if text == _TRUE_TEXT:
                return True
            if text == _FALSE_TEXT:
                return False
            raise ConversionError(f"'{value}' is not a valid boolean")
        if isinstance(value, _NUMERIC_TYPES):
            return value != 0
        raise ConversionError(f"{type(value).__name__} has no boolean form")

    @staticmethod
    def _to_int(value: Any) -> int:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, float):
            if math.isnan(value) or math.isinf(value):
                raise ConversionError(f"{value} has no integer form")
            return round(value)
        if isinstance(value, Decimal):
            return int(value.to_integral_value(rounding=ROUND_HALF_EVEN))
        if isinstance(value, Enum):
            return int(value.value)
        if isinstance(value, (str, int)):
            return int(str(value).strip())
        raise ConversionError(f"{type(value).__name__} has no integer form")

    @staticmethod
    def _to_float(value: Any) -> float:
        if isinstance(value, (str, int, Decimal)):
            return float(str(value).strip() if isinstance(value, str) else value)
        raise ConversionError(f"{type(value).__name__} has no float form")

    @staticmethod
    def _to_decimal(value: Any) -> Decimal:
        if isinstance(value, bool):
            return Decimal(int(value))
        if isinstance(value, float):
            if math.isnan(value) or math.isinf(value):
                raise ConversionError(f"{value} has no decimal form")
            return Decimal(str(value))
        if isinstance(value, (str, int)):
            return Decimal(str(value).strip())
        raise ConversionError(f"{type(value).__name__} has no decimal form")

    @staticmethod
    def _to_str(value: Any) -> str:
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, Enum):
            return value.name
        return str(value)

    @staticmethod
    def _to_datetime(value: Any) -> datetime:
        if isinstance(value, str):
            return datetime.fromisoformat(value.strip())
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        raise ConversionError(f"{type(value).__name__} has no datetime form")

    @staticmethod
    def _to_date(value: Any) -> date:
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, str):
            return date.fromisoformat(value.strip())
        raise ConversionError(f"{type(value).__name__} has no date form")


default_coercer = ValueCoercer()


def coerce(value: Any, target: Any) -> Any:
    return default_coercer.coerce(value, target)


def coerce_or_default(value: Any, target: Any) -> Any:
    return default_coercer.coerce_or_default(value, target)


def try_coerce(value: Any, target: Any) -> CoercionResult:
    return default_coercer.try_coerce(value, target)
