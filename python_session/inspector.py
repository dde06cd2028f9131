"""Reflection helpers for ``inspect`` and ``getAllPropertyNames`` requests."""

from __future__ import annotations

import dataclasses
import inspect
import logging
import typing
from collections.abc import Sequence

from python_session.mime import plain_text
from python_session.models import InspectionRecord

__all__ = [
    'Reflection',
    'reflect',
    'inspect_value',
    'get_all_property_names',
]

logger = logging.getLogger(__name__)

# Scalars are reported with a fixed [type, 'object'] chain and boxed to their class for attribute listing
_SCALAR_TYPES: tuple[type, ...] = (bool, int, float, complex, str)
_BOXED_TYPES: tuple[type, ...] = (bool, int, float, complex, str, bytes)


@dataclasses.dataclass(frozen=True, slots=True)
class Reflection:
    """Attribute lookup chain of a value, most-derived level first."""

    type_name: str
    chain: Sequence[typing.Any]


def reflect(value: typing.Any) -> Reflection:
    """Describe where attribute lookups on ``value`` resolve.

    Instances resolve through themselves and then their class MRO. Scalars start
    at their class. Classes resolve through their own MRO and then their metaclass.
    """
    if isinstance(value, _BOXED_TYPES):
        levels: list[typing.Any] = list(type(value).__mro__)
    elif isinstance(value, type):
        levels = [*value.__mro__, *type(value).__mro__]
    else:
        levels = [value, *type(value).__mro__]

    chain: list[typing.Any] = []
    for level in levels:
        if not any(level is seen for seen in chain):
            chain.append(level)

    return Reflection(type_name=type(value).__name__, chain=chain)


def inspect_value(value: typing.Any) -> InspectionRecord:
    """Classify ``value`` and describe its type."""
    if value is None:
        return InspectionRecord(string='None', type='NoneType')

    if isinstance(value, _SCALAR_TYPES):
        type_name = type(value).__name__
        return InspectionRecord(
            string=value if isinstance(value, str) else repr(value),
            type=type_name,
            constructorList=[type_name, 'object'],
            length=len(value) if isinstance(value, str) else None,
        )

    if inspect.isroutine(value):
        return InspectionRecord(
            string=_source(value),
            type=type(value).__name__,
            constructorList=[cls.__name__ for cls in type(value).__mro__],
            length=_parameter_count(value),
        )

    constructor_list = [cls.__name__ for cls in type(value).__mro__]
    return InspectionRecord(
        string=plain_text(value),
        type=constructor_list[0],
        constructorList=constructor_list,
        length=_length(value),
    )


def get_all_property_names(value: typing.Any) -> list[str]:
    """List attribute names reachable from ``value``.

    Names are sorted within each level of the lookup chain and de-duplicated
    across levels, so names from more-derived levels come first.
    """
    if value is None:
        return []

    names: list[str] = []
    seen: set[str] = set()

    for level in reflect(value).chain:
        try:
            own = sorted(_own_names(level))
        except Exception as e:
            logger.debug(f'Stopped property walk at {type(level).__name__}: {e}')
            break
        for name in own:
            if name not in seen:
                seen.add(name)
                names.append(name)

    return names


def _own_names(level: typing.Any) -> list[str]:
    namespace = getattr(level, '__dict__', None)
    names = [str(name) for name in namespace] if namespace is not None else []
    # Slotted instances keep their attributes outside __dict__
    if not isinstance(level, type):
        for cls in type(level).__mro__:
            slots = cls.__dict__.get('__slots__', ())
            for slot in (slots,) if isinstance(slots, str) else slots:
                if slot not in ('__dict__', '__weakref__') and hasattr(level, slot):
                    names.append(slot)
    return names


def _source(func: typing.Any) -> str:
    try:
        return inspect.getsource(func)
    except (OSError, TypeError):
        return plain_text(func)


def _parameter_count(func: typing.Any) -> int | None:
    try:
        return len(inspect.signature(func).parameters)
    except (TypeError, ValueError):
        return None


def _length(value: typing.Any) -> int | None:
    try:
        length = len(value)
    except Exception:
        return None
    return length if isinstance(length, int) else None
