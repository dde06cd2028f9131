"""Normalize raised or rejected values into structured error records."""

from __future__ import annotations

import traceback
import typing

from python_session.models import ErrorRecord

__all__ = ['format_error']


def format_error(error: typing.Any) -> ErrorRecord:
    """Build an ``ErrorRecord`` from an exception or any other value passed as an error.

    Evaluated code may hand arbitrary values to ``kernel.send_error``, so non-exceptions
    are reported by their type name and text rendering, with an empty traceback.
    """
    if isinstance(error, BaseException):
        ename = type(error).__name__
        message = str(error)
        evalue = message if message else _render(error)
        if error.__traceback__ is not None:
            tb_str = ''.join(traceback.format_exception(type(error), error, error.__traceback__))
            lines = tb_str.rstrip('\n').split('\n')
        else:
            lines = []
        return ErrorRecord(ename=ename, evalue=evalue, traceback=lines)

    return ErrorRecord(ename=type(error).__name__, evalue=_render(error), traceback=[])


def _render(value: typing.Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return repr(value)
    except Exception:
        return object.__repr__(value)
