"""Code evaluation against the persistent session namespace.

The evaluator reports how a result is delivered rather than leaving callers to
probe for it: ``Immediate(value)`` for a finished value, ``Deferred(awaitable)``
when code used top-level ``await`` or produced an awaitable.
"""

from __future__ import annotations

import ast
import dataclasses
import inspect
import itertools
import linecache
import types
import typing
from collections.abc import Awaitable

__all__ = [
    'Evaluator',
    'Immediate',
    'Deferred',
    'Outcome',
]

_COMPILE_FLAGS = ast.PyCF_ALLOW_TOP_LEVEL_AWAIT


@dataclasses.dataclass(frozen=True, slots=True)
class Immediate:
    """Evaluation finished synchronously with ``value``."""

    value: typing.Any


@dataclasses.dataclass(frozen=True, slots=True)
class Deferred:
    """Evaluation result arrives when ``awaitable`` settles."""

    awaitable: Awaitable[typing.Any]


type Outcome = Immediate | Deferred


class Evaluator:
    """Runs code in a namespace that persists across evaluations.

    Each evaluation's source stays registered in ``linecache`` for the life of
    the process, as IPython keeps its cells, so tracebacks and
    ``inspect.getsource()`` still work for functions defined many evaluations ago.
    """

    def __init__(self, namespace: dict[str, typing.Any] | None = None) -> None:
        self.namespace: dict[str, typing.Any] = namespace if namespace is not None else {'__name__': '__main__'}
        self._counter = itertools.count(1)

    def evaluate(self, code: str) -> Outcome:
        """Evaluate ``code``; the value of a trailing expression is the result.

        Raises:
            SyntaxError: If the code does not parse
            Exception: Whatever the evaluated code raises synchronously
        """
        filename = f'<session-{next(self._counter)}>'
        # Register the source so tracebacks and inspect.getsource() can show session code
        linecache.cache[filename] = (len(code), None, code.splitlines(keepends=True), filename)

        tree = ast.parse(code, filename=filename, mode='exec')
        body, expression = _split_last_expression(tree)

        body_code = compile(body, filename, 'exec', flags=_COMPILE_FLAGS, dont_inherit=True)
        expr_code = (
            compile(expression, filename, 'eval', flags=_COMPILE_FLAGS, dont_inherit=True)
            if expression is not None
            else None
        )

        if _is_coroutine_code(body_code) or (expr_code is not None and _is_coroutine_code(expr_code)):
            return Deferred(self._run_async(body_code, expr_code))

        exec(body_code, self.namespace)
        value = eval(expr_code, self.namespace) if expr_code is not None else None

        if inspect.isawaitable(value):
            return Deferred(value)
        return Immediate(value)

    async def _run_async(self, body_code: types.CodeType, expr_code: types.CodeType | None) -> typing.Any:
        result = eval(body_code, self.namespace)
        if inspect.isawaitable(result):
            await result

        if expr_code is None:
            return None

        value = eval(expr_code, self.namespace)
        if inspect.isawaitable(value):
            value = await value
        return value


def _split_last_expression(tree: ast.Module) -> tuple[ast.Module, ast.Expression | None]:
    """Split a module into leading statements and the trailing expression, if any."""
    last = tree.body[-1] if tree.body else None
    if not isinstance(last, ast.Expr):
        return tree, None

    body = ast.Module(body=tree.body[:-1], type_ignores=tree.type_ignores)
    return body, ast.Expression(body=last.value)


def _is_coroutine_code(code: types.CodeType) -> bool:
    return bool(code.co_flags & inspect.CO_COROUTINE)
