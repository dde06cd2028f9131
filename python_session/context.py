"""Per-request execution context.

An ``ExecutionContext`` owns one request's captured output streams, its
completion flags and the helper surface evaluated code uses to finish the
request (bound in the session namespace as ``kernel``). Capturing a context
installs its streams as ``sys.stdout`` / ``sys.stderr`` and its helpers as
``kernel``; releasing it puts back whatever was installed before.

Completion is guarded by ``is_done``: the first ``done()`` is delivered and
every later ``send()`` on the same context is dropped.
"""

from __future__ import annotations

import contextvars
import dataclasses
import io
import logging
import sys
import typing
from collections.abc import Callable, Mapping

from python_session.errors import format_error
from python_session.mime import DEFAULT_MIMER_NAME, as_text, default_mimer, to_mime

__all__ = [
    'HELPER_NAME',
    'Message',
    'ExecutionContext',
    'ContextHelpers',
    'ContextStream',
    'current_context',
]

logger = logging.getLogger(__name__)

type Message = dict[str, typing.Any]
type StreamName = typing.Literal['stdout', 'stderr']

HELPER_NAME = 'kernel'

_MISSING: typing.Any = object()

_current: contextvars.ContextVar[ExecutionContext | None] = contextvars.ContextVar(
    'python_session_context', default=None
)


def current_context() -> ExecutionContext | None:
    """Return the installed context, as seen from the calling task or callback."""
    return _current.get()


@dataclasses.dataclass(slots=True)
class _SavedBindings:
    """Bindings that were installed before a context was captured."""

    stdout: typing.TextIO
    stderr: typing.TextIO
    helpers: typing.Any
    context: ExecutionContext | None


class ContextStream(io.TextIOBase):
    """Text stream that forwards each write to the channel, tagged with the context id.

    Writes then pass through to the stream that was installed before the
    context was captured, so ordinary console output still appears.
    """

    def __init__(self, context: ExecutionContext, name: StreamName) -> None:
        super().__init__()
        self._context = context
        self._name = name
        self.passthrough: typing.TextIO | None = None

    @property
    def encoding(self) -> str:
        return 'utf-8'

    def writable(self) -> bool:
        return True

    def isatty(self) -> bool:
        return False

    def write(self, text: str) -> int:
        if not isinstance(text, str):
            raise TypeError(f'write() argument must be str, not {type(text).__name__}')
        if text:
            self._context.forward({self._name: text})
            if self.passthrough is not None:
                self.passthrough.write(text)
        return len(text)

    def flush(self) -> None:
        if self.passthrough is not None:
            self.passthrough.flush()

    def __repr__(self) -> str:
        return f'<ContextStream {self._name} id={self._context.id!r}>'


class ExecutionContext:
    """Output capture, completion state and helper surface for one request."""

    def __init__(
        self,
        id: str | None,
        deliver: Callable[[Message], None],
        namespace: dict[str, typing.Any],
    ) -> None:
        self.id = id
        self._deliver = deliver
        self._namespace = namespace

        self.stdout = ContextStream(self, 'stdout')
        self.stderr = ContextStream(self, 'stderr')
        self.helpers = ContextHelpers(self)

        self.is_async = False
        self.is_done = False

        self._saved: _SavedBindings | None = None

    @property
    def is_installed(self) -> bool:
        return self._saved is not None

    # -- Install / restore --

    def capture(self) -> None:
        """Install this context's streams and helpers process-wide, saving the current ones."""
        if self._saved is not None:
            return

        self._saved = _SavedBindings(
            stdout=sys.stdout,
            stderr=sys.stderr,
            helpers=self._namespace.get(HELPER_NAME, _MISSING),
            context=_current.get(),
        )

        self.stdout.passthrough = self._saved.stdout
        self.stderr.passthrough = self._saved.stderr

        sys.stdout = self.stdout
        sys.stderr = self.stderr
        self._namespace[HELPER_NAME] = self.helpers
        self._namespace.setdefault(DEFAULT_MIMER_NAME, default_mimer)
        _current.set(self)

    def release(self) -> None:
        """Restore the bindings saved by ``capture()``. No-op unless this context is installed."""
        saved = self._saved
        if saved is None:
            return

        if sys.stdout is self.stdout:
            sys.stdout = saved.stdout
        if sys.stderr is self.stderr:
            sys.stderr = saved.stderr

        if self._namespace.get(HELPER_NAME) is self.helpers:
            if saved.helpers is _MISSING:
                del self._namespace[HELPER_NAME]
            else:
                self._namespace[HELPER_NAME] = saved.helpers

        if _current.get() is self:
            _current.set(saved.context)

        self.stdout.passthrough = None
        self.stderr.passthrough = None
        self._saved = None

    # -- Completion --

    def async_(self) -> None:
        """Mark the request as completing later through an explicit helper call."""
        self.is_async = True

    def send(self, message: Message) -> None:
        """Deliver ``message`` tagged with this context's id, unless the request is complete."""
        if self.id is not None:
            message['id'] = self.id

        if self.is_done:
            logger.debug(f'RESULT: DROPPED: {message}')
            return

        logger.debug(f'RESULT: {message}')
        self._deliver(message)

    def done(self, message: Mapping[str, typing.Any] | None = None) -> None:
        """Send the final message of the request. Only the first call is delivered."""
        final: Message = dict(message) if message else {}
        final['end'] = True

        self.send(final)

        self.is_async = False
        self.is_done = True

    def send_result(self, value: typing.Any) -> None:
        self.done({'mime': to_mime(value, self._namespace)})

    def send_error(self, error: typing.Any) -> None:
        self.done({'error': format_error(error).model_dump()})

    def forward(self, message: Message) -> None:
        """Stream ``message`` straight to the channel; streamed output is never a completion."""
        if self.id is not None:
            message['id'] = self.id
        self._deliver(message)

    def __repr__(self) -> str:
        state = 'done' if self.is_done else 'async' if self.is_async else 'open'
        return f'<ExecutionContext id={self.id!r} {state}>'


class ContextHelpers:
    """Helpers for evaluated code, bound as ``kernel`` while the context is installed.

    Keep a reference (``ctx = kernel``) to finish an async request from a later
    callback::

        ctx = kernel
        ctx.async_()
        asyncio.get_running_loop().call_later(1, ctx.text, 'done')
    """

    __slots__ = ('_context',)

    def __init__(self, context: ExecutionContext) -> None:
        self._context = context

    @property
    def id(self) -> str | None:
        return self._context.id

    def async_(self) -> None:
        self._context.async_()

    def send_result(self, value: typing.Any = None) -> None:
        self._context.send_result(value)

    def send_error(self, error: typing.Any) -> None:
        self._context.send_error(error)

    def done(self, message: Mapping[str, typing.Any] | None = None) -> None:
        self._context.done(message)

    def mime(self, bundle: Mapping[str, typing.Any]) -> None:
        self._context.done({'mime': {str(key): as_text(content) for key, content in bundle.items()}})

    def text(self, text: typing.Any) -> None:
        self._send_one('text/plain', text)

    def html(self, html: typing.Any) -> None:
        self._send_one('text/html', html)

    def svg(self, svg: typing.Any) -> None:
        self._send_one('image/svg+xml', svg)

    def png(self, png: bytes | str) -> None:
        self._send_one('image/png', png)

    def jpeg(self, jpeg: bytes | str) -> None:
        self._send_one('image/jpeg', jpeg)

    def _send_one(self, mime_type: str, content: typing.Any) -> None:
        self._context.done({'mime': {mime_type: as_text(content)}})

    def __repr__(self) -> str:
        return f'<kernel id={self._context.id!r}>'
