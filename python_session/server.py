"""Python session server.

Evaluates code requests against one persistent namespace and reports exactly
one result per request, while streaming the output written during evaluation.

Architecture:
    client ─[channel]─> SessionServer.on_message
        -> ExecutionContext(id).capture()      (sys.stdout/sys.stderr/kernel swapped in)
        -> handler: run | inspect | getAllPropertyNames
        -> ExecutionContext.done()             (first completion wins)
        -> cleanup: release request context, recapture idle context

A request completes in one of three ways: evaluated code calls a ``kernel``
helper itself, the evaluation returns a value, or the evaluation returns an
awaitable that later settles. ``kernel.async_()`` keeps the request open after
the handler returns, to be finished by a later helper call.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import threading
import traceback
import types
import typing
from collections.abc import Awaitable, Callable

from python_session.channel import Channel, create_channel
from python_session.context import ExecutionContext, Message
from python_session.evaluator import Deferred, Evaluator, Immediate, Outcome
from python_session.exceptions import ChannelError, ProtocolError, SessionError
from python_session.inspector import get_all_property_names, inspect_value
from python_session.log import PACKAGE_LOGGER, ChannelLogHandler
from python_session.models import Request, ServerConfig

__all__ = ['SessionServer']

logger = logging.getLogger(__name__)

type RequestHandler = Callable[[str, ExecutionContext], Awaitable[None]]

# Raised by evaluated code and reported to the client; CancelledError still propagates
_EVALUATION_ERRORS: tuple[type[BaseException], ...] = (Exception, SystemExit, KeyboardInterrupt)


class SessionServer:
    """Owns the channel, the idle context and request dispatch."""

    def __init__(self, config: ServerConfig | None = None, evaluator: Evaluator | None = None) -> None:
        self.config = config if config is not None else ServerConfig()
        self.evaluator = evaluator if evaluator is not None else Evaluator()
        self.channel: Channel | None = None

        # Most recent request context; None until the first request
        self.context: ExecutionContext | None = None

        self._handlers: dict[str, RequestHandler] = {
            'run': self.on_run_request,
            'inspect': self.on_inspect_request,
            'getAllPropertyNames': self.on_name_request,
        }
        self._lock = asyncio.Lock()
        self._log_handler: ChannelLogHandler | None = None
        self._saved_log_level = logging.NOTSET
        self._saved_hooks: tuple[typing.Any, typing.Any] | None = None

        logger.info(f'Creating server {self.config!r}')

        # Baseline context between requests; id None marks it as not belonging to a request
        self.idle_context = self._new_context(None)
        self.idle_context.capture()

    @property
    def namespace(self) -> dict[str, typing.Any]:
        return self.evaluator.namespace

    # -- Lifecycle --

    def init(self, channel: Channel | None = None) -> None:
        """Bind the channel and register the process-wide exception hooks.

        Args:
            channel: Channel to use; built from the config when omitted
        """
        if self.channel is not None:
            raise SessionError('Server channel already bound')

        if channel is None:
            # Pipe mode redirects stdout; let the idle context capture the redirected stream
            self.idle_context.release()
            try:
                channel = create_channel(self.config)
            finally:
                self.idle_context.capture()

        self.channel = channel
        channel.bind(self.on_message)

        if self.config.debug:
            package_logger = logging.getLogger(PACKAGE_LOGGER)
            self._saved_log_level = package_logger.level
            package_logger.setLevel(logging.DEBUG)
            self._log_handler = ChannelLogHandler(self._deliver)
            package_logger.addHandler(self._log_handler)

        self._saved_hooks = (sys.excepthook, threading.excepthook)
        sys.excepthook = self._on_excepthook
        threading.excepthook = self._on_thread_excepthook

        logger.info(f'Bound {type(channel).__name__}')

    async def serve(self) -> None:
        """Run the bound channel until it closes."""
        if self.channel is None:
            raise SessionError('init() must be called before serve()')
        self._install_loop_exception_handler()
        await self.channel.serve()

    def close(self) -> None:
        """Restore the process-wide bindings and hooks installed by this server."""
        if self.context is not None:
            self.context.release()
        self.idle_context.release()

        if self._saved_hooks is not None:
            sys.excepthook, threading.excepthook = self._saved_hooks
            self._saved_hooks = None

        if self._log_handler is not None:
            package_logger = logging.getLogger(PACKAGE_LOGGER)
            package_logger.removeHandler(self._log_handler)
            package_logger.setLevel(self._saved_log_level)
            self._log_handler = None

    # -- Dispatch --

    async def on_message(self, message: typing.Any) -> None:
        """Handle one inbound ``[action, code, id]`` payload."""
        logger.debug(f'REQUEST: {message!r}')

        try:
            request = Request.from_message(message)
        except ProtocolError as e:
            logger.warning(f'Rejected request: {e}')
            self._deliver({'stderr': f'ProtocolError: {e}'})
            return

        self._install_loop_exception_handler()

        # Serialized: a pending awaitable keeps its context installed until it settles
        async with self._lock:
            self.idle_context.release()
            context = self.context = self._new_context(request.id)
            context.capture()

            try:
                handler = self._handlers.get(request.action)
                if handler is None:
                    context.send_error(ProtocolError(f'Unhandled action request: {request.action}'))
                else:
                    await handler(request.code, context)
            except ChannelError:
                raise
            except Exception as e:
                logger.exception(f'Handler failed for {request.action!r}')
                context.send_error(e)
            finally:
                context.release()
                self.idle_context.capture()
                self.idle_context.is_done = False

    async def on_run_request(self, code: str, context: ExecutionContext) -> None:
        try:
            outcome = self.evaluator.evaluate(code)
        except _EVALUATION_ERRORS as e:
            context.send_error(e)
            return

        # Evaluated code asked to finish the request itself later
        if context.is_async:
            _discard(outcome)
            return

        # Evaluated code already finished the request through a helper
        if context.is_done:
            _discard(outcome)
            return

        match outcome:
            case Deferred(awaitable=awaitable):
                try:
                    value = await awaitable
                except _EVALUATION_ERRORS as e:
                    context.send_error(e)
                    return
                # Awaited code may itself have switched to async mode or completed
                if context.is_async or context.is_done:
                    return
                context.send_result(value)
            case Immediate(value=value):
                context.send_result(value)

    async def on_inspect_request(self, code: str, context: ExecutionContext) -> None:
        try:
            value = await self._evaluate_value(code)
            record = inspect_value(value)
        except _EVALUATION_ERRORS as e:
            context.send_error(e)
            return

        context.done({'inspection': record.to_wire()})

    async def on_name_request(self, code: str, context: ExecutionContext) -> None:
        try:
            value = await self._evaluate_value(code)
            names = get_all_property_names(value)
        except _EVALUATION_ERRORS as e:
            context.send_error(e)
            return

        context.done({'names': names})

    # -- Uncaught exceptions --

    def on_uncaught_exception(self, error: BaseException) -> None:
        """Report an exception raised outside any request as an untagged stderr message."""
        stack = ''.join(traceback.format_exception(type(error), error, error.__traceback__))
        logger.error(f'UNCAUGHTEXCEPTION: {error!r}')
        self._deliver({'stderr': stack})

    def _on_excepthook(
        self,
        exc_type: type[BaseException],
        exc_value: BaseException,
        exc_tb: types.TracebackType | None,
    ) -> None:
        self.on_uncaught_exception(exc_value.with_traceback(exc_tb))

    def _on_thread_excepthook(self, args: threading.ExceptHookArgs) -> None:
        if args.exc_value is None or isinstance(args.exc_value, SystemExit):
            return
        self.on_uncaught_exception(args.exc_value)

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, typing.Any]) -> None:
        error = context.get('exception')
        if isinstance(error, BaseException):
            self.on_uncaught_exception(error)
        else:
            message = context.get('message', 'Unhandled exception in event loop')
            logger.error(f'UNCAUGHTEXCEPTION: {message}')
            self._deliver({'stderr': str(message)})

    def _install_loop_exception_handler(self) -> None:
        loop = asyncio.get_running_loop()
        if loop.get_exception_handler() != self._on_loop_exception:
            loop.set_exception_handler(self._on_loop_exception)

    # -- Helpers --

    def _new_context(self, request_id: str | None) -> ExecutionContext:
        return ExecutionContext(request_id, self._deliver, self.namespace)

    def _deliver(self, message: Message) -> None:
        if self.channel is None:
            logger.debug(f'No channel bound, dropping: {message}')
            return
        self.channel.send(message)

    async def _evaluate_value(self, code: str) -> typing.Any:
        outcome = self.evaluator.evaluate(code)
        if isinstance(outcome, Deferred):
            return await outcome.awaitable
        return outcome.value


def _discard(outcome: Outcome) -> None:
    """Close an unused coroutine so it is not reported as never awaited."""
    if isinstance(outcome, Deferred) and asyncio.iscoroutine(outcome.awaitable):
        outcome.awaitable.close()
