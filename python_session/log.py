"""Logging setup for the session server."""

from __future__ import annotations

import logging
import sys
import threading
import typing
from collections.abc import Callable

from python_session.context import Message, current_context

__all__ = [
    'PACKAGE_LOGGER',
    'ChannelLogHandler',
    'configure_logging',
]

PACKAGE_LOGGER = 'python_session'

_LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class ChannelLogHandler(logging.Handler):
    """Forward log records to the client as ``{id, log}`` messages.

    ``id`` is the installed context's request id, omitted between requests.
    """

    def __init__(self, deliver: Callable[[Message], None], level: int = logging.DEBUG) -> None:
        super().__init__(level)
        self._deliver = deliver
        self._local = threading.local()
        self.setFormatter(logging.Formatter('%(message)s'))

    def emit(self, record: logging.LogRecord) -> None:
        # Delivery may log; never forward records produced while forwarding
        if getattr(self._local, 'active', False):
            return
        self._local.active = True
        try:
            message: Message = {'log': f'SERVER: {self.format(record)}'}
            context = current_context()
            if context is not None and context.id is not None:
                message['id'] = context.id
            self._deliver(message)
        except Exception:
            self.handleError(record)
        finally:
            self._local.active = False


def configure_logging(debug: bool, stream: typing.TextIO | None = None) -> logging.Logger:
    """Configure the package logger to write to ``stream`` (default: the current stderr).

    Call before the server captures its idle context, so the handler holds the
    real stderr rather than a captured stream.
    """
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.handlers.clear()
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if debug else logging.INFO)
    package_logger.propagate = False
    return package_logger
