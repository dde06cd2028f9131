"""Exception types raised by the session server and client."""

from __future__ import annotations

import typing

if typing.TYPE_CHECKING:
    from python_session.models import ErrorRecord

__all__ = [
    'SessionError',
    'ProtocolError',
    'ChannelError',
    'RemoteEvaluationError',
]


class SessionError(Exception):
    """Base class for session server errors."""


class ProtocolError(SessionError):
    """Malformed request payload or unhandled action."""


class ChannelError(SessionError):
    """Transport failed to read or deliver a message."""


class RemoteEvaluationError(SessionError):
    """Evaluation failed on the server; carries the structured error record."""

    def __init__(self, record: ErrorRecord) -> None:
        self.record = record
        super().__init__(f'{record.ename}: {record.evalue}')
