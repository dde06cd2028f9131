"""Pydantic models for the Python session server."""

from __future__ import annotations

import os
import typing

import pydantic

from python_session.exceptions import ProtocolError

__all__ = [
    'StrictModel',
    'Action',
    'KNOWN_ACTIONS',
    'Request',
    'ErrorRecord',
    'InspectionRecord',
    'ServerConfig',
]

type Action = typing.Literal['run', 'inspect', 'getAllPropertyNames']

KNOWN_ACTIONS: frozenset[str] = frozenset(typing.get_args(Action.__value__))


class StrictModel(pydantic.BaseModel):
    """Base model with strict validation - no extra fields, immutable after creation."""

    model_config = pydantic.ConfigDict(
        extra='forbid',
        strict=True,
        frozen=True,
    )


class Request(StrictModel):
    """Inbound request decoded from the wire triple ``[action, code, id]``.

    ``action`` stays a plain string: unknown actions are a protocol error the
    server reports back to the client, not a decode failure.
    """

    action: str
    code: str
    id: str | None

    @classmethod
    def from_message(cls, message: typing.Any) -> Request:
        """Decode ``[action, code, id]``. Missing trailing items decode to ``''`` / ``None``.

        Raises:
            ProtocolError: If the payload is not a list of 1-3 items or the items have the wrong types.
        """
        if not isinstance(message, (list, tuple)) or not 1 <= len(message) <= 3:
            raise ProtocolError(f'Expected [action, code, id], got: {message!r}')

        action, code, request_id = (list(message) + ['', None])[:3]
        if request_id is not None and not isinstance(request_id, str):
            # Numeric ids correlate as strings
            request_id = str(request_id)

        try:
            return cls(action=action, code=code, id=request_id)
        except pydantic.ValidationError as e:
            raise ProtocolError(f'Invalid request {message!r}: {e}') from e


class ErrorRecord(StrictModel):
    """Structured error delivered in ``{id, error, end}`` responses."""

    ename: str
    evalue: str
    traceback: list[str]


class InspectionRecord(StrictModel):
    """Type information delivered in ``{id, inspection, end}`` responses."""

    string: str
    type: str
    constructor_list: list[str] | None = pydantic.Field(default=None, alias='constructorList')
    length: int | None = None

    def to_wire(self) -> dict[str, typing.Any]:
        """Wire form: camelCase keys, absent optional keys omitted."""
        return self.model_dump(by_alias=True, exclude_none=True)


def _debug_from_env() -> bool:
    return bool(os.environ.get('DEBUG'))


class ServerConfig(StrictModel):
    """Server configuration.

    ``port`` selects the transport: a listening websocket server when set,
    otherwise the parent-process pipe on stdin/stdout.
    """

    host: str = '127.0.0.1'
    port: int | None = None
    debug: bool = pydantic.Field(default_factory=_debug_from_env)

    @property
    def uses_socket(self) -> bool:
        return self.port is not None
