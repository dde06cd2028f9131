"""Websocket client for a python-session server running in socket mode.

Usage:
    with SessionClient('ws://127.0.0.1:3001/') as session:
        session.execute("['Hello', 'World!']")
        # {'text/plain': "['Hello', 'World!']"}

        session.execute("raise ValueError('boom')")
        # RemoteEvaluationError: ValueError: boom
"""

from __future__ import annotations

__all__ = ['SessionClient']

import itertools
import json
import logging
import typing
from collections.abc import Callable

import websocket

from python_session.exceptions import ChannelError, RemoteEvaluationError
from python_session.models import ErrorRecord

logger = logging.getLogger(__name__)

type OutputCallback = Callable[[str], None]


class SessionClient:
    """Synchronous client: one request in flight at a time.

    Streamed ``stdout`` / ``stderr`` of the current request go to the optional
    callbacks. Messages for other ids (e.g. another client's requests, which
    the server broadcasts) are ignored, and untagged ``stderr`` diagnostics go
    to ``on_stderr``.
    """

    def __init__(
        self,
        url: str,
        *,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.url = url
        self.on_stdout = on_stdout
        self.on_stderr = on_stderr
        self.timeout = timeout
        self._ws: websocket.WebSocket | None = None
        self._ids = itertools.count(1)

    def connect(self) -> None:
        try:
            self._ws = websocket.create_connection(self.url, timeout=self.timeout)
        except (OSError, websocket.WebSocketException) as e:
            raise ChannelError(f'Failed to connect to {self.url}: {e}') from e

    def close(self) -> None:
        if self._ws is not None:
            self._ws.close()
            self._ws = None

    def __enter__(self) -> typing.Self:
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def execute(self, code: str) -> dict[str, str]:
        """Run ``code`` and return the result mime bundle.

        Raises:
            RemoteEvaluationError: If evaluation failed on the server
        """
        mime: dict[str, str] = self.request('run', code)['mime']
        return mime

    def inspect(self, code: str) -> dict[str, typing.Any]:
        """Evaluate ``code`` and return the inspection record of its value."""
        inspection: dict[str, typing.Any] = self.request('inspect', code)['inspection']
        return inspection

    def get_all_property_names(self, code: str) -> list[str]:
        """Evaluate ``code`` and return the attribute names reachable from its value."""
        names: list[str] = self.request('getAllPropertyNames', code)['names']
        return names

    def request(self, action: str, code: str) -> dict[str, typing.Any]:
        """Send ``[action, code, id]`` and wait for the final message with that id."""
        if self._ws is None:
            raise ChannelError('Client is not connected')

        request_id = f'{id(self):x}-{next(self._ids)}'
        self._ws.send(json.dumps([action, code, request_id]))

        while True:
            try:
                message = json.loads(self._ws.recv())
            except (OSError, websocket.WebSocketException) as e:
                raise ChannelError(f'Connection lost waiting for {request_id}: {e}') from e

            if 'id' not in message:
                if 'stderr' in message and self.on_stderr is not None:
                    self.on_stderr(message['stderr'])
                continue

            if message['id'] != request_id:
                continue

            if 'stdout' in message and self.on_stdout is not None:
                self.on_stdout(message['stdout'])
            elif 'stderr' in message and self.on_stderr is not None:
                self.on_stderr(message['stderr'])
            elif 'log' in message:
                logger.debug(message['log'])

            if message.get('end'):
                if 'error' in message:
                    raise RemoteEvaluationError(ErrorRecord.model_validate(message['error']))
                return typing.cast(dict[str, typing.Any], message)
