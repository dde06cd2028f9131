"""Transports between the session server and its clients.

Both channels satisfy the same contract: ``bind(handler)`` registers the
coroutine that receives each decoded inbound payload, ``send(message)``
delivers an outbound JSON-compatible dict, and ``serve()`` runs until the
transport closes.

Pipe protocol (``PipeChannel``), shared with the parent process:
    Frame: "{length}\\n{json}"
    Inbound:  ["run", "1 + 1", "r1"]
    Outbound: {"id": "r1", "mime": {"text/plain": "2"}, "end": true}

Socket protocol (``SocketChannel``): the same JSON payloads as websocket text
frames on ``ws://{host}:{port}/``. Outbound messages go to every connected
client.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json
import logging
import sys
import threading
import typing
from collections.abc import Awaitable, Callable

import fastapi
import uvicorn

from python_session.context import Message
from python_session.exceptions import ChannelError, ProtocolError
from python_session.mime import plain_text
from python_session.models import ServerConfig

__all__ = [
    'Channel',
    'MessageHandler',
    'PipeChannel',
    'SocketChannel',
    'create_channel',
    'encode_message',
]

logger = logging.getLogger(__name__)

type MessageHandler = Callable[[typing.Any], Awaitable[None]]


class Channel(typing.Protocol):
    """Duplex message transport."""

    def bind(self, handler: MessageHandler) -> None: ...
    def send(self, message: Message) -> None: ...
    async def serve(self) -> None: ...


def encode_message(message: Message) -> str:
    """Serialize an outbound message; values JSON cannot encode are sent as their repr."""
    return json.dumps(message, default=plain_text)


class PipeChannel:
    """Length-prefixed JSON frames over a reader/writer pair (the parent process pipe)."""

    def __init__(self, reader: typing.TextIO, writer: typing.TextIO) -> None:
        self._reader = reader
        self._writer = writer
        self._handler: MessageHandler | None = None
        self._write_lock = threading.Lock()

    @classmethod
    def from_stdio(cls) -> PipeChannel:
        """Take over stdin/stdout for the protocol.

        Console output from evaluated code is redirected to stderr so it cannot
        interleave with protocol frames.
        """
        channel = cls(reader=sys.stdin, writer=sys.stdout)
        sys.stdout = sys.stderr
        return channel

    def bind(self, handler: MessageHandler) -> None:
        self._handler = handler

    def send(self, message: Message) -> None:
        data = encode_message(message)
        with self._write_lock:
            try:
                self._writer.write(f'{len(data)}\n{data}')
                self._writer.flush()
            except (OSError, ValueError) as e:
                raise ChannelError(f'Failed to write message: {e}') from e

    async def serve(self) -> None:
        """Read frames until EOF, dispatching each one before reading the next."""
        if self._handler is None:
            raise ChannelError('No message handler bound')

        while True:
            try:
                payload = await asyncio.to_thread(self.read_message)
            except ProtocolError as e:
                logger.warning(f'Dropping malformed frame: {e}')
                self.send({'stderr': f'ProtocolError: {e}'})
                continue

            if payload is None:
                logger.info('Pipe closed, stopping')
                return

            await self._handler(payload)

    def read_message(self) -> typing.Any | None:
        """Read one length-prefixed JSON frame.

        Returns:
            Decoded payload, or None at EOF.

        Raises:
            ProtocolError: If the frame header or body is malformed
        """
        length_line = self._reader.readline()
        if not length_line:
            return None

        try:
            length = int(length_line.strip())
        except ValueError as e:
            raise ProtocolError(f'Invalid frame length: {length_line!r}') from e
        if length <= 0:
            raise ProtocolError(f'Invalid frame length: {length}')

        data = self._reader.read(length)
        if len(data) < length:
            return None  # Truncated by EOF

        try:
            return json.loads(data)
        except json.JSONDecodeError as e:
            raise ProtocolError(f'Invalid JSON: {e}') from e


@dataclasses.dataclass(eq=False, slots=True)
class _Client:
    """One websocket connection and the queue feeding its writer task."""

    websocket: fastapi.WebSocket
    loop: asyncio.AbstractEventLoop
    queue: asyncio.Queue[Message]


class SocketChannel:
    """Websocket server accepting any number of clients, all routed to the same handler.

    Outbound messages are queued per client and written by a task on the event
    loop. Output streamed during a long synchronous evaluation therefore stays
    queued until the evaluation returns or awaits: it arrives in order but not
    live. Pipe mode writes each message immediately.
    """

    def __init__(self, host: str = '127.0.0.1', port: int = 0) -> None:
        self.host = host
        self.port = port
        self._handler: MessageHandler | None = None
        self._clients: set[_Client] = set()

        self.app = fastapi.FastAPI(title='Python Session')
        self.app.add_api_websocket_route('/', self._session_endpoint)
        self.app.add_api_route('/health', self._health, methods=['GET'])

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def bind(self, handler: MessageHandler) -> None:
        self._handler = handler

    def send(self, message: Message) -> None:
        if not self._clients:
            logger.debug(f'No clients connected, dropping: {message}')
            return
        for client in list(self._clients):
            # send() may run off the client's loop thread
            client.loop.call_soon_threadsafe(client.queue.put_nowait, message)

    async def serve(self) -> None:
        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level='warning')
        server = uvicorn.Server(config)
        logger.info(f'Listening on ws://{self.host}:{self.port}/')
        await server.serve()

    async def _health(self) -> dict[str, typing.Any]:
        return {'status': 'ok', 'clients': self.client_count}

    async def _session_endpoint(self, websocket: fastapi.WebSocket) -> None:
        await websocket.accept()
        client = _Client(websocket=websocket, loop=asyncio.get_running_loop(), queue=asyncio.Queue())
        self._clients.add(client)
        writer = asyncio.create_task(self._write_loop(client))
        logger.info(f'Client connected ({self.client_count} total)')

        try:
            while True:
                text = await websocket.receive_text()
                try:
                    payload = json.loads(text)
                except json.JSONDecodeError as e:
                    logger.warning(f'Dropping malformed frame: {e}')
                    client.queue.put_nowait({'stderr': f'ProtocolError: Invalid JSON: {e}'})
                    continue

                if self._handler is None:
                    raise ChannelError('No message handler bound')
                await self._handler(payload)
        except fastapi.WebSocketDisconnect:
            logger.info('Client disconnected')
        finally:
            self._clients.discard(client)
            writer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await writer

    async def _write_loop(self, client: _Client) -> None:
        while True:
            message = await client.queue.get()
            try:
                await client.websocket.send_text(encode_message(message))
            except Exception as e:
                logger.warning(f'Failed to send to client: {e}')
            finally:
                client.queue.task_done()


def create_channel(config: ServerConfig) -> Channel:
    """Build the channel selected by ``config``: websocket server when a port is set, else stdio pipe."""
    if config.port is not None:
        return SocketChannel(config.host, config.port)
    return PipeChannel.from_stdio()
