"""Shared fixtures: an in-memory channel and a server bound to it."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Generator

import pytest

from python_session.models import ServerConfig
from python_session.server import SessionServer

from tests.recording import RecordingChannel


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def server(channel: RecordingChannel) -> Generator[SessionServer]:
    session_server = SessionServer(ServerConfig(debug=False))
    session_server.init(channel)
    yield session_server
    session_server.close()


@pytest.fixture
def run(server: SessionServer) -> Callable[..., Awaitable[None]]:
    """Send a ``run`` request through the server's dispatch."""

    async def _run(code: str, request_id: str = 'r1') -> None:
        await server.on_message(['run', code, request_id])

    return _run
