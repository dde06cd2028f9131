"""Command-line entry point for the Python session server.

Usage:
    python-session                  # serve over the parent process pipe (stdin/stdout)
    python-session --port 3001      # serve websocket clients on ws://127.0.0.1:3001/
"""

from __future__ import annotations

__all__ = ['main']

import argparse
import asyncio
import os
import sys

from python_session.log import configure_logging
from python_session.models import ServerConfig
from python_session.server import SessionServer


def parse_args(argv: list[str] | None = None) -> ServerConfig:
    parser = argparse.ArgumentParser(description='Persistent Python evaluation session server')
    parser.add_argument('--host', default='127.0.0.1', help='Listen address in socket mode (default: 127.0.0.1)')
    parser.add_argument('--port', type=int, default=None, help='Listen on this port instead of the stdio pipe')
    parser.add_argument(
        '--debug',
        action='store_true',
        default=bool(os.environ.get('DEBUG')),
        help='Forward server logs to clients (default: $DEBUG)',
    )
    args = parser.parse_args(argv)
    return ServerConfig(host=args.host, port=args.port, debug=args.debug)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the Python session server."""
    config = parse_args(argv)
    configure_logging(config.debug, stream=sys.stderr)

    server = SessionServer(config)
    server.init()
    try:
        asyncio.run(server.serve())
    except KeyboardInterrupt:
        pass
    finally:
        server.close()


if __name__ == '__main__':
    main()
