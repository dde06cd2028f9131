"""Persistent Python evaluation session server."""

from __future__ import annotations

from python_session.context import ExecutionContext, current_context
from python_session.evaluator import Deferred, Evaluator, Immediate
from python_session.models import Request, ServerConfig
from python_session.server import SessionServer

__all__ = [
    'Deferred',
    'Evaluator',
    'ExecutionContext',
    'Immediate',
    'Request',
    'ServerConfig',
    'SessionServer',
    'current_context',
]
