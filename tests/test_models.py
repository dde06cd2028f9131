"""Tests for request decoding and wire records."""

from __future__ import annotations

import pydantic
import pytest

from python_session.exceptions import ProtocolError, RemoteEvaluationError
from python_session.models import KNOWN_ACTIONS, ErrorRecord, InspectionRecord, Request, ServerConfig


class TestRequest:
    def test_full_triple(self) -> None:
        assert Request.from_message(['run', '1 + 1', 'r1']) == Request(action='run', code='1 + 1', id='r1')

    def test_missing_items_padded(self) -> None:
        assert Request.from_message(['run']) == Request(action='run', code='', id=None)

    def test_numeric_id_becomes_string(self) -> None:
        assert Request.from_message(['inspect', 'x', 7]).id == '7'

    def test_unknown_action_decodes(self) -> None:
        request = Request.from_message(['frobnicate', '', 'r3'])
        assert request.action not in KNOWN_ACTIONS

    @pytest.mark.parametrize(
        'message',
        [
            {'action': 'run'},
            'run',
            [],
            ['run', 'x', 'r1', 'extra'],
            ['run', 5, 'r1'],
            [None, 'x', 'r1'],
        ],
    )
    def test_malformed(self, message: object) -> None:
        with pytest.raises(ProtocolError):
            Request.from_message(message)

    def test_immutable(self) -> None:
        request = Request.from_message(['run', 'x', 'r1'])
        with pytest.raises(pydantic.ValidationError):
            request.code = 'y'  # type: ignore[misc]


class TestRecords:
    def test_inspection_wire_form(self) -> None:
        record = InspectionRecord(string='[]', type='list', constructorList=['list', 'object'], length=0)
        assert record.to_wire() == {'string': '[]', 'type': 'list', 'constructorList': ['list', 'object'], 'length': 0}

    def test_inspection_omits_absent_keys(self) -> None:
        assert InspectionRecord(string='None', type='NoneType').to_wire() == {'string': 'None', 'type': 'NoneType'}

    def test_remote_error_message(self) -> None:
        error = RemoteEvaluationError(ErrorRecord(ename='KeyError', evalue="'k'", traceback=[]))
        assert str(error) == "KeyError: 'k'"
        assert error.record.ename == 'KeyError'


class TestServerConfig:
    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv('DEBUG', raising=False)
        config = ServerConfig()
        assert config.host == '127.0.0.1'
        assert config.port is None
        assert config.debug is False
        assert not config.uses_socket

    def test_debug_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv('DEBUG', '1')
        assert ServerConfig().debug is True

    def test_port_selects_socket(self) -> None:
        assert ServerConfig(port=3001).uses_socket

    def test_rejects_unknown_fields(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            ServerConfig(hostname='x')  # type: ignore[call-arg]
