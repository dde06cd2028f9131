"""Tests for ExecutionContext capture, completion guard and helpers."""

from __future__ import annotations

import sys

import pytest

from python_session.context import HELPER_NAME, ContextStream, ExecutionContext, Message, current_context
from python_session.mime import DEFAULT_MIMER_NAME, default_mimer


class Outbox:
    def __init__(self) -> None:
        self.messages: list[Message] = []

    def __call__(self, message: Message) -> None:
        self.messages.append(dict(message))


@pytest.fixture
def outbox() -> Outbox:
    return Outbox()


@pytest.fixture
def namespace() -> dict[str, object]:
    return {'__name__': '__main__'}


def make_context(request_id: str | None, outbox: Outbox, namespace: dict[str, object]) -> ExecutionContext:
    return ExecutionContext(request_id, outbox, namespace)


class TestCompletion:
    def test_first_done_wins(self, outbox: Outbox, namespace: dict[str, object]) -> None:
        context = make_context('r1', outbox, namespace)

        context.done({'mime': {'text/plain': 'first'}})
        context.done({'mime': {'text/plain': 'second'}})
        context.send_error('late')

        assert outbox.messages == [{'mime': {'text/plain': 'first'}, 'end': True, 'id': 'r1'}]
        assert context.is_done

    def test_send_after_done_dropped(self, outbox: Outbox, namespace: dict[str, object]) -> None:
        context = make_context('r1', outbox, namespace)
        context.done()
        context.send({'stdout': 'ignored'})
        assert outbox.messages == [{'end': True, 'id': 'r1'}]

    def test_done_clears_async_flag(self, outbox: Outbox, namespace: dict[str, object]) -> None:
        context = make_context('r1', outbox, namespace)
        context.async_()
        assert context.is_async

        context.done()
        assert not context.is_async

    def test_done_does_not_mutate_argument(self, outbox: Outbox, namespace: dict[str, object]) -> None:
        context = make_context('r1', outbox, namespace)
        message = {'names': []}
        context.done(message)
        assert message == {'names': []}

    def test_untagged_context_omits_id(self, outbox: Outbox, namespace: dict[str, object]) -> None:
        context = make_context(None, outbox, namespace)
        context.send_result(3)
        assert outbox.messages == [{'mime': {'text/plain': '3'}, 'end': True}]

    def test_streamed_output_not_gated(self, outbox: Outbox, namespace: dict[str, object]) -> None:
        context = make_context('r1', outbox, namespace)
        context.done()
        context.stdout.write('after')
        assert outbox.messages[-1] == {'stdout': 'after', 'id': 'r1'}

    def test_send_error_with_exception(self, outbox: Outbox, namespace: dict[str, object]) -> None:
        context = make_context('r1', outbox, namespace)
        context.send_error(KeyError('k'))
        assert outbox.messages == [
            {'error': {'ename': 'KeyError', 'evalue': "'k'", 'traceback': []}, 'end': True, 'id': 'r1'}
        ]


class TestCapture:
    def test_capture_installs_and_release_restores(self, outbox: Outbox, namespace: dict[str, object]) -> None:
        original_stdout, original_stderr = sys.stdout, sys.stderr
        previous = current_context()
        context = make_context('r1', outbox, namespace)

        context.capture()
        try:
            assert sys.stdout is context.stdout
            assert sys.stderr is context.stderr
            assert namespace[HELPER_NAME] is context.helpers
            assert namespace[DEFAULT_MIMER_NAME] is default_mimer
            assert current_context() is context
            assert context.is_installed
        finally:
            context.release()

        assert sys.stdout is original_stdout
        assert sys.stderr is original_stderr
        assert HELPER_NAME not in namespace
        assert current_context() is previous
        assert not context.is_installed

    def test_capture_twice_is_noop(self, outbox: Outbox, namespace: dict[str, object]) -> None:
        original_stdout = sys.stdout
        context = make_context('r1', outbox, namespace)

        context.capture()
        context.capture()
        context.release()

        assert sys.stdout is original_stdout

    def test_release_without_capture_is_noop(self, outbox: Outbox, namespace: dict[str, object]) -> None:
        original_stdout = sys.stdout
        namespace[HELPER_NAME] = 'user value'

        make_context('r1', outbox, namespace).release()

        assert sys.stdout is original_stdout
        assert namespace[HELPER_NAME] == 'user value'

    def test_nested_capture_restores_outer(self, outbox: Outbox, namespace: dict[str, object]) -> None:
        outer = make_context(None, outbox, namespace)
        inner = make_context('r1', outbox, namespace)

        outer.capture()
        try:
            inner.capture()
            inner.release()

            assert sys.stdout is outer.stdout
            assert namespace[HELPER_NAME] is outer.helpers
            assert current_context() is outer
        finally:
            outer.release()

    def test_release_keeps_bindings_replaced_later(self, outbox: Outbox, namespace: dict[str, object]) -> None:
        context = make_context('r1', outbox, namespace)
        context.capture()
        namespace[HELPER_NAME] = 'rebound'
        context.release()
        assert namespace[HELPER_NAME] == 'rebound'

    def test_existing_mimer_preserved(self, outbox: Outbox, namespace: dict[str, object]) -> None:
        def custom(value: object) -> dict[str, str]:
            return {}

        namespace[DEFAULT_MIMER_NAME] = custom
        context = make_context('r1', outbox, namespace)
        context.capture()
        context.release()
        assert namespace[DEFAULT_MIMER_NAME] is custom


class TestContextStream:
    def test_write_forwards_tagged_chunks(self, outbox: Outbox, namespace: dict[str, object]) -> None:
        context = make_context('r1', outbox, namespace)
        stream = ContextStream(context, 'stderr')

        assert stream.write('warn') == 4
        assert stream.write('') == 0

        assert outbox.messages == [{'stderr': 'warn', 'id': 'r1'}]

    def test_write_rejects_bytes(self, outbox: Outbox, namespace: dict[str, object]) -> None:
        stream = ContextStream(make_context('r1', outbox, namespace), 'stdout')
        with pytest.raises(TypeError):
            stream.write(b'raw')  # type: ignore[arg-type]

    def test_print_through_captured_context(self, outbox: Outbox, namespace: dict[str, object]) -> None:
        context = make_context('r1', outbox, namespace)
        context.capture()
        try:
            print('a', 'b')
        finally:
            context.release()

        assert ''.join(m['stdout'] for m in outbox.messages) == 'a b\n'


class TestHelpers:
    @pytest.mark.parametrize(
        ('method', 'content', 'expected'),
        [
            ('text', 'plain', {'text/plain': 'plain'}),
            ('html', '<i>x</i>', {'text/html': '<i>x</i>'}),
            ('svg', '<svg/>', {'image/svg+xml': '<svg/>'}),
            ('png', b'\x00\x01', {'image/png': 'AAE='}),
            ('jpeg', 'already-base64', {'image/jpeg': 'already-base64'}),
        ],
    )
    def test_single_type_helpers(
        self,
        method: str,
        content: object,
        expected: dict[str, str],
        outbox: Outbox,
        namespace: dict[str, object],
    ) -> None:
        context = make_context('r1', outbox, namespace)
        getattr(context.helpers, method)(content)
        assert outbox.messages == [{'mime': expected, 'end': True, 'id': 'r1'}]

    def test_send_result_uses_namespace_mimer(self, outbox: Outbox, namespace: dict[str, object]) -> None:
        namespace['__mimer__'] = lambda value: {'text/plain': f'<{value}>'}
        context = make_context('r1', outbox, namespace)
        context.helpers.send_result(5)
        assert outbox.messages[0]['mime'] == {'text/plain': '<5>'}

    def test_helpers_expose_id(self, outbox: Outbox, namespace: dict[str, object]) -> None:
        assert make_context('r5', outbox, namespace).helpers.id == 'r5'
