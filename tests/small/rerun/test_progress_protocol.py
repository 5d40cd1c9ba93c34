"""Tests for the rerunner progress protocol."""

from __future__ import annotations

import pytest

from pytest_difftests.errors import RerunProtocolError
from pytest_difftests.rerun.progress import (
    CountState,
    ProgressEventKind,
    ProgressTracker,
    RunnerState,
    TestCounts,
    parse_progress_line,
)


@pytest.mark.small
class TestTestCounts:
    """Tests for the rerunner side of the protocol."""

    def test_successful_run_emits_every_record(self):
        lines = []

        with TestCounts(lines.append) as counts:
            counts.initialize(2)
            with counts.start_test('tests/test_a.py::test_x') as guard:
                guard.succeeded()
            with counts.start_test('tests/test_b.py::test_y') as guard:
                guard.succeeded()

        assert lines == [
            'difftests-test-counts::{"state": "running", "current": 0, "total": 2}',
            'difftests-start-test::tests/test_a.py::test_x',
            'difftests-test-counts::{"state": "running", "current": 1, "total": 2}',
            'difftests-test-successful::tests/test_a.py::test_x',
            'difftests-start-test::tests/test_b.py::test_y',
            'difftests-test-counts::{"state": "running", "current": 2, "total": 2}',
            'difftests-test-successful::tests/test_b.py::test_y',
            'difftests-test-counts::{"state": "done", "current": 2, "total": 2}',
        ]

    def test_failed_test_errors_the_run(self):
        lines = []

        with TestCounts(lines.append) as counts:
            counts.initialize(2)
            with counts.start_test('t') as guard:
                guard.failed()

        assert counts.state == CountState(RunnerState.ERROR, 0, 2)
        assert lines[-1] == 'difftests-test-failed::t'

    def test_escaping_exception_fails_the_test_and_run(self):
        lines = []

        with pytest.raises(RuntimeError), TestCounts(lines.append) as counts:
            counts.initialize(1)
            with counts.start_test('t'):
                msg = 'boom'
                raise RuntimeError(msg)

        assert counts.state.state is RunnerState.ERROR
        assert 'difftests-test-failed::t' in lines

    def test_cannot_initialize_twice(self):
        counts = TestCounts(lambda line: None)
        counts.initialize(1)

        with pytest.raises(RerunProtocolError, match='already initialized'):
            counts.initialize(1)

    def test_cannot_start_before_initialize(self):
        with pytest.raises(RerunProtocolError, match='not running'):
            TestCounts(lambda line: None).start_test('t')

    def test_cannot_finish_more_than_announced(self):
        counts = TestCounts(lambda line: None)
        counts.initialize(0)

        with pytest.raises(RerunProtocolError, match='more tests finished'):
            counts.inc()

    def test_guard_resolves_once(self):
        counts = TestCounts(lambda line: None)
        counts.initialize(2)
        guard = counts.start_test('t')
        guard.succeeded()

        with pytest.raises(RerunProtocolError, match='already resolved'):
            guard.succeeded()

    def test_done_is_idempotent(self):
        lines = []
        counts = TestCounts(lines.append)
        counts.initialize(0)

        counts.done()
        counts.done()

        assert len(lines) == 2

    def test_done_before_initialize_raises(self):
        with pytest.raises(RerunProtocolError, match="'none'"):
            TestCounts(lambda line: None).done()


@pytest.mark.small
class TestParseProgressLine:
    """Tests for decoding stdout lines."""

    def test_counts_record(self):
        event = parse_progress_line('difftests-test-counts::{"state": "done", "current": 3, "total": 3}\n')

        assert event.kind is ProgressEventKind.COUNTS
        assert event.payload == CountState(RunnerState.DONE, 3, 3)

    def test_node_id_may_contain_separators(self):
        event = parse_progress_line('difftests-test-successful::tests/test_a.py::TestK::test_x[a::b]')

        assert event.kind is ProgressEventKind.SUCCESS
        assert event.payload == 'tests/test_a.py::TestK::test_x[a::b]'

    def test_other_lines_are_output(self):
        assert parse_progress_line('1 passed in 0.01s').kind is ProgressEventKind.OUTPUT

    @pytest.mark.parametrize(
        'payload',
        ['not json', '{"current": 1}', '{"state": "paused"}', '[]'],
    )
    def test_malformed_counts_raise(self, payload):
        with pytest.raises(RerunProtocolError, match='malformed test counts'):
            parse_progress_line(f'difftests-test-counts::{payload}')


@pytest.mark.small
class TestProgressTracker:
    """Tests for the caller side of the protocol."""

    def test_tracks_a_finished_run(self):
        tracker = ProgressTracker()
        lines = []
        with TestCounts(lines.append) as counts:
            counts.initialize(1)
            with counts.start_test('t') as guard:
                guard.succeeded()

        for line in ['collected 1 item', *lines]:
            tracker.feed(line)

        assert tracker.started == ['t']
        assert tracker.succeeded == ['t']
        assert tracker.finalize(0) == CountState(RunnerState.DONE, 1, 1)
        assert tracker.errored is False

    def test_run_that_never_finished_is_errored(self, caplog):
        tracker = ProgressTracker()
        tracker.feed('difftests-test-counts::{"state": "running", "current": 0, "total": 2}')

        counts = tracker.finalize(0)

        assert counts == CountState(RunnerState.ERROR, 0, 2)
        assert tracker.errored is True
        assert 'without finishing' in caplog.text

    def test_nonzero_exit_is_errored_even_when_done(self):
        tracker = ProgressTracker()
        tracker.feed('difftests-test-counts::{"state": "done", "current": 0, "total": 0}')

        assert tracker.finalize(3).state is RunnerState.ERROR

    def test_failures_are_recorded(self):
        tracker = ProgressTracker()

        tracker.feed('difftests-test-failed::t')

        assert tracker.failed == ['t']
