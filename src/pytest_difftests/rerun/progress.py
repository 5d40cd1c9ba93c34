"""Line-based progress protocol between a rerunner and its caller.

The rerunner prints one record per line on stdout:

    difftests-test-counts::{"state": "running", "current": 0, "total": 2}
    difftests-start-test::tests/test_a.py::test_x
    difftests-test-successful::tests/test_a.py::test_x
    difftests-test-failed::tests/test_b.py::test_y

Any other line is ordinary rerunner output. The rerunner side is TestCounts,
the caller side is ProgressTracker.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import json
import logging
import sys
import threading
from typing import TYPE_CHECKING, Any

from pytest_difftests.errors import RerunProtocolError


if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType
    from typing import Self


logger = logging.getLogger(__name__)

TEST_COUNTS_PREFIX = 'difftests-test-counts::'
START_TEST_PREFIX = 'difftests-start-test::'
TEST_SUCCESSFUL_PREFIX = 'difftests-test-successful::'
TEST_FAILED_PREFIX = 'difftests-test-failed::'


class RunnerState(Enum):
    """Lifecycle of a rerunner's test counts."""

    NONE = 'none'
    RUNNING = 'running'
    DONE = 'done'
    ERROR = 'error'


@dataclass(frozen=True)
class CountState:
    """A test-counts record."""

    state: RunnerState
    current: int = 0
    total: int = 0

    def to_json(self) -> str:
        """Encode the record payload."""
        return json.dumps({'state': self.state.value, 'current': self.current, 'total': self.total})

    @classmethod
    def from_json(cls, payload: str) -> CountState:
        """Decode a record payload.

        Raises:
            RerunProtocolError: If the payload is malformed.
        """
        try:
            raw = json.loads(payload)
            return cls(
                state=RunnerState(raw['state']),
                current=int(raw.get('current', 0)),
                total=int(raw.get('total', 0)),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as exc:
            msg = f'malformed test counts record: {payload!r}'
            raise RerunProtocolError(msg) from exc


def _stdout_writer(line: str) -> None:
    sys.stdout.write(line + '\n')
    sys.stdout.flush()


class TestCounts:
    """Rerunner-side progress reporter.

    Use as a context manager so the caller never sees a run that just stops:
    leaving the block while still running reports ``error`` if an exception
    escaped and ``done`` otherwise.

    Args:
        write: Receives each protocol line. Defaults to stdout.

    Example:
        >>> lines = []
        >>> with TestCounts(lines.append) as counts:
        ...     counts.initialize(1)
        ...     with counts.start_test('t') as guard:
        ...         guard.succeeded()
        >>> lines[-1]
        'difftests-test-counts::{"state": "done", "current": 1, "total": 1}'
    """

    __test__ = False  # not a pytest test class

    def __init__(self, write: Callable[[str], None] | None = None) -> None:
        self._write = write or _stdout_writer
        self._state = CountState(RunnerState.NONE)

    @property
    def state(self) -> CountState:
        """Return the current counts."""
        return self._state

    def emit(self, line: str) -> None:
        """Write one protocol line."""
        self._write(line)

    def _set(self, state: CountState) -> None:
        self._state = state
        self.emit(TEST_COUNTS_PREFIX + state.to_json())

    def initialize(self, total: int) -> None:
        """Announce how many tests will run.

        Raises:
            RerunProtocolError: If the counts were already initialized.
        """
        if self._state.state is not RunnerState.NONE:
            msg = 'test counts already initialized'
            raise RerunProtocolError(msg)
        self._set(CountState(RunnerState.RUNNING, 0, total))

    def start_test(self, name: str) -> TestGuard:
        """Announce that test ``name`` starts and return its guard.

        Raises:
            RerunProtocolError: If the counts are not running.
        """
        if self._state.state is not RunnerState.RUNNING:
            msg = 'test counts not running'
            raise RerunProtocolError(msg)
        self.emit(START_TEST_PREFIX + name)
        return TestGuard(self, name)

    def inc(self) -> None:
        """Count one more finished test."""
        if self._state.state is not RunnerState.RUNNING:
            msg = 'test counts not running'
            raise RerunProtocolError(msg)
        current = self._state.current + 1
        if current > self._state.total:
            msg = f'more tests finished than announced ({current} > {self._state.total})'
            raise RerunProtocolError(msg)
        self._set(CountState(RunnerState.RUNNING, current, self._state.total))

    def done(self) -> None:
        """Announce that every test ran. Does nothing if already done."""
        if self._state.state is RunnerState.DONE:
            return
        if self._state.state is not RunnerState.RUNNING:
            msg = f'cannot finish test counts in state {self._state.state.value!r}'
            raise RerunProtocolError(msg)
        self._set(CountState(RunnerState.DONE, self._state.current, self._state.total))

    def fail_if_running(self) -> None:
        """Announce an error, unless the run already ended."""
        if self._state.state is RunnerState.RUNNING:
            self._set(CountState(RunnerState.ERROR, self._state.current, self._state.total))

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._state.state is not RunnerState.RUNNING:
            return
        if exc_type is not None:
            self.fail_if_running()
        else:
            self.done()


class TestGuard:
    """Outcome handle of one started test; resolve it exactly once."""

    __test__ = False  # not a pytest test class

    def __init__(self, counts: TestCounts, name: str) -> None:
        self._counts = counts
        self.name = name
        self.resolved = False

    def _resolve(self) -> None:
        if self.resolved:
            msg = f'test {self.name!r} already resolved'
            raise RerunProtocolError(msg)
        self.resolved = True

    def succeeded(self) -> None:
        """Report the test as successful."""
        self._resolve()
        self._counts.inc()
        self._counts.emit(TEST_SUCCESSFUL_PREFIX + self.name)

    def failed(self) -> None:
        """Report the test as failed; this errors the whole run."""
        self._resolve()
        self._counts.fail_if_running()
        self._counts.emit(TEST_FAILED_PREFIX + self.name)

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if not self.resolved and exc_type is not None:
            self.failed()


class ProgressEventKind(Enum):
    """Kinds of protocol records."""

    COUNTS = 'counts'
    START = 'start'
    SUCCESS = 'success'
    FAILURE = 'failure'
    OUTPUT = 'output'


@dataclass(frozen=True)
class ProgressEvent:
    """One parsed stdout line."""

    kind: ProgressEventKind
    payload: Any


def parse_progress_line(line: str) -> ProgressEvent:
    """Parse one line of rerunner stdout.

    Example:
        >>> parse_progress_line('difftests-start-test::test_a').kind
        <ProgressEventKind.START: 'start'>
        >>> parse_progress_line('collected 2 items').kind
        <ProgressEventKind.OUTPUT: 'output'>
    """
    line = line.rstrip('\r\n')
    if line.startswith(TEST_COUNTS_PREFIX):
        return ProgressEvent(ProgressEventKind.COUNTS, CountState.from_json(line.removeprefix(TEST_COUNTS_PREFIX)))
    if line.startswith(START_TEST_PREFIX):
        return ProgressEvent(ProgressEventKind.START, line.removeprefix(START_TEST_PREFIX))
    if line.startswith(TEST_SUCCESSFUL_PREFIX):
        return ProgressEvent(ProgressEventKind.SUCCESS, line.removeprefix(TEST_SUCCESSFUL_PREFIX))
    if line.startswith(TEST_FAILED_PREFIX):
        return ProgressEvent(ProgressEventKind.FAILURE, line.removeprefix(TEST_FAILED_PREFIX))
    return ProgressEvent(ProgressEventKind.OUTPUT, line)


class ProgressTracker:
    """Caller-side view of a rerunner's progress. Thread-safe."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts = CountState(RunnerState.NONE)
        self.started: list[str] = []
        self.succeeded: list[str] = []
        self.failed: list[str] = []

    @property
    def counts(self) -> CountState:
        """Return the latest test counts."""
        with self._lock:
            return self._counts

    @property
    def errored(self) -> bool:
        """Return True if the run ended in the error state."""
        return self.counts.state is RunnerState.ERROR

    def feed(self, line: str) -> ProgressEvent:
        """Consume one stdout line and update the tracked state."""
        event = parse_progress_line(line)
        with self._lock:
            if event.kind is ProgressEventKind.COUNTS:
                self._counts = event.payload
            elif event.kind is ProgressEventKind.START:
                self.started.append(event.payload)
            elif event.kind is ProgressEventKind.SUCCESS:
                self.succeeded.append(event.payload)
            elif event.kind is ProgressEventKind.FAILURE:
                self.failed.append(event.payload)

        if event.kind is ProgressEventKind.COUNTS:
            counts = event.payload
            logger.info('Rerun %s: %d/%d tests', counts.state.value, counts.current, counts.total)
        elif event.kind is ProgressEventKind.START:
            logger.info('Running test %s', event.payload)
        elif event.kind is ProgressEventKind.SUCCESS:
            logger.info('Test %s successful', event.payload)
        elif event.kind is ProgressEventKind.FAILURE:
            logger.warning('Test %s failed', event.payload)
        else:
            logger.info('rerun stdout: %s', event.payload)
        return event

    def finalize(self, returncode: int | None) -> CountState:
        """Close the tracker once the rerunner exited.

        A run that never reported ``done`` is marked as errored, so a crashed
        rerunner is never mistaken for a finished one.
        """
        with self._lock:
            if self._counts.state is not RunnerState.DONE or returncode != 0:
                if self._counts.state is not RunnerState.ERROR:
                    logger.warning('Rerunner exited (code %s) without finishing, marking as errored', returncode)
                self._counts = CountState(RunnerState.ERROR, self._counts.current, self._counts.total)
            return self._counts
