"""Coverage-writer gates.

Profile counters are process-global and end up in one on-disk profile, so
only one coverage-writing session may accumulate counters at a time. A gate
hands out sessions that enforce this:

- SerialGate: one session at a time, full stop.
- GroupGate: sessions of the same named group may overlap; a standalone
  session (group None) or a different group waits until the running session
  is fully over. The last member to leave runs its flush callback.

Sessions are explicit scoped handles:

    with gate.begin('parser', flush=write_profile):
        run_test()
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType
    from typing import Self


logger = logging.getLogger(__name__)


class GateSession:
    """A held slot in a gate; ``end`` releases it exactly once.

    Args:
        release: Called on the first ``end``.
        group: The group the session belongs to, None if standalone.
    """

    def __init__(self, release: Callable[[], None], group: str | None = None) -> None:
        self._release = release
        self._ended = False
        self._lock = threading.Lock()
        self.group = group

    @property
    def ended(self) -> bool:
        """Return True once the session was ended."""
        return self._ended

    def end(self) -> None:
        """Release the slot. Later calls do nothing."""
        with self._lock:
            if self._ended:
                return
            self._ended = True
        self._release()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.end()


class CoverageGate:
    """Hands out coverage-writing sessions."""

    def begin(self, group: str | None = None, flush: Callable[[], None] | None = None) -> GateSession:
        """Block until a session may start, then start it.

        Args:
            group: Group name, or None for a standalone test.
            flush: Run when the session's counters must be written out.
        """
        raise NotImplementedError


class SerialGate(CoverageGate):
    """At most one session at a time, regardless of group."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def begin(self, group: str | None = None, flush: Callable[[], None] | None = None) -> GateSession:
        self._lock.acquire()

        def release() -> None:
            try:
                if flush is not None:
                    flush()
            finally:
                self._lock.release()

        return GateSession(release, group)


@dataclass
class RunningSession:
    """State of the session currently holding a GroupGate."""

    group: str | None
    active_count: int


class GroupGate(CoverageGate):
    """Lets members of one named group run concurrently, and nothing else."""

    def __init__(self) -> None:
        self._condition = threading.Condition()
        self._state: RunningSession | None = None

    @property
    def state(self) -> RunningSession | None:
        """Return a snapshot of the running session, or None when idle."""
        with self._condition:
            if self._state is None:
                return None
            return RunningSession(self._state.group, self._state.active_count)

    def _can_enter(self, group: str | None) -> bool:
        if self._state is None:
            return True
        return group is not None and self._state.group == group

    def begin(self, group: str | None = None, flush: Callable[[], None] | None = None) -> GateSession:
        with self._condition:
            self._condition.wait_for(lambda: self._can_enter(group))
            if self._state is None:
                self._state = RunningSession(group, 1)
                logger.debug('Session %r started', group)
            else:
                self._state.active_count += 1
                logger.debug('Joined session %r (%d active)', group, self._state.active_count)

        def release() -> None:
            self._leave(flush)

        return GateSession(release, group)

    def _leave(self, flush: Callable[[], None] | None) -> None:
        with self._condition:
            if self._state is None:
                msg = 'left a gate that has no running session'
                raise RuntimeError(msg)
            self._state.active_count -= 1
            if self._state.active_count > 0:
                return
            try:
                if flush is not None:
                    flush()
            finally:
                logger.debug('Session %r finished', self._state.group)
                self._state = None
                self._condition.notify_all()
