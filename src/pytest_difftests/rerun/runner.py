"""Launch an external rerunner for the dirty tests and follow its progress."""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from typing import TYPE_CHECKING

from pytest_difftests import __version__
from pytest_difftests.errors import RerunFailedError
from pytest_difftests.rerun.invocation import VERSION_ENV_VAR, RerunInvocation
from pytest_difftests.rerun.progress import ProgressTracker


if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence
    from pathlib import Path

    from pytest_difftests.difftest.ops import AnalyzeResult


logger = logging.getLogger(__name__)

DEFAULT_RUNNER = 'difftests-default-rerunner'


def _pump_stdout(process: subprocess.Popen[str], tracker: ProgressTracker) -> None:
    assert process.stdout is not None  # noqa: S101
    for line in process.stdout:
        tracker.feed(line)


def run_invocation(
    invocation: RerunInvocation,
    runner: Sequence[str],
    *,
    cwd: Path | None = None,
) -> ProgressTracker:
    """Run ``runner`` on ``invocation`` and return the finalized tracker.

    The invocation file is passed as the last argument and deleted once the
    rerunner exits.

    Raises:
        RerunFailedError: If the rerunner can't start, exits non-zero, or
            reports an error.
    """
    tracker = ProgressTracker()
    invocation_file = invocation.write_invocation_file()
    command = [*runner, str(invocation_file)]
    env = os.environ.copy()
    env[VERSION_ENV_VAR] = __version__
    logger.info('Rerunning %d tests and %d groups with %s', len(invocation.tests), len(invocation.groups), runner[0])

    try:
        try:
            process = subprocess.Popen(  # noqa: S603
                command,
                cwd=cwd,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as exc:
            msg = f'cannot start rerunner {runner[0]}: {exc}'
            raise RerunFailedError(msg) from exc

        reader = threading.Thread(target=_pump_stdout, args=(process, tracker), daemon=True)
        reader.start()
        assert process.stderr is not None  # noqa: S101
        for line in process.stderr:
            logger.info('rerun stderr: %s', line.rstrip())
        returncode = process.wait()
        reader.join()
    finally:
        invocation_file.unlink(missing_ok=True)

    counts = tracker.finalize(returncode)
    if returncode != 0:
        msg = f'rerunner exited with code {returncode}'
        if tracker.failed:
            msg += f'; failed tests: {", ".join(tracker.failed)}'
        raise RerunFailedError(msg)
    if tracker.errored:
        msg = f'rerunner reported an error after {counts.current} of {counts.total} tests'
        raise RerunFailedError(msg)
    logger.info('Rerun successful: %d tests', counts.current)
    return tracker


def rerun_dirty(
    results: Iterable[AnalyzeResult],
    runner: Sequence[str] = (DEFAULT_RUNNER,),
    *,
    cwd: Path | None = None,
) -> ProgressTracker | None:
    """Rerun the dirty ``results``.

    Returns:
        The finalized tracker, or None when nothing was dirty.

    Raises:
        RerunFailedError: If the rerun fails.
    """
    invocation = RerunInvocation.from_results(results)
    if invocation.is_empty():
        logger.info('Nothing to rerun')
        return None
    return run_invocation(invocation, runner, cwd=cwd)
