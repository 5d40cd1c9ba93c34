"""Rerunning dirty tests through an external rerunner process.

Exports:
    RerunInvocation: The dirty tests and groups handed to a rerunner
    TestCounts: Rerunner-side progress reporting
    ProgressTracker: Caller-side progress parsing
    rerun_dirty: Launch a rerunner for dirty analysis results
"""

from __future__ import annotations

from pytest_difftests.rerun.invocation import RerunInvocation, read_invocation_from_command_line
from pytest_difftests.rerun.progress import ProgressTracker, TestCounts, TestGuard
from pytest_difftests.rerun.runner import rerun_dirty, run_invocation


__all__ = [
    'ProgressTracker',
    'RerunInvocation',
    'TestCounts',
    'TestGuard',
    'read_invocation_from_command_line',
    'rerun_dirty',
    'run_invocation',
]
