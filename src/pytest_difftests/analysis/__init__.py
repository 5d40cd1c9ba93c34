"""Staleness analysis of recorded test indexes.

Exports:
    AnalysisContext: Runs one dirty algorithm over one index
    AnalysisConfig: Algorithm selection for a context
    AnalysisVerdict: CLEAN or DIRTY
    FileSystemMtimes, GitDiff: Dirty-detection strategies
"""

from __future__ import annotations

from pytest_difftests.analysis.context import AnalysisConfig, AnalysisContext, AnalysisVerdict
from pytest_difftests.analysis.dirty import (
    DirtyAlgorithm,
    FileSystemMtimes,
    GitDiff,
    GitDiffStrategy,
    is_dirty,
)


__all__ = [
    'AnalysisConfig',
    'AnalysisContext',
    'AnalysisVerdict',
    'DirtyAlgorithm',
    'FileSystemMtimes',
    'GitDiff',
    'GitDiffStrategy',
    'is_dirty',
]
