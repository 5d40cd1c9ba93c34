"""Recorded test directories and the operations that analyze them.

Exports:
    Difftest: A single recorded test directory
    DifftestGroup: Several runs accounted as one coverage unit
    IndexStrategy: When indexes are used, built and persisted
    analyze_all: Analyze every difftest under a directory
    analyze_all_from_index: Analyze every persisted index under a directory
"""

from __future__ import annotations

from pytest_difftests.difftest.core import Difftest, Fixed, IndexPathResolver, Remap, discover_difftests
from pytest_difftests.difftest.group import DifftestGroup, discover_group, group_from_difftests
from pytest_difftests.difftest.ops import (
    AnalysisOptions,
    AnalyzeResult,
    IndexStrategy,
    analyze_all,
    analyze_all_from_index,
    analyze_difftest,
    analyze_group,
)


__all__ = [
    'AnalysisOptions',
    'AnalyzeResult',
    'Difftest',
    'DifftestGroup',
    'Fixed',
    'IndexPathResolver',
    'IndexStrategy',
    'Remap',
    'analyze_all',
    'analyze_all_from_index',
    'analyze_difftest',
    'analyze_group',
    'discover_difftests',
    'discover_group',
    'group_from_difftests',
]
