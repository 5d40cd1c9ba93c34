"""Analysis context: binds one test (or group) to a verdict.

A context starts in the created state with an index to analyze, runs a
dirty algorithm exactly once, and ends finished with a verdict:

    ctx = AnalysisContext.from_index_file(path)
    ctx.run(AnalysisConfig(GitDiff(GitDiffStrategy.HUNKS)))
    verdict = ctx.finish_analysis()
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
import logging
from typing import TYPE_CHECKING

from pytest_difftests.analysis.dirty import GitDiff, GitDiffStrategy
from pytest_difftests.coverage.index import (
    FullIndex,
    Identity,
    IgnoreRegistryPaths,
    IndexCompilerConfig,
    IndexSize,
    TestIndex,
    compile_index,
)
from pytest_difftests.errors import AnalysisStateError


if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path

    from pytest_difftests.analysis.dirty import DirtyAlgorithm
    from pytest_difftests.coverage.index import FileFilterPolicy, TestInfo
    from pytest_difftests.coverage.model import CoverageData


logger = logging.getLogger(__name__)


class AnalysisVerdict(Enum):
    """Outcome of an analysis.

    Attributes:
        CLEAN: The recorded result is still valid.
        DIRTY: The test must be rerun.
    """

    CLEAN = 'clean'
    DIRTY = 'dirty'


@dataclass(frozen=True)
class AnalysisConfig:
    """How an analysis decides.

    Attributes:
        dirty_algorithm: The dirty-detection strategy.
        error_on_invalid_config: Raise when the strategy can't run on the
            index (hunk matching on a files-only index). When False, fall back
            to file-level matching and log a warning.
    """

    dirty_algorithm: DirtyAlgorithm
    error_on_invalid_config: bool = True


class AnalysisContext:
    """Single-use state machine producing one verdict.

    Args:
        index: The index to analyze.
    """

    def __init__(self, index: TestIndex) -> None:
        self._index = index
        self._verdict: AnalysisVerdict | None = None

    @classmethod
    def from_index(cls, index: TestIndex) -> AnalysisContext:
        """Create a context over an already loaded index."""
        return cls(index)

    @classmethod
    def from_index_file(cls, path: Path) -> AnalysisContext:
        """Create a context over the index stored at ``path``."""
        return cls(TestIndex.read(path))

    @classmethod
    def from_coverage(
        cls,
        coverage: CoverageData,
        *,
        test_run: datetime,
        test_info: TestInfo,
        file_filter: FileFilterPolicy | None = None,
    ) -> AnalysisContext:
        """Create a context over freshly exported coverage.

        The coverage is compiled in memory to a full index with paths kept as
        exported, so every algorithm can run on it.
        """
        config = IndexCompilerConfig(
            file_filter=file_filter if file_filter is not None else IgnoreRegistryPaths(),
            path_rewrite=Identity(),
            granularity=IndexSize.FULL,
            scrub_binary_path=False,
        )
        return cls(compile_index(coverage, config, test_run=test_run, test_info=test_info))

    @property
    def index(self) -> TestIndex:
        """Return the index under analysis."""
        return self._index

    @property
    def is_finished(self) -> bool:
        """Return True once ``run`` has produced a verdict."""
        return self._verdict is not None

    def run(self, config: AnalysisConfig) -> None:
        """Run the dirty algorithm and store the verdict.

        Raises:
            AnalysisStateError: If the context was already run.
            IndexGranularityError: If the algorithm can't run on this index
                and ``config.error_on_invalid_config`` is set.
        """
        if self._verdict is not None:
            msg = 'analysis already ran; a context can only be run once'
            raise AnalysisStateError(msg)

        algorithm = config.dirty_algorithm
        if (
            not config.error_on_invalid_config
            and isinstance(algorithm, GitDiff)
            and algorithm.strategy is GitDiffStrategy.HUNKS
            and not isinstance(self._index, FullIndex)
            and self._index.files
        ):
            logger.warning('Index has no regions, falling back to file-level git diff')
            algorithm = replace(algorithm, strategy=GitDiffStrategy.FILES_ONLY)

        logger.debug('Running %r on %d files', algorithm, len(self._index.files))
        dirty = algorithm.is_dirty(self._index)
        self._verdict = AnalysisVerdict.DIRTY if dirty else AnalysisVerdict.CLEAN
        logger.debug('Analysis finished: %s', self._verdict.value)

    def finish_analysis(self) -> AnalysisVerdict:
        """Return the verdict.

        Raises:
            AnalysisStateError: If ``run`` was not called.
        """
        if self._verdict is None:
            msg = 'analysis has not run yet'
            raise AnalysisStateError(msg)
        return self._verdict
