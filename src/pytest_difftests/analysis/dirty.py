"""Dirty detection: is a recorded test result still valid?

Three strategies, from cheapest to most precise:

- FileSystemMtimes: any touched file modified after the test run.
- GitDiff(FILES_ONLY): any touched file differs from the base commit.
- GitDiff(HUNKS): any executed region overlaps a changed line range.

Every strategy only looks at files the test actually executed, so a change
to untouched code can never make a test dirty.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from pytest_difftests.analysis.git import GitDiffSource, GitRepoDiffSource
from pytest_difftests.coverage.index import FullIndex
from pytest_difftests.errors import IndexGranularityError


if TYPE_CHECKING:
    from pytest_difftests.coverage.index import TestIndex


logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class DirtyAlgorithm:
    """Base class for dirty-detection strategies."""

    def is_dirty(self, index: TestIndex) -> bool:
        """Return True if ``index`` is stale under this strategy."""
        raise NotImplementedError


@dataclass(frozen=True)
class FileSystemMtimes(DirtyAlgorithm):
    """Dirty if any touched file is missing or newer than the test run.

    Attributes:
        root: Directory relative index paths resolve against. Defaults to
            the current working directory.
    """

    root: Path | None = None

    def is_dirty(self, index: TestIndex) -> bool:
        root = self.root if self.root is not None else Path.cwd()
        watermark_ns = (index.test_run - _EPOCH) // timedelta(microseconds=1) * 1000
        for name in index.files:
            path = root / name
            try:
                mtime_ns = path.stat().st_mtime_ns
            except FileNotFoundError:
                logger.debug('%s is missing, dirty', path)
                return True
            if mtime_ns > watermark_ns:
                logger.debug('%s modified after the test run, dirty', path)
                return True
        return False


class GitDiffStrategy(Enum):
    """Granularity of git-diff based detection.

    Attributes:
        FILES_ONLY: Compare touched files against changed files.
        HUNKS: Compare executed regions against changed line ranges.
    """

    FILES_ONLY = 'files-only'
    HUNKS = 'hunks'


@dataclass(frozen=True)
class GitDiff(DirtyAlgorithm):
    """Dirty if the working tree differs from ``commit`` where the test ran.

    Attributes:
        strategy: File- or hunk-level comparison.
        commit: Base revision. Defaults to HEAD.
        repo_path: Any path inside the repository. Defaults to the cwd.
        source: Diff source override; a GitRepoDiffSource is opened when None.
    """

    strategy: GitDiffStrategy = GitDiffStrategy.FILES_ONLY
    commit: str | None = None
    repo_path: Path | None = None
    source: GitDiffSource | None = field(default=None, compare=False, repr=False)

    def diff_source(self) -> GitDiffSource:
        """Return the injected source, or open the repository at ``repo_path``."""
        if self.source is not None:
            return self.source
        return GitRepoDiffSource(self.repo_path)

    def is_dirty(self, index: TestIndex) -> bool:
        if self.strategy is GitDiffStrategy.HUNKS and not isinstance(index, FullIndex) and index.files:
            msg = 'hunk-level git diff needs a full index (compiled with regions), got a files-only index'
            raise IndexGranularityError(msg)
        if not index.files:
            return False

        source = self.diff_source()
        changed = source.changed_files(self.commit)
        if self.strategy is GitDiffStrategy.FILES_ONLY:
            return self._files_dirty(index, source.root, changed)
        return self._hunks_dirty(index, source, changed)  # type: ignore[arg-type]

    @staticmethod
    def _files_dirty(index: TestIndex, root: Path, changed: set[str]) -> bool:
        for name in index.files:
            absolute = normalize_path(name, root)
            if absolute in changed:
                logger.debug('%s changed, dirty', absolute)
                return True
        return False

    def _hunks_dirty(self, index: FullIndex, source: GitDiffSource, changed: set[str]) -> bool:
        for name, regions in index.regions_by_file().items():
            absolute = normalize_path(name, source.root)
            if absolute not in changed:
                continue
            hunks = source.changed_hunks(self.commit, absolute)
            for region in regions:
                for hunk in hunks:
                    if hunk.overlaps(region.l1, region.l2):
                        logger.debug(
                            '%s: region %d-%d overlaps change %d-%d, dirty',
                            absolute,
                            region.l1,
                            region.l2,
                            hunk.start,
                            hunk.end,
                        )
                        return True
            logger.debug('%s changed outside executed regions', absolute)
        return False


def normalize_path(name: str, root: Path) -> str:
    """Return ``name`` as an absolute posix path, resolving relative paths against ``root``.

    Example:
        >>> normalize_path('src/lib.rs', Path('/repo'))
        '/repo/src/lib.rs'
    """
    path = Path(name)
    if not path.is_absolute():
        path = root / path
    return path.resolve().as_posix()


def is_dirty(index: TestIndex, algorithm: DirtyAlgorithm) -> bool:
    """Decide whether ``index`` is stale under ``algorithm``.

    Args:
        index: The index to check.
        algorithm: The dirty-detection strategy.

    Returns:
        True if the test must be rerun.

    Raises:
        IndexGranularityError: If hunk matching is requested on a files-only
            index with touched files.
    """
    return algorithm.is_dirty(index)
