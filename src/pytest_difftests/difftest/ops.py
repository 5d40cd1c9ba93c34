"""High-level analysis operations.

These tie discovery, merging, index compilation and analysis together under
an index strategy:

- NEVER: merge the profiles and analyze the exported coverage.
- IF_AVAILABLE: use an existing index, else behave like NEVER.
- ALWAYS: use an existing index, else compile one, persist it and use it.
- ALWAYS_AND_CLEAN: like ALWAYS, and clean the directory after persisting.

``compile_index_and_clean`` does the ALWAYS_AND_CLEAN work right after a
recording ends, without analyzing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import TYPE_CHECKING, Any

from pytest_difftests.analysis.context import AnalysisConfig, AnalysisContext, AnalysisVerdict
from pytest_difftests.coverage.index import IndexCompilerConfig, discover_indexes
from pytest_difftests.difftest.core import Fixed, Remap, discover_difftests
from pytest_difftests.errors import ResolverConfigError


if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from pytest_difftests.analysis.dirty import DirtyAlgorithm
    from pytest_difftests.coverage.index import TestInfo
    from pytest_difftests.difftest.core import Difftest, IndexPathResolver, ProfiledDirectory
    from pytest_difftests.difftest.group import DifftestGroup
    from pytest_difftests.difftest.llvm import LlvmTools


logger = logging.getLogger(__name__)


class IndexStrategy(Enum):
    """When analysis uses, builds and persists indexes."""

    ALWAYS = 'always'
    IF_AVAILABLE = 'if-available'
    NEVER = 'never'
    ALWAYS_AND_CLEAN = 'always-and-clean'

    @property
    def needs_resolver(self) -> bool:
        """Return True if the strategy reads or writes index files."""
        return self is not IndexStrategy.NEVER


@dataclass(frozen=True)
class AnalyzeResult:
    """Verdict for one test or group.

    Attributes:
        test_info: Identification of the test or group.
        verdict: CLEAN or DIRTY.
        dir: The difftest directory, or None when analyzed from an index alone.
    """

    test_info: TestInfo
    verdict: AnalysisVerdict
    dir: Path | None = None

    @property
    def is_dirty(self) -> bool:
        """Return True if the test must be rerun."""
        return self.verdict is AnalysisVerdict.DIRTY

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form used in batch reports."""
        return {
            'test_info': self.test_info.to_dict(),
            'verdict': self.verdict.value,
            'dir': str(self.dir) if self.dir is not None else None,
        }


@dataclass(frozen=True)
class AnalysisOptions:
    """Everything an analysis operation needs besides the target.

    Attributes:
        algorithm: Dirty-detection strategy.
        index_strategy: When indexes are used and built.
        compiler: Index compiler configuration for freshly built indexes.
        force: Re-merge profiles even if a merged profile exists.
        other_binaries: Further binaries to export coverage for.
        tools: LLVM tools; resolved from the environment when None.
    """

    algorithm: DirtyAlgorithm
    index_strategy: IndexStrategy = IndexStrategy.NEVER
    compiler: IndexCompilerConfig = field(default_factory=IndexCompilerConfig)
    force: bool = False
    other_binaries: Sequence[str] = ()
    tools: LlvmTools | None = None

    def analysis_config(self) -> AnalysisConfig:
        """Return the context configuration for this analysis."""
        return AnalysisConfig(dirty_algorithm=self.algorithm, error_on_invalid_config=True)


def index_resolver_for(strategy: IndexStrategy, root: Path | None, index_root: Path | None) -> IndexPathResolver | None:
    """Build the resolver ``strategy`` needs.

    Raises:
        ResolverConfigError: If the strategy needs indexes but ``root`` or
            ``index_root`` is missing.
    """
    if not strategy.needs_resolver:
        return None
    if index_root is None:
        msg = f'index strategy {strategy.value!r} needs an index root'
        raise ResolverConfigError(msg)
    if root is None:
        msg = f'index strategy {strategy.value!r} needs the difftests root directory'
        raise ResolverConfigError(msg)
    return Remap(from_root=root, to_root=index_root)


def _open_context(
    target: ProfiledDirectory,
    options: AnalysisOptions,
    resolver: IndexPathResolver | None,
) -> AnalysisContext:
    strategy = options.index_strategy
    if strategy.needs_resolver and resolver is None:
        msg = f'index strategy {strategy.value!r} needs an index path resolver'
        raise ResolverConfigError(msg)

    if strategy is not IndexStrategy.NEVER:
        existing = target.read_index()
        if existing is not None:
            logger.debug('Using existing index %s', target.index_path)
            return AnalysisContext.from_index(existing)

    target.merge_profraws(force=options.force, tools=options.tools)
    if strategy in (IndexStrategy.NEVER, IndexStrategy.IF_AVAILABLE):
        return target.start_analysis(other_binaries=options.other_binaries, tools=options.tools)

    index = target.compile_index(options.compiler, other_binaries=options.other_binaries, tools=options.tools)
    index_path = resolver.resolve(target.dir) if resolver is not None else None
    if index_path is not None:
        index.write(index_path)
        target.index_path = index_path
        logger.info('Wrote index %s', index_path)
        if strategy is IndexStrategy.ALWAYS_AND_CLEAN:
            target.clean()
    return AnalysisContext.from_index(index)


def _analyze(
    target: ProfiledDirectory,
    options: AnalysisOptions,
    resolver: IndexPathResolver | None,
) -> AnalyzeResult:
    context = _open_context(target, options, resolver)
    context.run(options.analysis_config())
    verdict = context.finish_analysis()
    logger.info('%s: %s', target.dir, verdict.value)
    return AnalyzeResult(test_info=target.test_info(), verdict=verdict, dir=target.dir)


def analyze_difftest(
    difftest: Difftest,
    options: AnalysisOptions,
    resolver: IndexPathResolver | None = None,
) -> AnalyzeResult:
    """Analyze one difftest under ``options.index_strategy``.

    Raises:
        ResolverConfigError: If the strategy needs a resolver and none was given.
    """
    return _analyze(difftest, options, resolver)


def analyze_group(
    group: DifftestGroup,
    options: AnalysisOptions,
    resolver: IndexPathResolver | None = None,
) -> AnalyzeResult:
    """Analyze one group under ``options.index_strategy``.

    Raises:
        ResolverConfigError: If the strategy needs a resolver and none was given.
    """
    return _analyze(group, options, resolver)


def analyze_all(
    root: Path,
    options: AnalysisOptions,
    *,
    index_root: Path | None = None,
    ignore_incompatible: bool = False,
) -> list[AnalyzeResult]:
    """Analyze every difftest under ``root``.

    Args:
        root: Directory holding the difftests.
        options: Analysis options.
        index_root: Where indexes are mirrored; required unless the index
            strategy is NEVER.
        ignore_incompatible: Skip directories recorded by another version.

    Returns:
        One result per difftest, in discovery order.
    """
    resolver = index_resolver_for(options.index_strategy, root, index_root)
    return [
        analyze_difftest(difftest, options, resolver)
        for difftest in discover_difftests(root, ignore_incompatible=ignore_incompatible, resolver=resolver)
    ]


def analyze_all_from_index(index_root: Path, algorithm: DirtyAlgorithm) -> list[AnalyzeResult]:
    """Analyze every index stored under ``index_root``.

    No difftest directory is needed, so indexes built on another machine
    can be analyzed.
    """
    results = []
    config = AnalysisConfig(dirty_algorithm=algorithm, error_on_invalid_config=True)
    for path, index in discover_indexes(index_root):
        context = AnalysisContext.from_index(index)
        context.run(config)
        verdict = context.finish_analysis()
        logger.debug('%s: %s', path, verdict.value)
        results.append(AnalyzeResult(test_info=index.test_info, verdict=verdict))
    return results


@dataclass(frozen=True)
class CompileIndexAndCleanConfig:
    """How a finished recording turns into an index.

    Attributes:
        resolver: Where the index of a recorded directory is written.
        compiler: Index compiler configuration.
        other_binaries: Further binaries to export coverage for.
        tools: LLVM tools; resolved from the environment when None.
    """

    resolver: IndexPathResolver
    compiler: IndexCompilerConfig = field(default_factory=IndexCompilerConfig)
    other_binaries: Sequence[str] = ()
    tools: LlvmTools | None = None

    @classmethod
    def from_roots(cls, index_root: Path, difftests_root: Path, **kwargs: Any) -> CompileIndexAndCleanConfig:
        """Mirror the difftests tree under ``index_root``."""
        return cls(resolver=Remap(from_root=difftests_root, to_root=index_root), **kwargs)

    @classmethod
    def to_path(cls, index_path: Path, **kwargs: Any) -> CompileIndexAndCleanConfig:
        """Always write the index to ``index_path``."""
        return cls(resolver=Fixed(index_path), **kwargs)


def compile_index_and_clean(target: ProfiledDirectory, config: CompileIndexAndCleanConfig) -> Path:
    """Merge, compile and persist the index of ``target``, then clean it.

    Once cleaned, the directory can only be analyzed through its index.

    Returns:
        The path the index was written to.

    Raises:
        ResolverConfigError: If the resolver has no index path for ``target``.
    """
    index_path = config.resolver.resolve(target.dir)
    if index_path is None:
        msg = f'no index path for {target.dir}'
        raise ResolverConfigError(msg)
    target.merge_profraws(tools=config.tools)
    index = target.compile_index(config.compiler, other_binaries=config.other_binaries, tools=config.tools)
    index.write(index_path)
    target.index_path = index_path
    target.clean()
    logger.info('Wrote index %s and cleaned %s', index_path, target.dir)
    return index_path
