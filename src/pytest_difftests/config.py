"""Configuration loading for pytest-difftests.

This module reads configuration from the pyproject.toml [tool.difftests]
section, merges it with command line values and turns the result into the
objects analysis runs with.

Example pyproject.toml section:

    [tool.difftests]
    dir = ".difftests"
    index_root = ".difftests-index"
    index_strategy = "always"
    algo = "git-diff-hunks"
    full_index = true
    flatten_files_to_repo_root = true
"""

from __future__ import annotations

from dataclasses import dataclass, fields
import tomllib
from typing import TYPE_CHECKING, Any

from pytest_difftests.analysis.dirty import FileSystemMtimes, GitDiff, GitDiffStrategy
from pytest_difftests.analysis.git import GitRepoDiffSource
from pytest_difftests.coverage.index import (
    AcceptAll,
    Chain,
    Identity,
    IgnoreRegistryPaths,
    IndexCompilerConfig,
    IndexSize,
    PlatformSlashNormalize,
    RelativeToRoot,
)
from pytest_difftests.difftest.ops import IndexStrategy
from pytest_difftests.errors import ConfigurationError


if TYPE_CHECKING:
    from pathlib import Path

    from pytest_difftests.analysis.dirty import DirtyAlgorithm
    from pytest_difftests.coverage.index import PathRewritePolicy


DEFAULT_DIR = '.difftests'
ALGORITHMS = ('fs-mtime', 'git-diff-files', 'git-diff-hunks')
INDEX_STRATEGIES = tuple(strategy.value for strategy in IndexStrategy)


@dataclass
class DifftestsConfig:
    """Configuration for pytest-difftests.

    All fields are optional and default to None, meaning the command line
    or built-in default applies.

    Attributes:
        dir: Root directory difftests are recorded into.
        index_root: Root directory indexes are mirrored into.
        index_strategy: One of ``always``, ``if-available``, ``never``,
            ``always-and-clean``.
        algo: One of ``fs-mtime``, ``git-diff-files``, ``git-diff-hunks``.
        full_index: Compile indexes with regions.
        flatten_files_to_repo_root: Store index paths relative to the repo root.
        remove_bin_path: Blank the binary path in indexes.
        ignore_registry_files: Leave dependency registry files out of indexes.
        runner: Rerunner command for ``--action=rerun-dirty``.
    """

    dir: str | None = None
    index_root: str | None = None
    index_strategy: str | None = None
    algo: str | None = None
    full_index: bool | None = None
    flatten_files_to_repo_root: bool | None = None
    remove_bin_path: bool | None = None
    ignore_registry_files: bool | None = None
    runner: str | None = None

    def __post_init__(self) -> None:
        if self.algo is not None and self.algo not in ALGORITHMS:
            msg = f'invalid algo {self.algo!r}, expected one of {", ".join(ALGORITHMS)}'
            raise ConfigurationError(msg)
        if self.index_strategy is not None and self.index_strategy not in INDEX_STRATEGIES:
            msg = f'invalid index_strategy {self.index_strategy!r}, expected one of {", ".join(INDEX_STRATEGIES)}'
            raise ConfigurationError(msg)


def load_config(rootdir: Path) -> DifftestsConfig:
    """Load configuration from pyproject.toml.

    Reads the [tool.difftests] section from pyproject.toml in the given
    directory. Returns default configuration if the file or section does
    not exist. Unknown keys are ignored.

    Args:
        rootdir: Directory containing pyproject.toml.

    Returns:
        DifftestsConfig with values from pyproject.toml or defaults.

    Raises:
        ConfigurationError: If a value is invalid.
    """
    pyproject_path = rootdir / 'pyproject.toml'

    if not pyproject_path.exists():
        return DifftestsConfig()

    with pyproject_path.open('rb') as f:
        data = tomllib.load(f)

    tool_config: dict[str, Any] = data.get('tool', {}).get('difftests', {})
    known = {field.name for field in fields(DifftestsConfig)}
    values = {key.replace('-', '_'): value for key, value in tool_config.items()}
    return DifftestsConfig(**{key: value for key, value in values.items() if key in known})


def merge_configs(file_config: DifftestsConfig, cli_config: DifftestsConfig) -> DifftestsConfig:
    """Merge CLI arguments with file configuration.

    CLI values take precedence over pyproject.toml values. None and empty
    strings are treated as not provided.

    Args:
        file_config: Configuration loaded from pyproject.toml.
        cli_config: Configuration from the command line.

    Returns:
        DifftestsConfig with CLI values overriding file config where provided.
    """
    merged: dict[str, Any] = {}
    for field in fields(DifftestsConfig):
        cli_value = getattr(cli_config, field.name)
        provided = cli_value is not None and not (isinstance(cli_value, str) and not cli_value.strip())
        merged[field.name] = cli_value if provided else getattr(file_config, field.name)
    return DifftestsConfig(**merged)


def make_dirty_algorithm(
    algo: str,
    commit: str | None = None,
    root: Path | None = None,
    *,
    flatten_files_to_repo_root: bool = False,
) -> DirtyAlgorithm:
    """Build the dirty algorithm named ``algo``.

    Args:
        algo: ``fs-mtime``, ``git-diff-files`` or ``git-diff-hunks``.
        commit: Base commit of the git algorithms. Defaults to HEAD.
        root: Directory relative index paths resolve against (fs-mtime), or
            a path inside the repository (git algorithms).
        flatten_files_to_repo_root: Index paths are relative to the working
            tree root of the repository containing ``root``; fs-mtime
            resolves them against that root.

    Raises:
        ConfigurationError: If ``algo`` is unknown.
        GitDiffError: If paths are flattened but no repository is found.
    """
    if flatten_files_to_repo_root:
        root = GitRepoDiffSource(root).root
    if algo == 'fs-mtime':
        return FileSystemMtimes(root=root)
    if algo == 'git-diff-files':
        return GitDiff(strategy=GitDiffStrategy.FILES_ONLY, commit=commit, repo_path=root)
    if algo == 'git-diff-hunks':
        return GitDiff(strategy=GitDiffStrategy.HUNKS, commit=commit, repo_path=root)
    msg = f'invalid algo {algo!r}, expected one of {", ".join(ALGORITHMS)}'
    raise ConfigurationError(msg)


def make_compiler_config(
    *,
    full_index: bool = False,
    flatten_files_to_repo_root: bool = False,
    remove_bin_path: bool = True,
    ignore_registry_files: bool = True,
    repo_path: Path | None = None,
) -> IndexCompilerConfig:
    """Build the index compiler configuration from flat options.

    With ``flatten_files_to_repo_root``, paths are stored relative to the
    working tree root of the repository containing ``repo_path`` (default:
    the current directory) with forward slashes, so indexes are portable
    across checkouts and platforms.
    """
    path_rewrite: PathRewritePolicy = Identity()
    if flatten_files_to_repo_root:
        repo_root = GitRepoDiffSource(repo_path).root
        path_rewrite = Chain((RelativeToRoot(repo_root), PlatformSlashNormalize()))
    return IndexCompilerConfig(
        file_filter=IgnoreRegistryPaths() if ignore_registry_files else AcceptAll(),
        path_rewrite=path_rewrite,
        granularity=IndexSize.FULL if full_index else IndexSize.TINY,
        scrub_binary_path=remove_bin_path,
    )
