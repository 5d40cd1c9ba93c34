"""Version-control collaborator for the diff-based dirty algorithms.

The dirty algorithms only need two questions answered:

- which files differ between a base commit and the working tree, and
- which line ranges of one file differ, in working-tree numbering.

GitDiffSource is that narrow interface. GitRepoDiffSource answers it with
GitPython, parsing ``git diff -U0`` output with unidiff. All paths it
returns are absolute posix paths under the repository working tree, so they
compare directly against normalized index paths.
"""

from __future__ import annotations

from pathlib import Path
import sys
from typing import NamedTuple

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo
from unidiff import PatchSet
from unidiff.errors import UnidiffParseError

from pytest_difftests.errors import GitDiffError


DEFAULT_COMMIT = 'HEAD'


class LineRange(NamedTuple):
    """A closed range of line numbers ``[start, end]``."""

    start: int
    end: int

    def overlaps(self, start: int, end: int) -> bool:
        """Return True if ``[start, end]`` shares at least one line with this range."""
        return self.start <= end and start <= self.end


WHOLE_FILE = LineRange(1, sys.maxsize)


def hunk_line_range(target_start: int, target_length: int) -> LineRange:
    """Convert a hunk's target side to a closed line range.

    A pure deletion (``target_length == 0``) has no lines in the new file;
    git reports the line preceding the removed block as ``target_start``.
    Both neighbours of the removed block are treated as changed, so a region
    ending right before the deletion or starting right after it is affected.

    Example:
        >>> hunk_line_range(4, 3)
        LineRange(start=4, end=6)
        >>> hunk_line_range(4, 0)
        LineRange(start=4, end=5)
    """
    if target_length == 0:
        start = max(target_start, 1)
        return LineRange(start, start + 1)
    return LineRange(target_start, target_start + target_length - 1)


class GitDiffSource:
    """Answers file- and hunk-level diff questions against a base commit."""

    @property
    def root(self) -> Path:
        """Return the working tree root that relative index paths resolve against."""
        raise NotImplementedError

    def changed_files(self, commit: str | None) -> set[str]:
        """Return absolute posix paths of files that differ from ``commit``.

        Both sides of renames and deleted files are included.
        """
        raise NotImplementedError

    def changed_hunks(self, commit: str | None, path: str) -> list[LineRange]:
        """Return the changed line ranges of ``path`` in working-tree numbering.

        A file that no longer exists in the working tree, or did not exist at
        ``commit``, is reported as WHOLE_FILE.
        """
        raise NotImplementedError


class GitRepoDiffSource(GitDiffSource):
    """GitDiffSource backed by a real repository.

    Args:
        repo_path: Any path inside the repository. Defaults to the current
            working directory.

    Raises:
        GitDiffError: If no repository can be opened at ``repo_path``.
    """

    def __init__(self, repo_path: Path | str | None = None) -> None:
        location = Path(repo_path) if repo_path is not None else Path.cwd()
        try:
            self._repo = Repo(location, search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError) as exc:
            msg = f'not a git repository: {location}'
            raise GitDiffError(msg) from exc
        if self._repo.working_tree_dir is None:
            msg = f'repository has no working tree: {location}'
            raise GitDiffError(msg)
        self._root = Path(self._repo.working_tree_dir).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def _absolute(self, name: str) -> str:
        return (self._root / name).as_posix()

    def _diff(self, *args: str) -> str:
        try:
            return self._repo.git.diff(*args)
        except GitCommandError as exc:
            msg = f'git diff {" ".join(args)} failed: {exc.stderr.strip() if exc.stderr else exc}'
            raise GitDiffError(msg) from exc

    def changed_files(self, commit: str | None) -> set[str]:
        names = self._diff(commit or DEFAULT_COMMIT, '--name-only', '--no-renames').splitlines()
        changed = {self._absolute(name) for name in names if name}
        # Untracked files are additions relative to any commit
        changed.update(self._absolute(name) for name in self._repo.untracked_files)
        return changed

    def changed_hunks(self, commit: str | None, path: str) -> list[LineRange]:
        relative = Path(path).relative_to(self._root).as_posix() if Path(path).is_absolute() else path
        if relative in self._repo.untracked_files:
            return [WHOLE_FILE]
        text = self._diff(commit or DEFAULT_COMMIT, '-U0', '--no-renames', '--no-color', '--', relative)
        if not text.strip():
            return []
        try:
            patch = PatchSet(text)
        except UnidiffParseError as exc:
            msg = f'cannot parse diff of {relative}: {exc}'
            raise GitDiffError(msg) from exc

        ranges: list[LineRange] = []
        for patched_file in patch:
            if patched_file.is_removed_file or patched_file.is_added_file:
                return [WHOLE_FILE]
            ranges.extend(hunk_line_range(hunk.target_start, hunk.target_length) for hunk in patched_file)
        return ranges
