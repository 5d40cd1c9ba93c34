"""Exception hierarchy for pytest-difftests.

Every error raised on purpose by the package derives from DifftestsError so
callers (and the CLI) can tell expected failures from bugs. The hierarchy
follows three families:

- Configuration errors: the caller asked for something that cannot work with
  the data at hand (e.g. hunk matching against a files-only index).
- State errors: an object was used out of order (running an analysis twice,
  exporting coverage from a cleaned directory).
- I/O and parse errors: missing or malformed files, external tool failures,
  version mismatches. These carry the offending path when there is one.
"""

from __future__ import annotations

from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from pathlib import Path


class DifftestsError(Exception):
    """Base class for all pytest-difftests errors."""


class ConfigurationError(DifftestsError):
    """The requested configuration cannot be satisfied."""


class IndexGranularityError(ConfigurationError):
    """A region-level algorithm was requested against a files-only index."""


class ResolverConfigError(ConfigurationError):
    """An index strategy needs an index path resolver, but none was given."""


class AnalysisStateError(DifftestsError, AssertionError):
    """An analysis context was driven out of order.

    Subclasses AssertionError: this is an internal invariant violation,
    not something a user can fix with different input.
    """


class DifftestCleanedError(DifftestsError):
    """Intermediate coverage artifacts were already deleted from a directory."""

    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f'difftest directory was cleaned, coverage cannot be exported: {path}')


class DifftestIOError(DifftestsError):
    """An I/O or parse failure tied to a specific path."""

    def __init__(self, message: str, path: Path | None = None) -> None:
        self.path = path
        if path is not None:
            message = f'{message}: {path}'
        super().__init__(message)


class MissingFileError(DifftestIOError):
    """A file required by a difftest or group directory does not exist."""


class IndexFileError(DifftestIOError):
    """An index file could not be read or decoded."""


class CoverageParseError(DifftestIOError):
    """Coverage export data does not match the expected schema."""


class VersionMismatchError(DifftestsError):
    """Producer and consumer versions differ."""

    def __init__(self, found: str, expected: str, path: Path | None = None) -> None:
        self.found = found
        self.expected = expected
        self.path = path
        where = f' ({path})' if path is not None else ''
        super().__init__(f'version mismatch{where}: found {found!r}, expected {expected!r}')


class MultipleBinariesError(DifftestsError):
    """The constituents of a group were produced by different binaries."""

    def __init__(self, binaries: list[str]) -> None:
        self.binaries = binaries
        super().__init__(f'a group must use a single binary, found: {", ".join(binaries)}')


class ExternalToolError(DifftestsError):
    """An external tool (llvm-profdata, llvm-cov) failed."""

    def __init__(self, command: list[str], returncode: int | None, stderr: str = '') -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip() or 'no output'
        super().__init__(f'{command[0]} failed (exit code {returncode}): {detail}')


class GitDiffError(DifftestsError):
    """The git repository could not be opened or diffed."""


class RerunProtocolError(DifftestsError):
    """The rerunner received an invalid invocation or progress record."""


class RerunFailedError(DifftestsError):
    """The rerunner exited unsuccessfully or reported an error state."""
