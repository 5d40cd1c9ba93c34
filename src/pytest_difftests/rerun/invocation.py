"""Rerun invocations: what an external rerunner must rerun.

The caller writes the dirty tests and groups to a temporary JSON file and
starts the rerunner with that file as its only argument and the producing
version in ``DIFFTESTS_VERSION``:

    {"tests": [{"bin_path": "", "extra": {"nodeid": "tests/test_a.py::test_x"}}],
     "groups": [{"bin_path": "", "extra": {...}, "name": "parser"}]}

Only identification travels; no coverage data.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import os
from pathlib import Path
import tempfile
from typing import TYPE_CHECKING, Any

from pytest_difftests import __version__
from pytest_difftests.coverage.index import TestInfo
from pytest_difftests.errors import RerunProtocolError, VersionMismatchError


if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from pytest_difftests.difftest.ops import AnalyzeResult


logger = logging.getLogger(__name__)

VERSION_ENV_VAR = 'DIFFTESTS_VERSION'


@dataclass(frozen=True)
class RerunInvocation:
    """Tests and groups to rerun.

    Attributes:
        tests: Dirty single tests.
        groups: Dirty groups.
    """

    tests: list[TestInfo] = field(default_factory=list)
    groups: list[TestInfo] = field(default_factory=list)

    @classmethod
    def from_results(cls, results: Iterable[AnalyzeResult]) -> RerunInvocation:
        """Collect the dirty results, split into tests and groups."""
        tests: list[TestInfo] = []
        groups: list[TestInfo] = []
        for result in results:
            if not result.is_dirty:
                continue
            (groups if result.test_info.is_group else tests).append(result.test_info)
        return cls(tests=tests, groups=groups)

    def is_empty(self) -> bool:
        """Return True if there is nothing to rerun."""
        return not self.tests and not self.groups

    def __len__(self) -> int:
        return len(self.tests) + len(self.groups)

    def to_dict(self) -> dict[str, Any]:
        """Return the invocation file JSON object."""
        return {
            'tests': [info.to_dict() for info in self.tests],
            'groups': [info.to_dict() for info in self.groups],
        }

    @classmethod
    def from_dict(cls, data: Any) -> RerunInvocation:
        """Decode an invocation file JSON object.

        Raises:
            RerunProtocolError: If the object is malformed.
        """
        if not isinstance(data, dict):
            msg = 'invocation must be a JSON object'
            raise RerunProtocolError(msg)
        try:
            return cls(
                tests=[TestInfo.from_dict(info) for info in data.get('tests', [])],
                groups=[TestInfo.from_dict(info) for info in data.get('groups', [])],
            )
        except (AttributeError, TypeError, ValueError) as exc:
            msg = f'malformed invocation: {exc}'
            raise RerunProtocolError(msg) from exc

    def write_invocation_file(self, directory: Path | None = None) -> Path:
        """Write the invocation to a new temporary file and return its path.

        The caller owns the file and should delete it once the rerunner exits.
        """
        fd, name = tempfile.mkstemp(prefix='difftests-invocation-', suffix='.json', dir=directory)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f)
        logger.debug('Wrote invocation with %d entries to %s', len(self), name)
        return Path(name)


def read_invocation_from_command_line(
    argv: Sequence[str],
    environ: Mapping[str, str] | None = None,
) -> RerunInvocation:
    """Read the invocation a rerunner was started with.

    Args:
        argv: Arguments after the program name; the first is the invocation file.
        environ: Environment to read the version from. Defaults to os.environ.

    Raises:
        RerunProtocolError: If the version variable or the file argument is
            missing, or the file is malformed.
        VersionMismatchError: If the caller is another version.
    """
    environ = os.environ if environ is None else environ
    found = environ.get(VERSION_ENV_VAR)
    if found is None:
        msg = f'missing environment variable {VERSION_ENV_VAR}'
        raise RerunProtocolError(msg)
    if found != __version__:
        raise VersionMismatchError(found, __version__)
    if not argv:
        msg = 'missing invocation file argument'
        raise RerunProtocolError(msg)

    path = Path(argv[0])
    try:
        raw = json.loads(path.read_text(encoding='utf-8'))
    except OSError as exc:
        msg = f'cannot read invocation file {path}: {exc.strerror}'
        raise RerunProtocolError(msg) from exc
    except json.JSONDecodeError as exc:
        msg = f'invocation file {path} is not valid JSON: {exc}'
        raise RerunProtocolError(msg) from exc
    return RerunInvocation.from_dict(raw)
