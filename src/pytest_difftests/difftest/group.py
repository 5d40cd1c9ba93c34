"""Groups: several test runs accounted as one coverage unit.

When many tests share one slow-starting instrumented binary, or a test
spawns children whose counters can't be attributed to it alone, the tests
record into one shared group directory:

    .difftests/.groups/parser/
        group_self.json        {"name": "parser", "bin_path": "...", "extra": {...}}
        group_first_test_run   empty; its mtime is the group watermark
        self.profraw           shared self profile
        1234_5678.profraw      child profiles of every member
        difftests_version

All profiles are merged into ``group.profdata`` and indexed as one index
named after the group. The watermark is the first member's start time, the
safe lower bound for staleness checks.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pytest_difftests.coverage.index import TestInfo
from pytest_difftests.difftest.core import (
    SELF_PROFILE_FILENAME,
    ProfiledDirectory,
    check_version,
    discover_difftests,
    file_mtime,
    read_json_file,
    warn_if_older,
)
from pytest_difftests.errors import MissingFileError, MultipleBinariesError


if TYPE_CHECKING:
    from collections.abc import Sequence
    from datetime import datetime
    from pathlib import Path

    from pytest_difftests.difftest.core import IndexPathResolver


logger = logging.getLogger(__name__)

GROUP_SELF_JSON_FILENAME = 'group_self.json'
GROUP_FIRST_TEST_RUN_FILENAME = 'group_first_test_run'
GROUP_PROFDATA_FILENAME = 'group.profdata'
GROUP_CLEANED_FILENAME = 'group_cleaned'


class DifftestGroup(ProfiledDirectory):
    """A discovered group directory.

    Use ``discover_group`` or ``group_from_difftests`` to create one.

    Attributes:
        name: Group name.
        bin_path: The one binary every member ran.
        extra: Caller-supplied identification payload.
        other_bin_paths: Further binaries to export coverage for.
        mtime: The group watermark.
    """

    profdata_filename = GROUP_PROFDATA_FILENAME
    cleaned_filename = GROUP_CLEANED_FILENAME

    def __init__(
        self,
        directory: Path,
        *,
        name: str,
        bin_path: str,
        extra: Any,
        self_profraw: Path,
        other_profraws: list[Path],
        mtime: datetime,
        other_bin_paths: Sequence[str] = (),
    ) -> None:
        self.dir = directory
        self.name = name
        self.bin_path = bin_path
        self.extra = extra
        self.self_profraw = self_profraw
        self.other_profraws = other_profraws
        self.other_bin_paths = list(other_bin_paths)
        self.mtime = mtime
        self.profdata: Path | None = None
        self.index_path: Path | None = None
        self.cleaned = (directory / GROUP_CLEANED_FILENAME).exists()

    def __repr__(self) -> str:
        return f'DifftestGroup({self.name!r}, {str(self.dir)!r})'

    @property
    def test_run(self) -> datetime:
        return self.mtime

    def test_info(self) -> TestInfo:
        return TestInfo(bin_path=self.bin_path, extra=self.extra, name=self.name)

    def binaries(self) -> list[str]:
        return [self.bin_path, *self.other_bin_paths]

    def attach_artifacts(self, profdata_candidates: list[Path], index_resolver: IndexPathResolver | None) -> None:
        """Record an existing merged profile and index, warning when stale."""
        if profdata_candidates:
            self.profdata = profdata_candidates[0]
            for ignored in profdata_candidates[1:]:
                logger.warning('Multiple profdata files found in group directory %s', self.dir)
                logger.warning('Ignoring: %s', ignored)
            warn_if_older(self.profdata, 'Profdata', self.mtime)

        if index_resolver is not None:
            index_path = index_resolver.resolve(self.dir)
            if index_path is not None and index_path.is_file():
                warn_if_older(index_path, 'Index', self.mtime)
                self.index_path = index_path


def discover_group(
    directory: Path,
    index_resolver: IndexPathResolver | None = None,
    other_binaries: Sequence[str] = (),
) -> DifftestGroup:
    """Load the group recorded in ``directory``.

    Args:
        directory: The group directory.
        index_resolver: Locates an existing index for the group.
        other_binaries: Further binaries to export coverage for.

    Raises:
        MissingFileError: If a required file is missing.
        VersionMismatchError: If another version recorded the group.
    """
    first_run = directory / GROUP_FIRST_TEST_RUN_FILENAME
    if not first_run.is_file():
        raise MissingFileError('group first test run marker does not exist', first_run)
    self_json = directory / GROUP_SELF_JSON_FILENAME
    if not self_json.is_file():
        raise MissingFileError('group self json does not exist', self_json)
    self_profraw = directory / SELF_PROFILE_FILENAME
    if not self_profraw.is_file():
        raise MissingFileError('self profile does not exist', self_profraw)
    check_version(directory)

    desc = read_json_file(self_json)
    group = DifftestGroup(
        directory,
        name=str(desc.get('name', directory.name)),
        bin_path=str(desc.get('bin_path', '')),
        extra=desc.get('extra'),
        self_profraw=self_profraw,
        other_profraws=sorted(
            p for p in directory.glob('*.profraw') if p.is_file() and p.name != SELF_PROFILE_FILENAME
        ),
        mtime=file_mtime(first_run),
        other_bin_paths=other_binaries,
    )
    group.attach_artifacts(
        sorted(p for p in directory.glob('*.profdata') if p.is_file()),
        index_resolver,
    )
    logger.debug('Discovered %r with %d child profiles', group, len(group.other_profraws))
    return group


def group_from_difftests(
    directory: Path,
    index_resolver: IndexPathResolver | None = None,
    other_binaries: Sequence[str] = (),
) -> DifftestGroup:
    """Treat every difftest under ``directory`` as one group.

    The group is named after the directory, its watermark is the earliest
    member start time, and the merged profile lives in
    ``directory/group.profdata``.

    Raises:
        MissingFileError: If no difftest is found.
        MultipleBinariesError: If the members ran different binaries.
    """
    members = discover_difftests(directory)
    if not members:
        raise MissingFileError('no difftests found', directory)

    binaries = sorted({member.test_info().bin_path for member in members})
    if len(binaries) > 1:
        raise MultipleBinariesError(binaries)

    profraws = [profraw for member in members for profraw in member.list_profraws()]
    group = DifftestGroup(
        directory,
        name=directory.name,
        bin_path=binaries[0],
        extra={'tests': [member.test_info().extra for member in members]},
        self_profraw=profraws[0],
        other_profraws=profraws[1:],
        mtime=min(member.test_run for member in members),
        other_bin_paths=other_binaries,
    )
    merged = directory / GROUP_PROFDATA_FILENAME
    group.attach_artifacts([merged] if merged.is_file() else [], index_resolver)
    return group
