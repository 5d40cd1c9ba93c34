"""Shared pytest configuration and fixtures for pytest-difftests tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
import json
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest

from pytest_difftests import __version__
from pytest_difftests.analysis.git import GitDiffSource, LineRange
from pytest_difftests.coverage.model import CoverageData
from pytest_difftests.difftest.core import SELF_JSON_FILENAME, SELF_PROFILE_FILENAME, VERSION_FILENAME


if TYPE_CHECKING:
    from collections.abc import Callable, Sequence


# Register markers for test categories
def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for test categorization."""
    config.addinivalue_line('markers', 'small: Fast, isolated unit tests (< 100ms)')
    config.addinivalue_line('markers', 'medium: Integration tests with real resources (< 10s)')
    config.addinivalue_line('markers', 'large: End-to-end system tests (< 60s)')


# Auto-mark tests based on directory
def pytest_collection_modifyitems(
    config: pytest.Config,  # noqa: ARG001
    items: list[pytest.Item],
) -> None:
    """Automatically apply markers based on test directory."""
    for item in items:
        path_parts = Path(str(item.fspath)).parts

        if 'small' in path_parts:
            item.add_marker(pytest.mark.small)
        elif 'medium' in path_parts:
            item.add_marker(pytest.mark.medium)
        elif 'large' in path_parts:
            item.add_marker(pytest.mark.large)


T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


def function_record(
    filenames: Sequence[str],
    regions: Sequence[Sequence[int]],
    name: str = 'f',
) -> dict[str, Any]:
    """Build one ``functions[]`` entry of an llvm-cov export.

    Regions are ``[l1, c1, l2, c2, count, file_id]``; the expansion id and
    region kind are filled with zeros.
    """
    return {
        'name': name,
        'count': 1,
        'filenames': list(filenames),
        'regions': [[*region, 0, 0] for region in regions],
        'branches': [],
    }


def export_document(*functions: dict[str, Any]) -> dict[str, Any]:
    """Wrap function records into a whole export document."""
    return {
        'type': 'llvm.coverage.json.export',
        'version': '2.0.1',
        'data': [{'functions': list(functions), 'files': [], 'totals': {}}],
    }


@pytest.fixture
def make_coverage() -> Callable[..., CoverageData]:
    """Build CoverageData from function records."""

    def build(*functions: dict[str, Any]) -> CoverageData:
        return CoverageData.from_dict(export_document(*functions))

    return build


@pytest.fixture
def make_function() -> Callable[..., dict[str, Any]]:
    """Build one export function record."""
    return function_record


@pytest.fixture
def make_export_document() -> Callable[..., dict[str, Any]]:
    """Build a whole export document from function records."""
    return export_document


def set_mtime(path: Path, when: datetime) -> None:
    """Set both access and modification time of ``path``."""
    timestamp = when.timestamp()
    os.utime(path, (timestamp, timestamp))


@pytest.fixture
def touch_at() -> Callable[[Path, datetime], None]:
    """Set the modification time of a path."""
    return set_mtime


@pytest.fixture
def make_difftest_dir(tmp_path: Path) -> Callable[..., Path]:
    """Lay out a recorded difftest directory under ``tmp_path``.

    Returns a factory taking the relative directory, the description and
    optional child profiles (name to contents).
    """

    def build(
        relative: str = 'difftests/test_a',
        *,
        bin_path: str = '/target/debug/app',
        extra: Any = None,
        profraws: dict[str, bytes] | None = None,
        version: str = __version__,
        test_run: datetime | None = None,
    ) -> Path:
        directory = tmp_path / relative
        directory.mkdir(parents=True)
        self_json = directory / SELF_JSON_FILENAME
        self_json.write_text(json.dumps({'bin_path': bin_path, 'extra': extra}), encoding='utf-8')
        (directory / SELF_PROFILE_FILENAME).write_bytes(b'')
        (directory / VERSION_FILENAME).write_text(version, encoding='utf-8')
        for name, contents in (profraws or {}).items():
            (directory / name).write_bytes(contents)
        if test_run is not None:
            set_mtime(self_json, test_run)
        return directory

    return build


@dataclass
class FakeDiffSource(GitDiffSource):
    """In-memory GitDiffSource.

    Attributes:
        repo_root: Working tree root.
        hunks: Changed line ranges per absolute posix path; every key counts
            as a changed file.
        calls: Recorded ``changed_files`` / ``changed_hunks`` calls.
    """

    repo_root: Path
    hunks: dict[str, list[LineRange]] = field(default_factory=dict)
    calls: list[str] = field(default_factory=list)

    @property
    def root(self) -> Path:
        return self.repo_root

    def changed_files(self, commit: str | None) -> set[str]:
        self.calls.append(f'files:{commit}')
        return set(self.hunks)

    def changed_hunks(self, commit: str | None, path: str) -> list[LineRange]:
        self.calls.append(f'hunks:{path}')
        return self.hunks.get(path, [])


@pytest.fixture
def fake_diff_source(tmp_path: Path) -> FakeDiffSource:
    """A diff source rooted at ``tmp_path`` with no changes."""
    return FakeDiffSource(repo_root=tmp_path.resolve())


@dataclass
class FakeLlvmTools:
    """Stand-in for LlvmTools that records calls instead of running LLVM.

    ``merge`` writes a non-empty profile; ``export`` returns ``document``
    decoded and writes it to ``out`` like llvm-cov output.
    """

    document: dict[str, Any]
    merges: list[tuple[list[Path], Path]] = field(default_factory=list)
    exports: list[tuple[Path, list[str]]] = field(default_factory=list)

    @property
    def coverage(self) -> CoverageData:
        return CoverageData.from_dict(self.document)

    def merge(self, profraws: Sequence[Path], out: Path) -> None:
        self.merges.append((list(profraws), out))
        out.write_bytes(b'profdata')

    def export(
        self,
        profdata: Path,
        binaries: Sequence[str],
        ignore_filename_regex: str | None = None,  # noqa: ARG002
        out: Path | None = None,
    ) -> CoverageData:
        self.exports.append((profdata, list(binaries)))
        if out is not None:
            out.write_text(json.dumps(self.document), encoding='utf-8')
        return self.coverage


@pytest.fixture
def fake_tools() -> FakeLlvmTools:
    """Fake LLVM tools exporting one executed region of ``/repo/src/lib.rs``."""
    return FakeLlvmTools(document=export_document(function_record(['/repo/src/lib.rs'], [[2, 1, 2, 20, 1, 0]])))
