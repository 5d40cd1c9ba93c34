"""Difftest directories: what one recorded test leaves on disk.

A test run under the difftests client writes a directory like this:

    .difftests/tests/test_math.py/test_add/
        self.json            {"bin_path": "...", "extra": {...}}
        self.profraw         the test process's own profile (may be empty)
        1234_5678.profraw    one per instrumented child process (%m_%p)
        difftests_version    producer version

Analysis then adds intermediate artifacts next to them:

        merged.profdata      merged profile
        exported.json        cached llvm-cov export
        cleaned              marker: intermediate artifacts were deleted

The lifecycle is discover -> merge -> export -> compile index -> clean.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pytest_difftests import __version__
from pytest_difftests.analysis.context import AnalysisContext
from pytest_difftests.coverage.index import IndexCompilerConfig, TestIndex, TestInfo, compile_index
from pytest_difftests.coverage.model import CoverageData
from pytest_difftests.difftest.llvm import REGISTRY_FILENAME_REGEX, LlvmTools
from pytest_difftests.errors import (
    CoverageParseError,
    DifftestCleanedError,
    MissingFileError,
    VersionMismatchError,
)


if TYPE_CHECKING:
    from collections.abc import Sequence


logger = logging.getLogger(__name__)

SELF_JSON_FILENAME = 'self.json'
SELF_PROFILE_FILENAME = 'self.profraw'
OTHER_PROFILE_FILENAME_TEMPLATE = '%m_%p.profraw'
VERSION_FILENAME = 'difftests_version'
MERGED_PROFDATA_FILENAME = 'merged.profdata'
EXPORTED_JSON_FILENAME = 'exported.json'
CLEANED_FILENAME = 'cleaned'
INDEX_FILENAME = 'index.json'

FORCE_HINT = 'You might want to use the --force flag.'


class IndexPathResolver:
    """Maps a difftest (or group) directory to the path of its index file."""

    def resolve(self, difftest_dir: Path) -> Path | None:
        """Return the index path for ``difftest_dir``, or None if it has none."""
        raise NotImplementedError


@dataclass(frozen=True)
class Remap(IndexPathResolver):
    """Mirror the difftest tree under ``to_root``.

    ``from_root/a/b`` resolves to ``to_root/a/b/index.json``. Directories
    outside ``from_root`` resolve to None.
    """

    from_root: Path
    to_root: Path

    def resolve(self, difftest_dir: Path) -> Path | None:
        try:
            relative = difftest_dir.resolve().relative_to(self.from_root.resolve())
        except ValueError:
            logger.warning('%s is not under %s, no index path', difftest_dir, self.from_root)
            return None
        return self.to_root / relative / INDEX_FILENAME


@dataclass(frozen=True)
class Fixed(IndexPathResolver):
    """Always resolve to ``path``."""

    path: Path

    def resolve(self, difftest_dir: Path) -> Path | None:  # noqa: ARG002
        return self.path


def check_version(directory: Path) -> None:
    """Check the producer version recorded in ``directory``.

    Raises:
        MissingFileError: If the version file is missing.
        VersionMismatchError: If it names another version.
    """
    version_file = directory / VERSION_FILENAME
    try:
        found = version_file.read_text(encoding='utf-8').strip()
    except FileNotFoundError:
        raise MissingFileError('version file does not exist', version_file) from None
    if found != __version__:
        raise VersionMismatchError(found, __version__, version_file)


def read_json_file(path: Path) -> dict[str, Any]:
    """Read a JSON object from ``path``, attaching the path to errors."""
    try:
        raw = json.loads(path.read_text(encoding='utf-8'))
    except FileNotFoundError:
        raise MissingFileError('file does not exist', path) from None
    except json.JSONDecodeError as exc:
        raise CoverageParseError(f'invalid JSON ({exc})', path) from exc
    if not isinstance(raw, dict):
        raise CoverageParseError('expected a JSON object', path)
    return raw


def file_mtime(path: Path) -> datetime:
    """Return the modification time of ``path`` as an aware UTC datetime."""
    return datetime.fromtimestamp(path.stat().st_mtime, tz=UTC)


def warn_if_older(artifact: Path, kind: str, watermark: datetime) -> None:
    """Warn when ``artifact`` predates ``watermark``; it may be stale."""
    artifact_mtime = file_mtime(artifact)
    if artifact_mtime < watermark:
        logger.warning(
            '%s file %s is older than the newest test run (%s < %s).',
            kind,
            artifact,
            artifact_mtime.isoformat(),
            watermark.isoformat(),
        )
        logger.info(FORCE_HINT)


class ProfiledDirectory:
    """Shared merge/export/clean lifecycle of difftests and groups.

    Subclasses fill in the directory layout: where the profiles are, where
    the merged profile goes, and the marker that records cleaning.
    """

    dir: Path
    self_profraw: Path
    other_profraws: list[Path]
    profdata: Path | None
    index_path: Path | None
    cleaned: bool

    profdata_filename = MERGED_PROFDATA_FILENAME
    cleaned_filename = CLEANED_FILENAME

    @property
    def out_profdata_path(self) -> Path:
        """Return where the merged profile is written."""
        return self.dir / self.profdata_filename

    @property
    def test_run(self) -> datetime:
        """Return the staleness watermark of the recorded run."""
        raise NotImplementedError

    def test_info(self) -> TestInfo:
        """Return the identification stored with indexes of this directory."""
        raise NotImplementedError

    def binaries(self) -> list[str]:
        """Return the instrumented binaries coverage is exported for."""
        raise NotImplementedError

    def list_profraws(self) -> list[Path]:
        """Return every raw profile, the self profile first."""
        return [self.self_profraw, *self.other_profraws]

    def has_profdata(self) -> bool:
        """Return True if a merged profile exists."""
        return self.profdata is not None

    def has_index(self) -> bool:
        """Return True if an index file exists for this directory."""
        return self.index_path is not None

    def read_index(self) -> TestIndex | None:
        """Load the existing index, if any."""
        if self.index_path is None:
            return None
        return TestIndex.read(self.index_path)

    def merge_profraws(self, *, force: bool = False, tools: LlvmTools | None = None) -> None:
        """Merge the raw profiles into one merged profile.

        Skipped when a merged profile already exists, unless ``force`` is
        set. Empty raw profiles are left out; when every profile is empty an
        empty merged profile is written, which exports as empty coverage.

        Raises:
            DifftestCleanedError: If the directory was cleaned.
            ExternalToolError: If ``llvm-profdata`` fails.
        """
        if self.cleaned:
            raise DifftestCleanedError(self.dir)
        if self.profdata is not None and not force:
            logger.debug('Merged profile %s exists, skipping merge', self.profdata)
            return

        out = self.out_profdata_path
        profraws = [p for p in self.list_profraws() if p.stat().st_size > 0]
        if profraws:
            (tools or LlvmTools.from_env()).merge(profraws, out)
        else:
            logger.info('No recorded profiles in %s, coverage is empty', self.dir)
            out.write_bytes(b'')
        self.profdata = out

    def export_coverage(
        self,
        *,
        ignore_registry_files: bool = True,
        other_binaries: Sequence[str] = (),
        tools: LlvmTools | None = None,
    ) -> CoverageData:
        """Export the merged profile as coverage data.

        Raises:
            DifftestCleanedError: If the directory was cleaned.
            MissingFileError: If the profiles were not merged yet.
            ExternalToolError: If ``llvm-cov`` fails.
        """
        if self.cleaned:
            raise DifftestCleanedError(self.dir)
        if self.profdata is None:
            raise MissingFileError('no merged profile, merge the profiles first', self.out_profdata_path)
        if self.profdata.stat().st_size == 0:
            return CoverageData(data=())

        exported = self.dir / EXPORTED_JSON_FILENAME
        if exported.is_file() and exported.stat().st_mtime >= self.profdata.stat().st_mtime:
            logger.debug('Reading cached export %s', exported)
            return CoverageData.read(exported)

        return (tools or LlvmTools.from_env()).export(
            self.profdata,
            [*self.binaries(), *other_binaries],
            ignore_filename_regex=REGISTRY_FILENAME_REGEX if ignore_registry_files else None,
            out=exported,
        )

    def compile_index(
        self,
        config: IndexCompilerConfig,
        *,
        other_binaries: Sequence[str] = (),
        tools: LlvmTools | None = None,
    ) -> TestIndex:
        """Export the coverage and compile it into an index."""
        logger.info('Compiling test index for %s', self.dir)
        coverage = self.export_coverage(other_binaries=other_binaries, tools=tools)
        return compile_index(coverage, config, test_run=self.test_run, test_info=self.test_info())

    def start_analysis(
        self,
        *,
        other_binaries: Sequence[str] = (),
        tools: LlvmTools | None = None,
    ) -> AnalysisContext:
        """Export the coverage and open an analysis context over it."""
        logger.info('Starting analysis of %s', self.dir)
        coverage = self.export_coverage(other_binaries=other_binaries, tools=tools)
        return AnalysisContext.from_coverage(coverage, test_run=self.test_run, test_info=self.test_info())

    def clean(self) -> None:
        """Delete intermediate artifacts and mark the directory cleaned.

        Idempotent and irreversible: coverage can't be exported afterwards.
        """
        if self.cleaned:
            return
        logger.info('Cleaning %s', self.dir)
        if self.profdata is not None:
            self.profdata.unlink(missing_ok=True)
            self.profdata = None
        (self.dir / EXPORTED_JSON_FILENAME).unlink(missing_ok=True)
        (self.dir / self.cleaned_filename).write_bytes(b'')
        self.cleaned = True


class Difftest(ProfiledDirectory):
    """A discovered single-test directory.

    Use ``discover_from`` rather than constructing one directly.
    """

    def __init__(
        self,
        directory: Path,
        *,
        other_profraws: list[Path],
        profdata: Path | None,
        index_path: Path | None,
        cleaned: bool,
    ) -> None:
        self.dir = directory
        self.self_json = directory / SELF_JSON_FILENAME
        self.self_profraw = directory / SELF_PROFILE_FILENAME
        self.other_profraws = other_profraws
        self.profdata = profdata
        self.index_path = index_path
        self.cleaned = cleaned

    def __repr__(self) -> str:
        return f'Difftest({str(self.dir)!r})'

    @classmethod
    def discover_from(cls, directory: Path, resolver: IndexPathResolver | None = None) -> Difftest:
        """Load the difftest stored in ``directory``.

        Args:
            directory: The difftest directory.
            resolver: Locates an existing index for the directory.

        Raises:
            MissingFileError: If ``self.json``, ``self.profraw`` or the version
                file is missing.
            VersionMismatchError: If another version recorded the directory.
        """
        for required in (SELF_JSON_FILENAME, SELF_PROFILE_FILENAME):
            if not (directory / required).is_file():
                raise MissingFileError(f'{required} does not exist', directory / required)
        check_version(directory)

        other_profraws = sorted(
            p for p in directory.glob('*.profraw') if p.is_file() and p.name != SELF_PROFILE_FILENAME
        )
        profdata = directory / MERGED_PROFDATA_FILENAME
        cleaned = (directory / CLEANED_FILENAME).exists()
        difftest = cls(
            directory,
            other_profraws=other_profraws,
            profdata=profdata if profdata.is_file() else None,
            index_path=None,
            cleaned=cleaned,
        )

        if difftest.profdata is not None:
            warn_if_older(difftest.profdata, 'Profdata', difftest.test_run)
        if resolver is not None:
            index_path = resolver.resolve(directory)
            if index_path is not None and index_path.is_file():
                warn_if_older(index_path, 'Index', difftest.test_run)
                difftest.index_path = index_path
        return difftest

    @property
    def test_run(self) -> datetime:
        """Return when the test started: the time ``self.json`` was written."""
        return file_mtime(self.self_json)

    def load_test_desc(self) -> dict[str, Any]:
        """Return the raw ``self.json`` description."""
        return read_json_file(self.self_json)

    def test_info(self) -> TestInfo:
        desc = self.load_test_desc()
        return TestInfo(bin_path=str(desc.get('bin_path', '')), extra=desc.get('extra'))

    def binaries(self) -> list[str]:
        return [self.test_info().bin_path]

    def merge_profraw_files(self, *, force: bool = False, tools: LlvmTools | None = None) -> None:
        """Merge this test's raw profiles (see ``merge_profraws``)."""
        self.merge_profraws(force=force, tools=tools)


def is_difftest_dir(directory: Path) -> bool:
    """Return True if ``directory`` holds a single-test recording."""
    return (directory / SELF_JSON_FILENAME).is_file()


def discover_difftests(
    root: Path,
    *,
    ignore_incompatible: bool = False,
    resolver: IndexPathResolver | None = None,
) -> list[Difftest]:
    """Find every difftest directory under ``root``.

    Directories are visited in sorted order; a difftest directory is not
    searched further.

    Args:
        root: Directory to search.
        ignore_incompatible: Skip (with a warning) directories recorded by
            another version instead of failing.
        resolver: Locates existing indexes.

    Returns:
        The discovered difftests. Empty if ``root`` doesn't exist.

    Raises:
        VersionMismatchError: On an incompatible directory, unless
            ``ignore_incompatible`` is set.
    """
    if not root.is_dir():
        logger.warning('Directory %s does not exist', root)
        return []

    discovered: list[Difftest] = []
    pending = [root]
    while pending:
        directory = pending.pop()
        if is_difftest_dir(directory):
            try:
                discovered.append(Difftest.discover_from(directory, resolver))
            except VersionMismatchError as exc:
                if not ignore_incompatible:
                    raise
                logger.warning('Ignoring incompatible difftest: %s', exc)
            continue
        pending.extend(sorted((p for p in directory.iterdir() if p.is_dir()), reverse=True))
    return discovered
