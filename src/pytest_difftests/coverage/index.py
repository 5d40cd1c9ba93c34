"""Test indexes: the compact, persisted summary of a test's coverage.

A TestIndex keeps only what the dirty algorithms need: the files a test
touched and, at full granularity, the executed regions. Compiling an index
from a full coverage export shrinks it by orders of magnitude, which makes
analysis fast and lets indexes be committed or shipped between machines.

The two granularities are distinct types:

- TinyIndex: touched files only. Enough for mtime and file-level diffs.
- FullIndex: touched files plus regions. Required for hunk matching.

On disk both share one JSON schema, where ``regions`` is simply omitted for
tiny indexes:

    {
        "regions": [[l1, c1, l2, c2, count, file_id], ...],
        "files": ["src/lib.rs", ...],
        "test_run": "2024-05-01T12:00:00+00:00",
        "test_info": {"bin_path": "", "extra": {...}}
    }
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
import json
import logging
import os
from pathlib import Path, PurePath
from typing import TYPE_CHECKING, Any

from pytest_difftests.errors import IndexFileError


if TYPE_CHECKING:
    from collections.abc import Iterator

    from pytest_difftests.coverage.model import CoverageData


logger = logging.getLogger(__name__)

INDEX_REGION_FIELDS = 6


@dataclass(frozen=True)
class TestInfo:
    """Identifies the test (or group) an index or verdict belongs to.

    Attributes:
        bin_path: Binary that produced the coverage. Blank when scrubbed.
        extra: Opaque caller-supplied identification payload.
        name: Group name when the info describes a group, else None.
    """

    __test__ = False  # not a pytest test class

    bin_path: str
    extra: Any = None
    name: str | None = None

    @property
    def is_group(self) -> bool:
        """Return True if this describes a group rather than a single test."""
        return self.name is not None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the ``test_info`` JSON object."""
        data: dict[str, Any] = {'bin_path': self.bin_path, 'extra': self.extra}
        if self.name is not None:
            data['name'] = self.name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TestInfo:
        """Deserialize from the ``test_info`` JSON object.

        Raises:
            ValueError: If ``data`` is not an object.
        """
        if not isinstance(data, dict):
            msg = f'test_info must be an object, got {data!r}'
            raise ValueError(msg)
        return cls(
            bin_path=str(data.get('bin_path', '')),
            extra=data.get('extra'),
            name=data.get('name'),
        )


@dataclass(frozen=True)
class IndexRegion:
    """An executed region. ``file_id`` indexes into the owning index's ``files``."""

    l1: int
    c1: int
    l2: int
    c2: int
    count: int
    file_id: int

    def to_list(self) -> list[int]:
        """Encode as ``[l1, c1, l2, c2, count, file_id]``."""
        return [self.l1, self.c1, self.l2, self.c2, self.count, self.file_id]

    @classmethod
    def from_list(cls, raw: Any) -> IndexRegion:
        """Decode the positional form.

        Raises:
            ValueError: If the record does not have six integer fields.
        """
        if not isinstance(raw, list) or len(raw) != INDEX_REGION_FIELDS:
            msg = f'index region must have {INDEX_REGION_FIELDS} fields, got {raw!r}'
            raise ValueError(msg)
        return cls(*(int(value) for value in raw))

    def overlaps(self, start: int, end: int) -> bool:
        """Return True if lines ``[l1, l2]`` intersect the closed range ``[start, end]``."""
        return self.l1 <= end and start <= self.l2


class IndexSize(Enum):
    """Granularity an index is compiled at.

    Attributes:
        TINY: Touched files only. Can't be used for hunk matching.
        FULL: Touched files and executed regions.
    """

    TINY = 'tiny'
    FULL = 'full'


@dataclass(frozen=True)
class TestIndex:
    """Common part of both index granularities.

    Attributes:
        files: Touched files, deduplicated, in first-touch order.
        test_run: When the recorded test run happened (UTC).
        test_info: Identification of the indexed test or group.
    """

    __test__ = False  # not a pytest test class

    files: tuple[str, ...]
    test_run: datetime
    test_info: TestInfo

    @property
    def size(self) -> IndexSize:
        """Return the granularity of this index."""
        raise NotImplementedError

    @property
    def regions(self) -> tuple[IndexRegion, ...]:
        """Return the executed regions (always empty for tiny indexes)."""
        return ()

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the index file schema."""
        data: dict[str, Any] = {}
        if self.regions:
            data['regions'] = [region.to_list() for region in self.regions]
        data['files'] = list(self.files)
        data['test_run'] = self.test_run.isoformat()
        data['test_info'] = self.test_info.to_dict()
        return data

    def write(self, path: Path) -> None:
        """Write the index to ``path`` as JSON, creating parent directories."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict()), encoding='utf-8')

    @staticmethod
    def from_dict(data: dict[str, Any]) -> TestIndex:
        """Deserialize an index; a missing or empty ``regions`` yields a TinyIndex.

        Raises:
            ValueError: If a field is missing or malformed.
        """
        try:
            files = tuple(str(f) for f in data['files'])
            test_run = _parse_timestamp(data['test_run'])
            test_info = TestInfo.from_dict(data['test_info'])
        except KeyError as exc:
            msg = f'index is missing {exc.args[0]!r}'
            raise ValueError(msg) from exc
        regions = tuple(IndexRegion.from_list(r) for r in data.get('regions') or ())
        for region in regions:
            if not 0 <= region.file_id < len(files):
                msg = f'region file id {region.file_id} is out of range for {len(files)} files'
                raise ValueError(msg)
        if regions:
            return FullIndex(files=files, test_run=test_run, test_info=test_info, regions=regions)
        return TinyIndex(files=files, test_run=test_run, test_info=test_info)

    @staticmethod
    def read(path: Path) -> TestIndex:
        """Read an index file.

        Raises:
            IndexFileError: If the file can't be read or decoded.
        """
        try:
            raw = json.loads(path.read_text(encoding='utf-8'))
        except OSError as exc:
            raise IndexFileError(f'cannot read index ({exc.strerror})', path) from exc
        except json.JSONDecodeError as exc:
            raise IndexFileError(f'index is not valid JSON ({exc})', path) from exc
        if not isinstance(raw, dict):
            raise IndexFileError('index must be a JSON object', path)
        try:
            return TestIndex.from_dict(raw)
        except (ValueError, TypeError, AttributeError) as exc:
            raise IndexFileError(f'malformed index ({exc})', path) from exc


@dataclass(frozen=True)
class TinyIndex(TestIndex):
    """Index holding touched files only."""

    @property
    def size(self) -> IndexSize:
        """Return IndexSize.TINY."""
        return IndexSize.TINY


@dataclass(frozen=True)
class FullIndex(TestIndex):
    """Index holding touched files and executed regions."""

    regions: tuple[IndexRegion, ...] = ()  # type: ignore[assignment]

    @property
    def size(self) -> IndexSize:
        """Return IndexSize.FULL."""
        return IndexSize.FULL

    def regions_by_file(self) -> dict[str, list[IndexRegion]]:
        """Group regions under their file path."""
        grouped: dict[str, list[IndexRegion]] = {}
        for region in self.regions:
            grouped.setdefault(self.files[region.file_id], []).append(region)
        return grouped


def _parse_timestamp(value: Any) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime."""
    if not isinstance(value, str):
        msg = f'test_run must be an RFC 3339 string, got {value!r}'
        raise ValueError(msg)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def is_registry_path(path: str) -> bool:
    """Return True if ``path`` lives in a dependency registry cache.

    Registry sources (``$CARGO_HOME/registry``, ``~/.cargo/registry``) are
    never edited by the user, so they are excluded from indexes by default.
    """
    normalized = path.replace('\\', '/')
    if '/.cargo/registry/' in normalized:
        return True
    cargo_home = os.environ.get('CARGO_HOME')
    if cargo_home:
        registry = PurePath(cargo_home, 'registry').as_posix().rstrip('/') + '/'
        return normalized.startswith(registry)
    return False


class FileFilterPolicy:
    """Decides whether a touched file is indexed."""

    def accepts(self, path: str) -> bool:
        """Return True if ``path`` should be kept in the index."""
        raise NotImplementedError


@dataclass(frozen=True)
class IgnoreRegistryPaths(FileFilterPolicy):
    """Reject files from dependency registries; accept everything else."""

    def accepts(self, path: str) -> bool:
        return not is_registry_path(path)


@dataclass(frozen=True)
class AcceptAll(FileFilterPolicy):
    """Accept every file."""

    def accepts(self, path: str) -> bool:  # noqa: ARG002
        return True


@dataclass(frozen=True)
class CustomFilter(FileFilterPolicy):
    """Accept files for which ``predicate`` returns True."""

    predicate: Callable[[str], bool]

    def accepts(self, path: str) -> bool:
        return bool(self.predicate(path))


class PathRewritePolicy:
    """Maps an absolute path from the export to the path stored in the index.

    Implementations must be pure: the same input always yields the same
    output.
    """

    def rewrite(self, path: str) -> str:
        """Return the path to store for ``path``."""
        raise NotImplementedError


@dataclass(frozen=True)
class Identity(PathRewritePolicy):
    """Store paths as exported."""

    def rewrite(self, path: str) -> str:
        return path


@dataclass(frozen=True)
class RelativeToRoot(PathRewritePolicy):
    """Store paths relative to ``root``; paths outside it are kept unchanged."""

    root: Path

    def rewrite(self, path: str) -> str:
        try:
            return str(PurePath(path).relative_to(self.root))
        except ValueError:
            return path


@dataclass(frozen=True)
class PlatformSlashNormalize(PathRewritePolicy):
    """Replace backslashes with forward slashes."""

    def rewrite(self, path: str) -> str:
        return path.replace('\\', '/')


@dataclass(frozen=True)
class Chain(PathRewritePolicy):
    """Apply several policies in order."""

    policies: tuple[PathRewritePolicy, ...]

    def rewrite(self, path: str) -> str:
        for policy in self.policies:
            path = policy.rewrite(path)
        return path


@dataclass(frozen=True)
class IndexCompilerConfig:
    """How coverage data is reduced to an index.

    Attributes:
        file_filter: Which touched files to keep.
        path_rewrite: How kept paths are stored.
        granularity: Whether regions are kept (FULL) or only files (TINY).
        scrub_binary_path: Blank the binary path so the index is host-independent.
    """

    file_filter: FileFilterPolicy = field(default_factory=IgnoreRegistryPaths)
    path_rewrite: PathRewritePolicy = field(default_factory=Identity)
    granularity: IndexSize = IndexSize.TINY
    scrub_binary_path: bool = True


def compile_index(
    coverage: CoverageData,
    config: IndexCompilerConfig,
    *,
    test_run: datetime,
    test_info: TestInfo,
) -> TestIndex:
    """Compile coverage data into a TestIndex.

    Walks every executed region; each distinct accepted file gets a global id
    in first-touch order and is rewritten exactly once. Regions are not
    deduplicated: several functions covering the same lines simply add
    entries, which the dirty algorithms treat as a union.

    Args:
        coverage: Decoded export data.
        config: Compiler configuration.
        test_run: When the indexed run happened (the staleness watermark).
        test_info: Identification of the indexed test or group.

    Returns:
        A FullIndex or TinyIndex, depending on ``config.granularity``.
    """
    if config.scrub_binary_path:
        test_info = replace(test_info, bin_path='')

    file_ids: dict[str, int] = {}
    files: list[str] = []
    regions: list[IndexRegion] = []
    rejected: set[str] = set()

    for filename, region in coverage.touched_regions():
        file_id = file_ids.get(filename)
        if file_id is None:
            if filename in rejected:
                continue
            if not config.file_filter.accepts(filename):
                logger.debug('Not indexing %s (rejected by %r)', filename, config.file_filter)
                rejected.add(filename)
                continue
            file_id = len(files)
            file_ids[filename] = file_id
            files.append(config.path_rewrite.rewrite(filename))

        if config.granularity is IndexSize.FULL:
            regions.append(
                IndexRegion(
                    l1=region.l1,
                    c1=region.c1,
                    l2=region.l2,
                    c2=region.c2,
                    count=region.execution_count,
                    file_id=file_id,
                )
            )

    test_run = test_run.astimezone(UTC)
    logger.debug('Compiled index: %d files, %d regions', len(files), len(regions))
    if config.granularity is IndexSize.FULL:
        return FullIndex(files=tuple(files), test_run=test_run, test_info=test_info, regions=tuple(regions))
    return TinyIndex(files=tuple(files), test_run=test_run, test_info=test_info)


def iter_index_files(index_root: Path) -> Iterator[Path]:
    """Yield every ``.json`` file under ``index_root``, in sorted order."""
    for path in sorted(index_root.rglob('*.json')):
        if path.is_file():
            yield path


def discover_indexes(index_root: Path) -> list[tuple[Path, TestIndex]]:
    """Load every index stored under ``index_root``.

    Args:
        index_root: Root directory of the index tree.

    Returns:
        ``(path, index)`` pairs in sorted path order. Empty if the root
        doesn't exist.
    """
    if not index_root.is_dir():
        logger.warning('Index root %s does not exist', index_root)
        return []
    return [(path, TestIndex.read(path)) for path in iter_index_files(index_root)]


def write_index(index: TestIndex, path: Path) -> None:
    """Persist ``index`` as JSON at ``path``."""
    logger.debug('Writing index for %s to %s', index.test_info.name or index.test_info.extra, path)
    index.write(path)


def read_index(path: Path) -> TestIndex:
    """Load the index stored at ``path``.

    Raises:
        IndexFileError: If the file can't be read or decoded.
    """
    return TestIndex.read(path)
