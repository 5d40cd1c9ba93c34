"""Typed view over ``llvm-cov export`` JSON.

The export format stores regions, branches and file segments as positional
arrays. This module decodes them, in the exact field order the exporter uses,
into frozen dataclasses. Only the parts the analysis needs are strictly
validated (functions, regions, filenames); summaries are kept as plain
mappings so minor exporter version differences don't break decoding.

Example:
    >>> data = CoverageData.from_dict({
    ...     'type': 'llvm.coverage.json.export',
    ...     'version': '2.0.1',
    ...     'data': [{
    ...         'functions': [{
    ...             'name': 'add',
    ...             'count': 1,
    ...             'filenames': ['/repo/src/lib.rs'],
    ...             'regions': [[1, 1, 3, 2, 1, 0, 0, 0]],
    ...             'branches': [],
    ...         }],
    ...         'files': [],
    ...         'totals': {},
    ...     }],
    ... })
    >>> data.data[0].functions[0].regions[0].execution_count
    1
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
from typing import TYPE_CHECKING, Any

from pytest_difftests.errors import CoverageParseError


if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


REGION_FIELDS = 8
BRANCH_FIELDS = 9
SEGMENT_FIELDS = 6


def _int_fields(raw: Any, expected: int, what: str) -> list[int]:
    """Validate a positional record and return its leading integer fields."""
    if not isinstance(raw, list) or len(raw) < expected:
        msg = f'malformed {what}: expected an array of at least {expected} items, got {raw!r}'
        raise CoverageParseError(msg)
    values = raw[:expected]
    for value in values:
        # bool is an int subclass, but never a valid position or count
        if not isinstance(value, int) or isinstance(value, bool):
            msg = f'malformed {what}: non-integer field in {raw!r}'
            raise CoverageParseError(msg)
    return values


@dataclass(frozen=True)
class Region:
    """A code region with its execution count.

    Attributes:
        l1: First line of the region.
        c1: First column of the region.
        l2: Last line of the region.
        c2: Last column of the region.
        execution_count: How many times the region ran.
        file_id: Index into the owning function's ``filenames`` table.
        expanded_file_id: File id of the macro expansion, if any.
        region_kind: LLVM region kind tag.
    """

    l1: int
    c1: int
    l2: int
    c2: int
    execution_count: int
    file_id: int
    expanded_file_id: int = 0
    region_kind: int = 0

    @classmethod
    def from_list(cls, raw: Any) -> Region:
        """Decode the ``[l1, c1, l2, c2, count, file_id, expanded_file_id, kind]`` form."""
        l1, c1, l2, c2, count, file_id, expanded, kind = _int_fields(raw, REGION_FIELDS, 'region')
        return cls(l1, c1, l2, c2, count, file_id, expanded, kind)

    def to_list(self) -> list[int]:
        """Encode back to the positional export form."""
        return [
            self.l1,
            self.c1,
            self.l2,
            self.c2,
            self.execution_count,
            self.file_id,
            self.expanded_file_id,
            self.region_kind,
        ]

    @property
    def touched(self) -> bool:
        """Return True if the region was executed at least once."""
        return self.execution_count > 0


@dataclass(frozen=True)
class Branch:
    """A branch region with true and false execution counts."""

    l1: int
    c1: int
    l2: int
    c2: int
    execution_count: int
    false_execution_count: int
    file_id: int
    expanded_file_id: int
    region_kind: int

    @classmethod
    def from_list(cls, raw: Any) -> Branch:
        """Decode the 9-field positional branch form."""
        return cls(*_int_fields(raw, BRANCH_FIELDS, 'branch'))


@dataclass(frozen=True)
class Segment:
    """A file segment: ``[line, col, count, has_count, is_region_entry, is_gap_region]``."""

    line: int
    col: int
    count: int
    has_count: bool
    is_region_entry: bool
    is_gap_region: bool

    @classmethod
    def from_list(cls, raw: Any) -> Segment:
        """Decode a segment; trailing fields newer exporters add are ignored."""
        if not isinstance(raw, list) or len(raw) < SEGMENT_FIELDS:
            msg = f'malformed segment: {raw!r}'
            raise CoverageParseError(msg)
        line, col, count, has_count, is_entry, is_gap = raw[:SEGMENT_FIELDS]
        return cls(int(line), int(col), int(count), bool(has_count), bool(is_entry), bool(is_gap))


@dataclass(frozen=True)
class CoverageFunction:
    """A function record from the export.

    Attributes:
        name: Mangled function name as exported.
        count: Execution count of the function entry.
        filenames: Function-local file table that ``Region.file_id`` indexes.
        regions: Code regions of the function.
        branches: Branch regions of the function.
    """

    name: str
    count: int
    filenames: tuple[str, ...]
    regions: tuple[Region, ...]
    branches: tuple[Branch, ...] = ()

    @classmethod
    def from_dict(cls, raw: Any) -> CoverageFunction:
        """Decode a function object."""
        if not isinstance(raw, dict):
            msg = f'malformed function record: {raw!r}'
            raise CoverageParseError(msg)
        try:
            filenames = tuple(str(name) for name in raw['filenames'])
            regions = tuple(Region.from_list(region) for region in raw['regions'])
        except KeyError as exc:
            msg = f'function record is missing {exc.args[0]!r}'
            raise CoverageParseError(msg) from exc
        branches = tuple(Branch.from_list(branch) for branch in raw.get('branches', []))
        return cls(
            name=str(raw.get('name', '')),
            count=int(raw.get('count', 0)),
            filenames=filenames,
            regions=regions,
            branches=branches,
        )

    def filename_for(self, region: Region) -> str:
        """Resolve a region's file through this function's file table."""
        try:
            return self.filenames[region.file_id]
        except IndexError:
            msg = f'region file_id {region.file_id} out of range in function {self.name!r}'
            raise CoverageParseError(msg) from None


@dataclass(frozen=True)
class CoverageFile:
    """Per-file export record: segments, branches and a summary."""

    filename: str
    segments: tuple[Segment, ...] = ()
    branches: tuple[Branch, ...] = ()
    summary: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any) -> CoverageFile:
        """Decode a file object."""
        if not isinstance(raw, dict) or 'filename' not in raw:
            msg = f'malformed file record: {raw!r}'
            raise CoverageParseError(msg)
        return cls(
            filename=str(raw['filename']),
            segments=tuple(Segment.from_list(s) for s in raw.get('segments', [])),
            branches=tuple(Branch.from_list(b) for b in raw.get('branches', [])),
            summary=dict(raw.get('summary', {})),
        )


@dataclass(frozen=True)
class CoverageMapping:
    """One export unit (one binary set): functions, files and totals."""

    functions: tuple[CoverageFunction, ...]
    files: tuple[CoverageFile, ...] = ()
    totals: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any) -> CoverageMapping:
        """Decode a mapping object."""
        if not isinstance(raw, dict) or 'functions' not in raw:
            msg = 'coverage mapping has no "functions" array'
            raise CoverageParseError(msg)
        return cls(
            functions=tuple(CoverageFunction.from_dict(f) for f in raw['functions']),
            files=tuple(CoverageFile.from_dict(f) for f in raw.get('files', [])),
            totals=dict(raw.get('totals', {})),
        )


@dataclass(frozen=True)
class CoverageData:
    """A decoded ``llvm-cov export`` document.

    Attributes:
        data: The export units.
        kind: The export ``type`` tag (``llvm.coverage.json.export``).
        version: The export format version.
    """

    data: tuple[CoverageMapping, ...]
    kind: str = 'llvm.coverage.json.export'
    version: str = ''

    @classmethod
    def from_dict(cls, raw: Any) -> CoverageData:
        """Decode a whole export document."""
        if not isinstance(raw, dict) or 'data' not in raw:
            msg = 'coverage export has no "data" array'
            raise CoverageParseError(msg)
        return cls(
            data=tuple(CoverageMapping.from_dict(m) for m in raw['data']),
            kind=str(raw.get('type', '')),
            version=str(raw.get('version', '')),
        )

    @classmethod
    def from_json(cls, text: str | bytes) -> CoverageData:
        """Decode an export from JSON text."""
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            msg = f'coverage export is not valid JSON ({exc})'
            raise CoverageParseError(msg) from exc
        return cls.from_dict(raw)

    @classmethod
    def read(cls, path: Path) -> CoverageData:
        """Read and decode an export file, attaching the path to any error.

        Raises:
            CoverageParseError: If the file can't be read or decoded.
        """
        try:
            return cls.from_json(path.read_bytes())
        except OSError as exc:
            raise CoverageParseError(f'cannot read coverage export ({exc.strerror})', path) from exc
        except CoverageParseError as exc:
            raise CoverageParseError(str(exc), path) from exc

    def touched_regions(self) -> Iterator[tuple[str, Region]]:
        """Yield ``(filename, region)`` for every executed region, in export order."""
        for mapping in self.data:
            for function in mapping.functions:
                for region in function.regions:
                    if region.touched:
                        yield function.filename_for(region), region
