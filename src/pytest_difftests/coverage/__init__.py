"""Coverage data and test indexes.

A test's coverage export is huge; what analysis needs is small. This package
decodes the export and compiles it into a per-test index:

    export (MBs)  ->  {"files": ["src/lib.rs"], "regions": [[2, 1, 2, 20, 1, 0]]}

Exports:
    CoverageData: Decoded ``llvm-cov export`` document
    TestIndex: Compact, persisted per-test coverage summary
    compile_index: Reduce coverage data to a TestIndex
"""

from __future__ import annotations

from pytest_difftests.coverage.index import (
    FullIndex,
    IndexCompilerConfig,
    IndexRegion,
    IndexSize,
    TestIndex,
    TestInfo,
    TinyIndex,
    compile_index,
    discover_indexes,
    read_index,
    write_index,
)
from pytest_difftests.coverage.model import CoverageData


__all__ = [
    'CoverageData',
    'FullIndex',
    'IndexCompilerConfig',
    'IndexRegion',
    'IndexSize',
    'TestIndex',
    'TestInfo',
    'TinyIndex',
    'compile_index',
    'discover_indexes',
    'read_index',
    'write_index',
]
