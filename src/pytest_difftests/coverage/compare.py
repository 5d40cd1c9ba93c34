"""Compare the file sets of two indexes.

Useful to check that two recordings of the same test (say, on two machines,
or before and after a toolchain upgrade) executed the same files.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from pytest_difftests.coverage.index import TestIndex


class IndexSide(Enum):
    """Which of the two compared indexes a file was found in."""

    FIRST = 'first'
    SECOND = 'second'


@dataclass(frozen=True)
class TouchSameFilesDifference:
    """A file touched by only one of the two indexes."""

    file: str
    only_in: IndexSide

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form used in reports."""
        return {'file': self.file, 'only_in': self.only_in.value}


def compare_indexes_touch_same_files(first: TestIndex, second: TestIndex) -> list[TouchSameFilesDifference]:
    """List the files touched by exactly one of ``first`` and ``second``.

    Args:
        first: The first index.
        second: The second index.

    Returns:
        Differences in index order, files of ``first`` before files of
        ``second``. Empty when both indexes touch the same files.
    """
    first_files = set(first.files)
    second_files = set(second.files)
    differences = [
        TouchSameFilesDifference(file=name, only_in=IndexSide.FIRST)
        for name in first.files
        if name not in second_files
    ]
    differences.extend(
        TouchSameFilesDifference(file=name, only_in=IndexSide.SECOND)
        for name in second.files
        if name not in first_files
    )
    return differences
