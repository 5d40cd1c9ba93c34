"""JSON reporter for batch analysis results.

Produces the machine-readable output of ``analyze-all`` and friends, for CI
scripts to pick dirty tests from.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from pytest_difftests.coverage.compare import TouchSameFilesDifference
    from pytest_difftests.difftest.core import Difftest
    from pytest_difftests.difftest.ops import AnalyzeResult


class JsonReporter:
    """Reporter that produces JSON output for CI integration.

    JSON structure of an analysis report:
        [
            {
                "test_info": {"bin_path": "", "extra": {"nodeid": "tests/test_a.py::test_x"}},
                "verdict": "dirty",
                "dir": ".difftests/tests/test_a.py/test_x"
            },
            ...
        ]

    Args:
        indent: Indentation for pretty-printing; None prints one line.
    """

    def __init__(self, indent: int | None = None) -> None:
        self.indent = indent

    def _dumps(self, data: Any) -> str:
        return json.dumps(data, indent=self.indent)

    def to_json(self, results: Iterable[AnalyzeResult]) -> str:
        """Convert analysis results to a JSON array.

        Args:
            results: Results to convert.

        Returns:
            JSON string.
        """
        return self._dumps([result.to_dict() for result in results])

    def write_report(self, results: Iterable[AnalyzeResult], output_path: Path) -> None:
        """Write analysis results to a JSON file.

        Args:
            results: Results to write.
            output_path: Path to the output JSON file.
        """
        output_path.write_text(self.to_json(results), encoding='utf-8')

    def difftests_to_json(self, difftests: Iterable[Difftest]) -> str:
        """Describe discovered difftest directories."""
        return self._dumps([self._build_difftest(difftest) for difftest in difftests])

    def differences_to_json(self, differences: Iterable[TouchSameFilesDifference]) -> str:
        """Convert an index comparison report to a JSON array."""
        return self._dumps([difference.to_dict() for difference in differences])

    def _build_difftest(self, difftest: Difftest) -> dict[str, Any]:
        """Build a single discovered-difftest entry.

        Args:
            difftest: The discovered difftest.

        Returns:
            Dictionary representing the directory and its artifacts.
        """
        return {
            'dir': str(difftest.dir),
            'self_json': str(difftest.self_json),
            'self_profraw': str(difftest.self_profraw),
            'other_profraws': [str(p) for p in difftest.other_profraws],
            'profdata': str(difftest.profdata) if difftest.profdata is not None else None,
            'index': str(difftest.index_path) if difftest.index_path is not None else None,
            'cleaned': difftest.cleaned,
        }
