"""Tests for the JSON reporter."""

from __future__ import annotations

import json

import pytest

from pytest_difftests.analysis.context import AnalysisVerdict
from pytest_difftests.coverage.compare import IndexSide, TouchSameFilesDifference
from pytest_difftests.coverage.index import TestInfo
from pytest_difftests.difftest.core import Difftest
from pytest_difftests.difftest.ops import AnalyzeResult
from pytest_difftests.reporting.json_reporter import JsonReporter


@pytest.fixture
def results(tmp_path):
    return [
        AnalyzeResult(TestInfo('', {'nodeid': 'tests/test_a.py::test_x'}), AnalysisVerdict.DIRTY, tmp_path / 'a'),
        AnalyzeResult(TestInfo('', {'nodeid': 'tests/test_b.py::test_y'}), AnalysisVerdict.CLEAN),
    ]


@pytest.mark.small
class TestJsonReporter:
    """Tests for JsonReporter."""

    def test_results_are_a_json_array(self, results, tmp_path):
        data = json.loads(JsonReporter().to_json(results))

        assert data == [
            {
                'test_info': {'bin_path': '', 'extra': {'nodeid': 'tests/test_a.py::test_x'}},
                'verdict': 'dirty',
                'dir': str(tmp_path / 'a'),
            },
            {
                'test_info': {'bin_path': '', 'extra': {'nodeid': 'tests/test_b.py::test_y'}},
                'verdict': 'clean',
                'dir': None,
            },
        ]

    def test_default_output_is_one_line(self, results):
        assert '\n' not in JsonReporter().to_json(results)

    def test_indent_pretty_prints(self, results):
        assert JsonReporter(indent=2).to_json(results).startswith('[\n  {')

    def test_write_report(self, results, tmp_path):
        output = tmp_path / 'report.json'

        JsonReporter().write_report(results, output)

        assert len(json.loads(output.read_text())) == 2

    def test_empty_results(self):
        assert JsonReporter().to_json([]) == '[]'

    def test_discovered_difftests(self, make_difftest_dir):
        directory = make_difftest_dir(profraws={'1_2.profraw': b'c'})

        data = json.loads(JsonReporter().difftests_to_json([Difftest.discover_from(directory)]))

        assert data == [
            {
                'dir': str(directory),
                'self_json': str(directory / 'self.json'),
                'self_profraw': str(directory / 'self.profraw'),
                'other_profraws': [str(directory / '1_2.profraw')],
                'profdata': None,
                'index': None,
                'cleaned': False,
            }
        ]

    def test_index_differences(self):
        differences = [TouchSameFilesDifference('src/lib.rs', IndexSide.SECOND)]

        assert json.loads(JsonReporter().differences_to_json(differences)) == [
            {'file': 'src/lib.rs', 'only_in': 'second'}
        ]
