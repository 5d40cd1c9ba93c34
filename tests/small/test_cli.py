"""Tests for the difftests command line.

LLVM tools are replaced with the fake from conftest, so every command runs
against hand-written coverage.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
import json

import pytest

from pytest_difftests import __version__, cli
from pytest_difftests.coverage.index import TestInfo, TinyIndex, read_index
from pytest_difftests.difftest.core import CLEANED_FILENAME, MERGED_PROFDATA_FILENAME


T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def in_tmp(tmp_path, monkeypatch):
    """Run the command line from ``tmp_path`` without a pyproject.toml."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def llvm(monkeypatch, fake_tools):
    """Make the command line use the fake LLVM tools."""

    class Tools:
        @staticmethod
        def from_env():
            return fake_tools

    monkeypatch.setattr(cli, 'LlvmTools', Tools)
    return fake_tools


@pytest.mark.small
class TestParser:
    """Tests for argument parsing."""

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(['--version'])

        assert exc_info.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_subcommand_is_required(self):
        with pytest.raises(SystemExit) as exc_info:
            cli.main([])

        assert exc_info.value.code == 2

    def test_invalid_algo_is_rejected(self):
        with pytest.raises(SystemExit):
            cli.main(['analyze-all', '--algo', 'guess'])

    def test_cli_values_override_pyproject(self, in_tmp):
        (in_tmp / 'pyproject.toml').write_text('[tool.difftests]\ndir = "recorded"\nalgo = "git-diff-files"\n')
        args = cli.build_parser().parse_args(['analyze-all', '--algo', 'fs-mtime'])

        config = cli.resolve_config(args)

        assert config.dir == 'recorded'
        assert config.algo == 'fs-mtime'

    def test_analyze_takes_the_root_from_root(self, in_tmp):
        args = cli.build_parser().parse_args(['analyze', '--dir', 'x/t', '--root', 'x'])

        assert cli.resolve_config(args).dir == 'x'


@pytest.mark.small
class TestAnalysisCommands:
    """Tests for the analysis subcommands."""

    def test_discover_difftests(self, in_tmp, make_difftest_dir, capsys):
        make_difftest_dir('.difftests/test_a')

        assert cli.main(['discover-difftests']) == 0

        data = json.loads(capsys.readouterr().out)
        assert [entry['dir'] for entry in data] == ['.difftests/test_a']

    def test_analyze_prints_the_verdict(self, in_tmp, make_difftest_dir, llvm, capsys):
        make_difftest_dir('.difftests/test_a', profraws={'1_2.profraw': b'c'})

        assert cli.main(['analyze', '--dir', '.difftests/test_a']) == 0

        assert capsys.readouterr().out.strip() == 'dirty'

    def test_analyze_builds_index_with_strategy(self, in_tmp, make_difftest_dir, llvm, capsys):
        make_difftest_dir('.difftests/test_a', profraws={'1_2.profraw': b'c'})

        strategy = ['--index-strategy', 'always', '--index-root', 'idx', '--full-index']

        code = cli.main(['analyze', '--dir', '.difftests/test_a', *strategy])

        assert code == 0
        assert read_index(in_tmp / 'idx' / 'test_a' / 'index.json').regions

    def test_analyze_group_of_difftests(self, in_tmp, make_difftest_dir, llvm, capsys):
        make_difftest_dir('.difftests/g/a', profraws={'1.profraw': b'c'})
        make_difftest_dir('.difftests/g/b')

        assert cli.main(['analyze-group', '--dir', '.difftests/g']) == 0

        assert capsys.readouterr().out.strip() == 'dirty'
        assert len(llvm.merges) == 1

    def test_analyze_all_prints_json(self, in_tmp, make_difftest_dir, llvm, capsys):
        make_difftest_dir('.difftests/test_a', extra={'nodeid': 'a'})
        make_difftest_dir('.difftests/test_b', extra={'nodeid': 'b'}, profraws={'1.profraw': b'c'})

        assert cli.main(['analyze-all']) == 0

        data = json.loads(capsys.readouterr().out)
        assert [(entry['test_info']['extra'], entry['verdict']) for entry in data] == [
            ({'nodeid': 'a'}, 'clean'),
            ({'nodeid': 'b'}, 'dirty'),
        ]

    def test_analyze_all_uses_configured_dir(self, in_tmp, make_difftest_dir, llvm, capsys):
        (in_tmp / 'pyproject.toml').write_text('[tool.difftests]\ndir = "recorded"\n')
        make_difftest_dir('recorded/test_a')

        assert cli.main(['analyze-all']) == 0

        assert len(json.loads(capsys.readouterr().out)) == 1

    def test_assert_clean_fails_on_dirty_tests(self, in_tmp, make_difftest_dir, llvm, capsys):
        make_difftest_dir('.difftests/test_b', extra={'nodeid': 'b'}, profraws={'1.profraw': b'c'})

        assert cli.main(['analyze-all', '--action', 'assert-clean']) == 1

        err = capsys.readouterr().err
        assert "dirty: {'nodeid': 'b'}" in err
        assert 'some tests are dirty' in err

    def test_assert_clean_passes_when_clean(self, in_tmp, make_difftest_dir, llvm):
        make_difftest_dir('.difftests/test_a')

        assert cli.main(['analyze-all', '--action', 'assert-clean']) == 0

    def test_rerun_dirty_uses_configured_runner(self, in_tmp, make_difftest_dir, llvm, monkeypatch):
        calls = []
        monkeypatch.setattr(cli, 'rerun_dirty', lambda results, runner: calls.append((results, runner)))
        make_difftest_dir('.difftests/test_b', profraws={'1.profraw': b'c'})

        assert cli.main(['analyze-all', '--action', 'rerun-dirty', '--runner', 'my-runner --flag']) == 0

        assert calls[0][1] == ['my-runner', '--flag']
        assert [result.is_dirty for result in calls[0][0]] == [True]

    def test_analyze_all_writes_report_to_output(self, in_tmp, make_difftest_dir, llvm, capsys):
        make_difftest_dir('.difftests/test_a', extra={'nodeid': 'a'})

        assert cli.main(['analyze-all', '--output', 'report.json']) == 0

        assert capsys.readouterr().out == ''
        data = json.loads((in_tmp / 'report.json').read_text())
        assert [(entry['test_info']['extra'], entry['verdict']) for entry in data] == [({'nodeid': 'a'}, 'clean')]

    def test_output_report_is_written_before_the_action(self, in_tmp, make_difftest_dir, llvm):
        make_difftest_dir('.difftests/test_b', extra={'nodeid': 'b'}, profraws={'1.profraw': b'c'})

        assert cli.main(['analyze-all', '--action', 'assert-clean', '-o', 'report.json']) == 1

        assert json.loads((in_tmp / 'report.json').read_text())[0]['verdict'] == 'dirty'

    def test_errors_are_reported_on_stderr(self, in_tmp, capsys):
        assert cli.main(['analyze', '--dir', 'absent']) == 1

        assert capsys.readouterr().err.startswith('difftests: ')


@pytest.mark.small
class TestIndexCommands:
    """Tests for analysis from index files."""

    @pytest.fixture
    def indexes(self, in_tmp, touch_at):
        (in_tmp / 'src').mkdir()
        for name in ('lib.rs', 'io.rs'):
            (in_tmp / 'src' / name).write_text('')
            touch_at(in_tmp / 'src' / name, T0 - timedelta(hours=1))
        TinyIndex(('src/lib.rs',), T0, TestInfo('', {'nodeid': 'a'})).write(in_tmp / 'idx' / 'a' / 'index.json')
        TinyIndex(('src/io.rs',), T0, TestInfo('', {'nodeid': 'b'})).write(in_tmp / 'idx' / 'b' / 'index.json')
        return in_tmp / 'idx'

    def test_from_index_requires_index_root(self, in_tmp, capsys):
        assert cli.main(['analyze-all-from-index']) == 2

        assert '--index-root is required' in capsys.readouterr().err

    def test_from_index(self, indexes, touch_at, in_tmp, capsys):
        touch_at(in_tmp / 'src' / 'io.rs', T0 + timedelta(hours=1))

        assert cli.main(['analyze-all-from-index', '--index-root', str(indexes)]) == 0

        data = json.loads(capsys.readouterr().out)
        assert [entry['verdict'] for entry in data] == ['clean', 'dirty']
        assert data[0]['dir'] is None

    def test_from_index_writes_report_to_output(self, indexes, in_tmp, capsys):
        assert cli.main(['analyze-all-from-index', '--index-root', str(indexes), '-o', 'report.json']) == 0

        assert capsys.readouterr().out == ''
        assert len(json.loads((in_tmp / 'report.json').read_text())) == 2

    def test_flattened_index_paths_resolve_from_a_subdirectory(
        self, indexes, in_tmp, monkeypatch, fake_diff_source, capsys
    ):
        monkeypatch.setattr('pytest_difftests.config.GitRepoDiffSource', lambda _path: fake_diff_source)
        monkeypatch.chdir(in_tmp / 'src')
        command = ['analyze-all-from-index', '--index-root', '../idx']

        assert cli.main([*command, '--flatten-files-to', 'repo-root']) == 0
        assert [entry['verdict'] for entry in json.loads(capsys.readouterr().out)] == ['clean', 'clean']

        assert cli.main(command) == 0
        assert [entry['verdict'] for entry in json.loads(capsys.readouterr().out)] == ['dirty', 'dirty']

    def test_rerun_dirty_from_indexes(self, indexes, touch_at, in_tmp, monkeypatch):
        calls = []
        monkeypatch.setattr(cli, 'rerun_dirty', lambda results, runner: calls.append(runner))
        touch_at(in_tmp / 'src' / 'lib.rs', T0 + timedelta(hours=1))

        assert cli.main(['rerun-dirty-from-indexes', '--index-root', str(indexes)]) == 0

        assert calls == [['difftests-default-rerunner']]

    def test_run_analysis_with_test_index(self, indexes, capsys):
        index = str(indexes / 'a' / 'index.json')

        assert cli.main(['low-level', 'run-analysis-with-test-index', '--index', index]) == 0

        assert capsys.readouterr().out.strip() == 'clean'

    def test_touch_same_files_report(self, indexes, capsys):
        args = [str(indexes / 'a' / 'index.json'), str(indexes / 'b' / 'index.json')]

        assert cli.main(['low-level', 'indexes-touch-same-files-report', *args]) == 0
        assert json.loads(capsys.readouterr().out) == [
            {'file': 'src/lib.rs', 'only_in': 'first'},
            {'file': 'src/io.rs', 'only_in': 'second'},
        ]

        assert cli.main(['low-level', 'indexes-touch-same-files-report', *args, '--action', 'assert']) == 1
        err = capsys.readouterr().err
        assert 'src/lib.rs only in first index' in err
        assert 'indexes do not touch the same files' in err


@pytest.mark.small
class TestLowLevelCommands:
    """Tests for the single-step subcommands."""

    def test_merge_then_export(self, in_tmp, make_difftest_dir, llvm, capsys):
        make_difftest_dir('d/test_a', profraws={'1.profraw': b'c'})

        assert cli.main(['low-level', 'merge-profdata', '--dir', 'd/test_a']) == 0
        assert cli.main(['low-level', 'export-profdata', '--dir', 'd/test_a']) == 0

        assert capsys.readouterr().out.strip() == '1 files touched'
        assert len(llvm.merges) == 1

    def test_run_analysis(self, in_tmp, make_difftest_dir, llvm, capsys):
        make_difftest_dir('d/test_a', profraws={'1.profraw': b'c'})
        cli.main(['low-level', 'merge-profdata', '--dir', 'd/test_a'])

        assert cli.main(['low-level', 'run-analysis', '--dir', 'd/test_a']) == 0

        assert capsys.readouterr().out.strip() == 'dirty'

    def test_compile_test_index(self, in_tmp, make_difftest_dir, llvm):
        make_difftest_dir('d/test_a', extra={'nodeid': 'a'}, profraws={'1.profraw': b'c'})
        cli.main(['low-level', 'merge-profdata', '--dir', 'd/test_a'])

        assert cli.main(['low-level', 'compile-test-index', '--dir', 'd/test_a', '-o', 'out/index.json']) == 0

        index = read_index(in_tmp / 'out' / 'index.json')
        assert index.files == ('/repo/src/lib.rs',)
        assert index.test_info == TestInfo('', {'nodeid': 'a'})

    def test_export_without_merge_fails(self, in_tmp, make_difftest_dir, llvm, capsys):
        make_difftest_dir('d/test_a')

        assert cli.main(['low-level', 'export-profdata', '--dir', 'd/test_a']) == 1

        assert 'merge the profiles first' in capsys.readouterr().err

    def test_compile_index_and_clean_to_explicit_path(self, in_tmp, make_difftest_dir, llvm):
        directory = make_difftest_dir('d/test_a', extra={'nodeid': 'a'}, profraws={'1.profraw': b'c'})
        command = ['low-level', 'test-client-compile-test-index-and-clean', '--dir', 'd/test_a']

        assert cli.main([*command, '-o', 'out/index.json', '--full-index']) == 0

        index = read_index(in_tmp / 'out' / 'index.json')
        assert index.regions
        assert index.test_info == TestInfo('', {'nodeid': 'a'})
        assert (directory / CLEANED_FILENAME).exists()
        assert not (directory / MERGED_PROFDATA_FILENAME).exists()

    def test_compile_index_and_clean_resolves_under_index_root(self, in_tmp, make_difftest_dir, llvm):
        make_difftest_dir('d/test_a', profraws={'1.profraw': b'c'})
        command = ['low-level', 'test-client-compile-test-index-and-clean', '--dir', 'd/test_a']

        assert cli.main([*command, '--output', 'resolve', '--root', 'd', '--index-root', 'idx']) == 0

        assert read_index(in_tmp / 'idx' / 'test_a' / 'index.json').files == ('/repo/src/lib.rs',)

    def test_compile_index_and_clean_resolve_needs_index_root(self, in_tmp, make_difftest_dir, llvm, capsys):
        directory = make_difftest_dir('d/test_a', profraws={'1.profraw': b'c'})
        command = ['low-level', 'test-client-compile-test-index-and-clean', '--dir', 'd/test_a']

        assert cli.main([*command, '--output', 'resolve', '--root', 'd']) == 2

        assert '--index-root is required with --output resolve' in capsys.readouterr().err
        assert not (directory / CLEANED_FILENAME).exists()

    def test_compile_index_and_clean_fails_once_cleaned(self, in_tmp, make_difftest_dir, llvm, capsys):
        make_difftest_dir('d/test_a', profraws={'1.profraw': b'c'})
        command = ['low-level', 'test-client-compile-test-index-and-clean', '--dir', 'd/test_a', '-o', 'index.json']
        cli.main(command)

        assert cli.main(command) == 1

        assert capsys.readouterr().err.startswith('difftests: ')
