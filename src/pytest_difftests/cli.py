"""The ``difftests`` command line.

Subcommands mirror the analysis workflow:

    difftests discover-difftests --dir .difftests
    difftests analyze --dir .difftests/tests/test_a.py/test_x --algo git-diff-files
    difftests analyze-all --dir .difftests --action rerun-dirty
    difftests analyze-all-from-index --index-root .difftests-index --algo git-diff-hunks
    difftests low-level merge-profdata --dir ...

Defaults come from ``[tool.difftests]`` in the pyproject.toml of the current
directory; command line values override them.
"""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
import shlex
import sys
from typing import TYPE_CHECKING

from pytest_difftests import __version__
from pytest_difftests.analysis.context import AnalysisConfig, AnalysisContext
from pytest_difftests.config import (
    ALGORITHMS,
    DEFAULT_DIR,
    INDEX_STRATEGIES,
    DifftestsConfig,
    load_config,
    make_compiler_config,
    make_dirty_algorithm,
    merge_configs,
)
from pytest_difftests.coverage.compare import compare_indexes_touch_same_files
from pytest_difftests.coverage.index import IndexCompilerConfig, TestIndex
from pytest_difftests.difftest.core import Difftest, Remap, discover_difftests
from pytest_difftests.difftest.group import GROUP_SELF_JSON_FILENAME, discover_group, group_from_difftests
from pytest_difftests.difftest.llvm import LlvmTools
from pytest_difftests.difftest.ops import (
    AnalysisOptions,
    CompileIndexAndCleanConfig,
    IndexStrategy,
    analyze_all,
    analyze_all_from_index,
    analyze_difftest,
    analyze_group,
    compile_index_and_clean,
    index_resolver_for,
)
from pytest_difftests.errors import DifftestsError
from pytest_difftests.reporting import JsonReporter
from pytest_difftests.rerun.runner import DEFAULT_RUNNER, rerun_dirty


if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from pytest_difftests.analysis.dirty import DirtyAlgorithm
    from pytest_difftests.difftest.core import IndexPathResolver
    from pytest_difftests.difftest.group import DifftestGroup
    from pytest_difftests.difftest.ops import AnalyzeResult


logger = logging.getLogger(__name__)

LOG_ENV_VAR = 'DIFFTESTS_LOG'
ACTIONS = ('print', 'assert-clean', 'rerun-dirty')
REPORT_ACTIONS = ('print', 'assert')
RESOLVE_OUTPUT = 'resolve'


def _out(text: str) -> None:
    print(text)  # noqa: T201


def _err(text: str) -> None:
    print(text, file=sys.stderr)  # noqa: T201


def _cli_config(args: argparse.Namespace) -> DifftestsConfig:
    # analyze and analyze-group take the difftests root as --root, the rest as --dir
    root = getattr(args, 'root', None) if hasattr(args, 'root') else getattr(args, 'dir', None)
    return DifftestsConfig(
        dir=str(root) if root is not None else None,
        index_root=_opt_str(getattr(args, 'index_root', None)),
        index_strategy=getattr(args, 'index_strategy', None),
        algo=getattr(args, 'algo', None),
        full_index=getattr(args, 'full_index', None),
        flatten_files_to_repo_root=getattr(args, 'flatten_files_to', None) == 'repo-root' or None,
        remove_bin_path=getattr(args, 'remove_bin_path', None),
        ignore_registry_files=getattr(args, 'ignore_registry_files', None),
        runner=getattr(args, 'runner', None),
    )


def _opt_str(value: Path | str | None) -> str | None:
    return str(value) if value is not None else None


def resolve_config(args: argparse.Namespace, rootdir: Path | None = None) -> DifftestsConfig:
    """Merge the pyproject.toml configuration with the parsed arguments."""
    file_config = load_config(rootdir if rootdir is not None else Path.cwd())
    return merge_configs(file_config, _cli_config(args))


def _difftests_root(config: DifftestsConfig) -> Path:
    return Path(config.dir or DEFAULT_DIR)


def _index_root(config: DifftestsConfig) -> Path | None:
    return Path(config.index_root) if config.index_root else None


def _index_strategy(config: DifftestsConfig) -> IndexStrategy:
    return IndexStrategy(config.index_strategy or IndexStrategy.NEVER.value)


def _dirty_algorithm(args: argparse.Namespace, config: DifftestsConfig) -> DirtyAlgorithm:
    return make_dirty_algorithm(
        config.algo or 'fs-mtime',
        getattr(args, 'commit', None),
        flatten_files_to_repo_root=bool(config.flatten_files_to_repo_root),
    )


def _compiler_config(config: DifftestsConfig) -> IndexCompilerConfig:
    return make_compiler_config(
        full_index=bool(config.full_index),
        flatten_files_to_repo_root=bool(config.flatten_files_to_repo_root),
        remove_bin_path=config.remove_bin_path is not False,
        ignore_registry_files=config.ignore_registry_files is not False,
    )


def _analysis_options(args: argparse.Namespace, config: DifftestsConfig) -> AnalysisOptions:
    return AnalysisOptions(
        algorithm=_dirty_algorithm(args, config),
        index_strategy=_index_strategy(config),
        compiler=_compiler_config(config),
        force=getattr(args, 'force', False),
        other_binaries=tuple(getattr(args, 'other_binaries', None) or ()),
        tools=LlvmTools.from_env(),
    )


def _print_verdict(result: AnalyzeResult) -> int:
    _out(result.verdict.value)
    return 0


def _perform_action(args: argparse.Namespace, config: DifftestsConfig, results: list[AnalyzeResult]) -> int:
    action = getattr(args, 'action', 'print')
    output = getattr(args, 'output', None)
    if output is not None:
        JsonReporter().write_report(results, output)
        logger.info('Wrote report %s', output)
    if action == 'print':
        if output is None:
            _out(JsonReporter().to_json(results))
        return 0
    if action == 'assert-clean':
        dirty = [result for result in results if result.is_dirty]
        if dirty:
            for result in dirty:
                _err(f'dirty: {result.test_info.name or result.test_info.extra}')
            _err('some tests are dirty')
            return 1
        return 0
    runner = shlex.split(config.runner) if config.runner else [DEFAULT_RUNNER]
    rerun_dirty(results, runner)
    return 0


def cmd_discover_difftests(args: argparse.Namespace) -> int:
    """List the difftests under the difftests root as JSON."""
    config = resolve_config(args)
    root = _difftests_root(config)
    index_root = _index_root(config)
    resolver = Remap(from_root=root, to_root=index_root) if index_root is not None else None
    difftests = discover_difftests(root, ignore_incompatible=args.ignore_incompatible, resolver=resolver)
    _out(JsonReporter().difftests_to_json(difftests))
    return 0


def cmd_analyze(args: argparse.Namespace) -> int:
    """Analyze a single difftest and print its verdict."""
    config = resolve_config(args)
    options = _analysis_options(args, config)
    resolver = index_resolver_for(options.index_strategy, _difftests_root(config), _index_root(config))
    difftest = Difftest.discover_from(args.dir, resolver)
    return _print_verdict(analyze_difftest(difftest, options, resolver))


def load_group(
    directory: Path,
    resolver: IndexPathResolver | None = None,
    other_binaries: Sequence[str] = (),
) -> DifftestGroup:
    """Load ``directory`` as a recorded group, or as a group of the difftests under it."""
    if (directory / GROUP_SELF_JSON_FILENAME).is_file():
        return discover_group(directory, resolver, other_binaries)
    return group_from_difftests(directory, resolver, other_binaries)


def cmd_analyze_group(args: argparse.Namespace) -> int:
    """Analyze a group and print its verdict."""
    config = resolve_config(args)
    options = _analysis_options(args, config)
    resolver = index_resolver_for(options.index_strategy, _difftests_root(config), _index_root(config))
    group = load_group(args.dir, resolver)
    return _print_verdict(analyze_group(group, options, resolver))


def cmd_analyze_all(args: argparse.Namespace) -> int:
    """Analyze every difftest under the difftests root."""
    config = resolve_config(args)
    options = _analysis_options(args, config)
    results = analyze_all(
        _difftests_root(config),
        options,
        index_root=_index_root(config),
        ignore_incompatible=args.ignore_incompatible,
    )
    return _perform_action(args, config, results)


def cmd_analyze_all_from_index(args: argparse.Namespace) -> int:
    """Analyze every index under the index root."""
    config = resolve_config(args)
    index_root = _index_root(config)
    if index_root is None:
        _err('difftests: --index-root is required')
        return 2
    results = analyze_all_from_index(index_root, _dirty_algorithm(args, config))
    return _perform_action(args, config, results)


def cmd_rerun_dirty_from_indexes(args: argparse.Namespace) -> int:
    """Analyze every index under the index root and rerun the dirty ones."""
    args.action = 'rerun-dirty'
    return cmd_analyze_all_from_index(args)


def cmd_merge_profdata(args: argparse.Namespace) -> int:
    """Merge the raw profiles of a difftest."""
    Difftest.discover_from(args.dir).merge_profraw_files(force=args.force, tools=LlvmTools.from_env())
    return 0


def cmd_export_profdata(args: argparse.Namespace) -> int:
    """Export the merged profile of a difftest and print a summary."""
    config = resolve_config(args)
    difftest = Difftest.discover_from(args.dir)
    coverage = difftest.export_coverage(
        ignore_registry_files=config.ignore_registry_files is not False,
        other_binaries=args.other_binaries or (),
        tools=LlvmTools.from_env(),
    )
    touched = {filename for filename, _ in coverage.touched_regions()}
    _out(f'{len(touched)} files touched')
    return 0


def cmd_run_analysis(args: argparse.Namespace) -> int:
    """Analyze the already merged coverage of a difftest."""
    config = resolve_config(args)
    difftest = Difftest.discover_from(args.dir)
    context = difftest.start_analysis(other_binaries=args.other_binaries or (), tools=LlvmTools.from_env())
    context.run(AnalysisConfig(dirty_algorithm=_dirty_algorithm(args, config)))
    _out(context.finish_analysis().value)
    return 0


def cmd_compile_test_index(args: argparse.Namespace) -> int:
    """Compile the merged coverage of a difftest into an index file."""
    config = resolve_config(args)
    options = _analysis_options(args, config)
    difftest = Difftest.discover_from(args.dir)
    index = difftest.compile_index(options.compiler, other_binaries=options.other_binaries, tools=options.tools)
    index.write(args.output)
    logger.info('Wrote index %s', args.output)
    return 0


def cmd_test_client_compile_test_index_and_clean(args: argparse.Namespace) -> int:
    """Compile the index of a finished difftest, then clean the difftest."""
    config = resolve_config(args)
    options = {
        'compiler': _compiler_config(config),
        'other_binaries': tuple(args.other_binaries or ()),
        'tools': LlvmTools.from_env(),
    }
    if str(args.output) == RESOLVE_OUTPUT:
        index_root = _index_root(config)
        if index_root is None:
            _err('difftests: --index-root is required with --output resolve')
            return 2
        compile_config = CompileIndexAndCleanConfig.from_roots(index_root, _difftests_root(config), **options)
    else:
        compile_config = CompileIndexAndCleanConfig.to_path(args.output, **options)
    compile_index_and_clean(Difftest.discover_from(args.dir), compile_config)
    return 0


def cmd_run_analysis_with_test_index(args: argparse.Namespace) -> int:
    """Analyze a single index file."""
    config = resolve_config(args)
    context = AnalysisContext.from_index_file(args.index)
    context.run(AnalysisConfig(dirty_algorithm=_dirty_algorithm(args, config)))
    _out(context.finish_analysis().value)
    return 0


def cmd_indexes_touch_same_files_report(args: argparse.Namespace) -> int:
    """Compare the files touched by two indexes."""
    differences = compare_indexes_touch_same_files(TestIndex.read(args.index1), TestIndex.read(args.index2))
    if args.action == 'print':
        _out(JsonReporter().differences_to_json(differences))
        return 0
    if differences:
        for difference in differences:
            _err(f'{difference.file} only in {difference.only_in.value} index')
        _err('indexes do not touch the same files')
        return 1
    return 0


def _add_algo_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--algo', choices=ALGORITHMS, default=None, help='Dirty-detection algorithm (default: fs-mtime)'
    )
    parser.add_argument('--commit', default=None, help='Base commit of the git algorithms (default: HEAD)')


def _add_index_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--index-strategy',
        choices=INDEX_STRATEGIES,
        default=None,
        help='When test indexes are used and built (default: never)',
    )
    parser.add_argument('--index-root', type=Path, default=None, help='Directory indexes are mirrored into')


def _add_compile_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--full-index', action='store_true', default=None, help='Keep regions in compiled indexes')
    parser.add_argument(
        '--no-remove-bin-path',
        dest='remove_bin_path',
        action='store_false',
        default=None,
        help='Keep the binary path in compiled indexes',
    )
    _add_flatten_arg(parser)


def _add_flatten_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--flatten-files-to',
        choices=('repo-root',),
        default=None,
        help='Index paths are relative to the repository root',
    )


def _add_export_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--no-ignore-registry-files',
        dest='ignore_registry_files',
        action='store_false',
        default=None,
        help='Keep dependency registry files in coverage',
    )
    parser.add_argument(
        '--bin',
        dest='other_binaries',
        action='append',
        default=None,
        help='Further instrumented binary to export coverage for (repeatable)',
    )


def _add_action_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--action', choices=ACTIONS, default='print', help='What to do with the results')
    parser.add_argument('--runner', default=None, help=f'Rerunner command for rerun-dirty (default: {DEFAULT_RUNNER})')
    parser.add_argument('--output', '-o', type=Path, default=None, help='Write the JSON report to this file')


def _add_force(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--force', action='store_true', help='Regenerate intermediate files even if present')


def _add_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    handler: Callable[[argparse.Namespace], int],
) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(name, help=(handler.__doc__ or '').strip().splitlines()[0])
    parser.set_defaults(handler=handler)
    return parser


def build_parser() -> argparse.ArgumentParser:
    """Build the ``difftests`` argument parser."""
    parser = argparse.ArgumentParser(prog='difftests', description='Find the tests affected by source changes.')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument(
        '--log-level',
        default=None,
        help=f'Logging level (default: ${LOG_ENV_VAR} or WARNING)',
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    discover = _add_command(subparsers, 'discover-difftests', cmd_discover_difftests)
    discover.add_argument('--dir', type=Path, default=None, help=f'Difftests root (default: {DEFAULT_DIR})')
    discover.add_argument('--index-root', type=Path, default=None, help='Directory indexes are mirrored into')
    discover.add_argument('--ignore-incompatible', action='store_true', help='Skip difftests of other versions')

    analyze = _add_command(subparsers, 'analyze', cmd_analyze)
    analyze.add_argument('--dir', type=Path, required=True, help='The difftest directory')
    analyze.add_argument('--root', type=Path, default=None, help=f'Difftests root (default: {DEFAULT_DIR})')
    for add in (_add_force, _add_algo_args, _add_index_args, _add_compile_args, _add_export_args):
        add(analyze)

    group = _add_command(subparsers, 'analyze-group', cmd_analyze_group)
    group.add_argument('--dir', type=Path, required=True, help='The group directory')
    group.add_argument('--root', type=Path, default=None, help=f'Difftests root (default: {DEFAULT_DIR})')
    for add in (_add_force, _add_algo_args, _add_index_args, _add_compile_args, _add_export_args):
        add(group)

    analyze_all_parser = _add_command(subparsers, 'analyze-all', cmd_analyze_all)
    analyze_all_parser.add_argument('--dir', type=Path, default=None, help=f'Difftests root (default: {DEFAULT_DIR})')
    analyze_all_parser.add_argument(
        '--ignore-incompatible', action='store_true', help='Skip difftests of other versions'
    )
    for add in (_add_force, _add_algo_args, _add_index_args, _add_compile_args, _add_export_args, _add_action_args):
        add(analyze_all_parser)

    from_index = _add_command(subparsers, 'analyze-all-from-index', cmd_analyze_all_from_index)
    from_index.add_argument('--index-root', type=Path, default=None, help='Directory holding the indexes')
    _add_algo_args(from_index)
    _add_flatten_arg(from_index)
    _add_action_args(from_index)

    rerun_from_index = _add_command(subparsers, 'rerun-dirty-from-indexes', cmd_rerun_dirty_from_indexes)
    rerun_from_index.add_argument('--index-root', type=Path, default=None, help='Directory holding the indexes')
    rerun_from_index.add_argument('--runner', default=None, help=f'Rerunner command (default: {DEFAULT_RUNNER})')
    _add_algo_args(rerun_from_index)
    _add_flatten_arg(rerun_from_index)

    low_level = subparsers.add_parser('low-level', help='Run single steps of the analysis pipeline')
    low_level_commands = low_level.add_subparsers(dest='low_level_command', required=True)

    merge = _add_command(low_level_commands, 'merge-profdata', cmd_merge_profdata)
    merge.add_argument('--dir', type=Path, required=True, help='The difftest directory')
    _add_force(merge)

    export = _add_command(low_level_commands, 'export-profdata', cmd_export_profdata)
    export.add_argument('--dir', type=Path, required=True, help='The difftest directory')
    _add_export_args(export)

    run_analysis = _add_command(low_level_commands, 'run-analysis', cmd_run_analysis)
    run_analysis.add_argument('--dir', type=Path, required=True, help='The difftest directory')
    _add_algo_args(run_analysis)
    _add_export_args(run_analysis)

    compile_index = _add_command(low_level_commands, 'compile-test-index', cmd_compile_test_index)
    compile_index.add_argument('--dir', type=Path, required=True, help='The difftest directory')
    compile_index.add_argument('--output', '-o', type=Path, required=True, help='Where to write the index')
    _add_compile_args(compile_index)
    _add_export_args(compile_index)

    with_index = _add_command(low_level_commands, 'run-analysis-with-test-index', cmd_run_analysis_with_test_index)
    with_index.add_argument('--index', type=Path, required=True, help='The index file')
    _add_algo_args(with_index)
    _add_flatten_arg(with_index)

    compile_and_clean = _add_command(
        low_level_commands,
        'test-client-compile-test-index-and-clean',
        cmd_test_client_compile_test_index_and_clean,
    )
    compile_and_clean.add_argument('--dir', type=Path, required=True, help='The difftest directory')
    compile_and_clean.add_argument(
        '--output',
        '-o',
        type=Path,
        required=True,
        help=f'Where to write the index, or "{RESOLVE_OUTPUT}" to mirror --root under --index-root',
    )
    compile_and_clean.add_argument('--root', type=Path, default=None, help=f'Difftests root (default: {DEFAULT_DIR})')
    compile_and_clean.add_argument('--index-root', type=Path, default=None, help='Directory indexes are mirrored into')
    _add_compile_args(compile_and_clean)
    _add_export_args(compile_and_clean)

    report = _add_command(low_level_commands, 'indexes-touch-same-files-report', cmd_indexes_touch_same_files_report)
    report.add_argument('index1', type=Path, help='The first index')
    report.add_argument('index2', type=Path, help='The second index')
    report.add_argument('--action', choices=REPORT_ACTIONS, default='print', help='What to do with the report')

    return parser


def configure_logging(level: str | None) -> None:
    """Configure logging to stderr from ``level`` or ``DIFFTESTS_LOG``."""
    name = (level or os.environ.get(LOG_ENV_VAR) or 'WARNING').upper()
    logging.basicConfig(level=getattr(logging, name, logging.WARNING), stream=sys.stderr)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point of ``difftests``.

    Returns:
        0 on success, 1 when an analysis error occurred or a check failed.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)
    try:
        return args.handler(args)
    except DifftestsError as exc:
        _err(f'difftests: {exc}')
        return 1


if __name__ == '__main__':
    sys.exit(main())
