"""pytest plugin recording difftests.

With ``--difftests``, every test requesting the ``difftest`` fixture records a
difftest directory under ``--difftests-dir`` (one per test, or one shared
directory per ``difftests_group`` marker). Instrumented programs the test
spawns inherit ``LLVM_PROFILE_FILE`` and write their profiles there:

    def test_cli(difftest):
        subprocess.run(['target/debug/app', '--help'], check=True)

With ``--difftests-index-root``, each recording is compiled into an index
under that directory as soon as it ends (groups at the end of the session),
and its directory is cleaned.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
import logging
from pathlib import Path, PurePosixPath
import re
from typing import TYPE_CHECKING

import pytest

from pytest_difftests.client.gate import GroupGate, SerialGate
from pytest_difftests.client.session import (
    GroupMeta,
    GroupRegistry,
    TestDesc,
    compile_group_index_and_clean,
    init,
    init_group,
)
from pytest_difftests.config import DEFAULT_DIR, load_config, make_compiler_config
from pytest_difftests.difftest.ops import CompileIndexAndCleanConfig


if TYPE_CHECKING:
    from collections.abc import Iterator

    from pytest_difftests.client.gate import CoverageGate
    from pytest_difftests.client.session import DifftestsEnv


logger = logging.getLogger(__name__)

GROUP_MARKER = 'difftests_group'
GROUPS_DIRNAME = '.groups'

_UNSAFE_NAME_CHARS = re.compile(r'[^\w.\-\[\]]')


def nodeid_to_path(nodeid: str) -> PurePosixPath:
    """Map a pytest node id to a relative difftest directory.

    >>> str(nodeid_to_path('tests/test_a.py::TestX::test_y[a/b]'))
    'tests/test_a.py/TestX/test_y[a_b]'
    """
    file_part, *names = nodeid.split('::')
    parts = [part for part in file_part.split('/') if part not in ('', '.', '..')]
    parts.extend(_UNSAFE_NAME_CHARS.sub('_', name) for name in names)
    return PurePosixPath(*parts)


def group_name(item: pytest.Item) -> str | None:
    """Return the ``difftests_group`` name of ``item``, if it has one."""
    marker = item.get_closest_marker(GROUP_MARKER)
    if marker is None:
        return None
    name = marker.args[0] if marker.args else marker.kwargs.get('name')
    if not isinstance(name, str) or not name:
        msg = f'{item.nodeid}: @pytest.mark.{GROUP_MARKER} needs a group name'
        raise pytest.UsageError(msg)
    return name


@dataclass
class DifftestsPluginState:
    """Recording state of one pytest process.

    Attributes:
        directory: Difftests root directory.
        bin_path: Instrumented binary recorded in test descriptions.
        gate: Coverage-writer gate shared by every recording.
        registry: Group directories initialized so far.
        group_members: Node ids of the collected members of each group.
        recorded: Number of recordings started.
        compile_config: When set, recordings are compiled into indexes and
            cleaned as they finish.
        indexed: Number of indexes written.
    """

    directory: Path
    bin_path: str
    gate: CoverageGate
    registry: GroupRegistry = field(default_factory=GroupRegistry)
    group_members: dict[str, list[str]] = field(default_factory=lambda: defaultdict(list))
    recorded: int = 0
    compile_config: CompileIndexAndCleanConfig | None = None
    indexed: int = 0

    def group_dir(self, name: str) -> Path:
        """Return the shared directory of group ``name``."""
        return self.directory / GROUPS_DIRNAME / _UNSAFE_NAME_CHARS.sub('_', name)

    def group_meta(self, name: str) -> GroupMeta:
        """Describe group ``name`` from its collected members."""
        return GroupMeta(
            name=name,
            bin_path=self.bin_path,
            directory=self.group_dir(name),
            extra={'nodeids': list(self.group_members.get(name, []))},
        )


STATE_KEY = pytest.StashKey[DifftestsPluginState]()


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add command-line options for pytest-difftests."""
    group = parser.getgroup('difftests', 'test-impact recording with difftests')
    group.addoption(
        '--difftests',
        action='store_true',
        default=False,
        dest='difftests',
        help='Record a difftest directory for every test using the difftest fixture',
    )
    group.addoption(
        '--difftests-dir',
        action='store',
        default=None,
        dest='difftests_dir',
        help=f'Directory to record difftests into (default: {DEFAULT_DIR})',
    )
    group.addoption(
        '--difftests-parallel-groups',
        action='store_true',
        default=False,
        dest='difftests_parallel_groups',
        help='Let members of the same group record concurrently',
    )
    group.addoption(
        '--difftests-bin',
        action='store',
        default='',
        dest='difftests_bin',
        help='Instrumented binary the tests exercise',
    )
    group.addoption(
        '--difftests-index-root',
        action='store',
        default=None,
        dest='difftests_index_root',
        help='Compile each finished recording into an index under this directory and clean it',
    )
    group.addoption(
        '--difftests-full-index',
        action='store_true',
        default=None,
        dest='difftests_full_index',
        help='Keep executed regions in compiled indexes (needed for git-diff-hunks)',
    )
    group.addoption(
        '--difftests-flatten-files-to',
        choices=('repo-root',),
        default=None,
        dest='difftests_flatten_files_to',
        help='Store compiled index paths relative to the repository root',
    )
    group.addoption(
        '--difftests-keep-bin-path',
        action='store_false',
        default=None,
        dest='difftests_remove_bin_path',
        help='Keep the binary path in compiled indexes',
    )


def pytest_configure(config: pytest.Config) -> None:
    """Register the group marker and set up recording when enabled."""
    config.addinivalue_line(
        'markers',
        f'{GROUP_MARKER}(name): record the test into the shared difftest group directory of name',
    )
    if not config.option.difftests:
        return

    file_config = load_config(config.rootpath)
    directory = _under_root(config, config.option.difftests_dir or file_config.dir or DEFAULT_DIR)
    gate: CoverageGate = GroupGate() if config.option.difftests_parallel_groups else SerialGate()
    compile_config = None
    if config.option.difftests_index_root:
        option = config.option
        compiler = make_compiler_config(
            full_index=_first_set(option.difftests_full_index, file_config.full_index, default=False),
            flatten_files_to_repo_root=_first_set(
                option.difftests_flatten_files_to == 'repo-root' or None,
                file_config.flatten_files_to_repo_root,
                default=False,
            ),
            remove_bin_path=_first_set(option.difftests_remove_bin_path, file_config.remove_bin_path, default=True),
            ignore_registry_files=file_config.ignore_registry_files is not False,
            repo_path=config.rootpath,
        )
        compile_config = CompileIndexAndCleanConfig.from_roots(
            _under_root(config, option.difftests_index_root),
            directory,
            compiler=compiler,
        )
    config.stash[STATE_KEY] = DifftestsPluginState(
        directory=directory,
        bin_path=config.option.difftests_bin,
        gate=gate,
        compile_config=compile_config,
    )
    logger.debug('Recording difftests into %s', directory)


def _under_root(config: pytest.Config, path: str) -> Path:
    resolved = Path(path)
    return resolved if resolved.is_absolute() else config.rootpath / resolved


def _first_set(*values: bool | None, default: bool) -> bool:
    return next((value for value in values if value is not None), default)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Collect the members of every difftests group."""
    state = config.stash.get(STATE_KEY, None)
    if state is None:
        return
    for item in items:
        name = group_name(item)
        if name is not None:
            state.group_members[name].append(item.nodeid)


@pytest.fixture
def difftest(request: pytest.FixtureRequest, monkeypatch: pytest.MonkeyPatch) -> Iterator[DifftestsEnv | None]:
    """Record the current test as a difftest.

    Yields the running recording, or None when ``--difftests`` is off.
    """
    state = request.config.stash.get(STATE_KEY, None)
    if state is None:
        yield None
        return

    name = group_name(request.node)
    if name is not None:
        env = init_group(name, state.group_meta, state.gate, state.registry)
    else:
        nodeid = request.node.nodeid
        desc = TestDesc(bin_path=state.bin_path, extra={'nodeid': nodeid})
        env = init(desc, state.directory / nodeid_to_path(nodeid), state.gate, compile_config=state.compile_config)
    state.recorded += 1

    with env:
        for key, value in env.env_for_children().items():
            monkeypatch.setenv(key, value)
        yield env
    if name is None and state.compile_config is not None:
        state.indexed += 1


def pytest_sessionfinish(session: pytest.Session) -> None:
    """Compile the indexes of the recorded groups once all members ended."""
    state = session.config.stash.get(STATE_KEY, None)
    if state is None or state.compile_config is None:
        return
    for meta in state.registry.groups():
        compile_group_index_and_clean(meta, state.compile_config)
        state.indexed += 1


def pytest_terminal_summary(terminalreporter: pytest.TerminalReporter, config: pytest.Config) -> None:
    """Report where the difftests were recorded."""
    state = config.stash.get(STATE_KEY, None)
    if state is None or not state.recorded:
        return
    terminalreporter.write_sep('-', 'difftests')
    terminalreporter.write_line(f'Recorded {state.recorded} difftests into {state.directory}')
    if state.compile_config is not None:
        terminalreporter.write_line(f'Compiled {state.indexed} indexes')
