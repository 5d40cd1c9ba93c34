"""Default rerunner: reruns dirty tests with pytest.

Started by ``difftests ... --action=rerun-dirty`` with the invocation file as
its argument. Each dirty test is rerun by node id (``extra["nodeid"]``), each
dirty group in one pytest run over its members' node ids. Extra pytest
arguments can be passed in ``DIFFTESTS_RERUN_PYTEST_ARGS``.

Stops at the first failing test, like a failing ``--exitfirst`` run.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import sys
from typing import TYPE_CHECKING, Any

from pytest_difftests.errors import DifftestsError, RerunProtocolError
from pytest_difftests.rerun.invocation import read_invocation_from_command_line
from pytest_difftests.rerun.progress import TestCounts


if TYPE_CHECKING:
    from collections.abc import Sequence

    from pytest_difftests.coverage.index import TestInfo
    from pytest_difftests.rerun.invocation import RerunInvocation


logger = logging.getLogger(__name__)

PYTEST_ARGS_ENV_VAR = 'DIFFTESTS_RERUN_PYTEST_ARGS'


def _extra_dict(info: TestInfo) -> dict[str, Any]:
    if not isinstance(info.extra, dict):
        msg = f'test extra must be an object with node ids, got {info.extra!r}'
        raise RerunProtocolError(msg)
    return info.extra


def single_nodeid(info: TestInfo) -> str:
    """Return the pytest node id of a single dirty test."""
    extra = _extra_dict(info)
    nodeid = extra.get('nodeid')
    if not isinstance(nodeid, str):
        msg = f'test extra has no "nodeid": {extra!r}'
        raise RerunProtocolError(msg)
    return nodeid


def group_nodeids(info: TestInfo) -> list[str]:
    """Return the pytest node ids of a dirty group's members.

    Raises:
        RerunProtocolError: If no member node id can be found; running pytest
            without node ids would rerun the whole suite.
    """
    extra = _extra_dict(info)
    if 'nodeids' in extra:
        nodeids = [str(nodeid) for nodeid in extra['nodeids']]
    else:
        members = extra.get('tests', [])
        nodeids = [str(member['nodeid']) for member in members if isinstance(member, dict) and 'nodeid' in member]
    if not nodeids:
        msg = f'group {info.name!r} has no member node ids: {extra!r}'
        raise RerunProtocolError(msg)
    return nodeids


def plan(invocation: RerunInvocation) -> list[tuple[str, list[str]]]:
    """Turn an invocation into ``(name, node ids)`` pytest runs.

    Raises:
        RerunProtocolError: If a test or group can't be mapped to node ids.
    """
    runs = [(single_nodeid(info), [single_nodeid(info)]) for info in invocation.tests]
    runs.extend((str(info.name), group_nodeids(info)) for info in invocation.groups)
    return runs


def rerun(invocation: RerunInvocation, pytest_args: Sequence[str] = ()) -> int:
    """Rerun every planned pytest run, reporting progress on stdout.

    Returns:
        0 if every run passed, 1 otherwise.
    """
    runs = plan(invocation)
    with TestCounts() as counts:
        counts.initialize(len(runs))
        for name, nodeids in runs:
            with counts.start_test(name) as guard:
                command = [sys.executable, '-m', 'pytest', *pytest_args, *nodeids]
                logger.debug('Running %s', ' '.join(command))
                # pytest output goes to stderr so stdout carries only the protocol
                result = subprocess.run(command, stdout=sys.stderr, check=False)  # noqa: S603
                if result.returncode != 0:
                    guard.failed()
                    return 1
                guard.succeeded()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point of ``difftests-default-rerunner``."""
    logging.basicConfig(level=os.environ.get('DIFFTESTS_LOG', 'WARNING').upper(), stream=sys.stderr)
    try:
        invocation = read_invocation_from_command_line(sys.argv[1:] if argv is None else argv)
        return rerun(invocation, shlex.split(os.environ.get(PYTEST_ARGS_ENV_VAR, '')))
    except DifftestsError as exc:
        print(f'difftests-default-rerunner: {exc}', file=sys.stderr)  # noqa: T201
        return 1


if __name__ == '__main__':
    sys.exit(main())
