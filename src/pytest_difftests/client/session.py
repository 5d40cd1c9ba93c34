"""Test-client side: record one test (or group member) into a difftest directory.

A session lays out the directory analysis later discovers, holds a gate slot
for the duration of the test, and tells spawned instrumented children where
to write their profiles:

    with init(TestDesc(bin_path, {'nodeid': nodeid}), directory, gate) as env:
        subprocess.run(cmd, env={**os.environ, **env.env_for_children()})
"""

from __future__ import annotations

from dataclasses import dataclass
import functools
import json
import logging
import os
import shutil
import threading
from typing import TYPE_CHECKING, Any

from pytest_difftests import __version__
from pytest_difftests.difftest.core import (
    OTHER_PROFILE_FILENAME_TEMPLATE,
    SELF_JSON_FILENAME,
    SELF_PROFILE_FILENAME,
    VERSION_FILENAME,
    Difftest,
)
from pytest_difftests.difftest.group import GROUP_FIRST_TEST_RUN_FILENAME, GROUP_SELF_JSON_FILENAME, discover_group
from pytest_difftests.difftest.ops import compile_index_and_clean


if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path
    from types import TracebackType
    from typing import Self

    from pytest_difftests.client.gate import CoverageGate, GateSession
    from pytest_difftests.difftest.ops import CompileIndexAndCleanConfig


logger = logging.getLogger(__name__)

PROFILE_FILE_ENV_VAR = 'LLVM_PROFILE_FILE'
GROUP_NO_CLEAN_ENV_VAR = 'DIFFTESTS_GROUP_NO_CLEAN'


@dataclass(frozen=True)
class TestDesc:
    """Description of a recorded test.

    Attributes:
        bin_path: The instrumented binary the test exercises.
        extra: Anything that helps identify the test (JSON-serializable).
    """

    __test__ = False  # not a pytest test class

    bin_path: str
    extra: Any = None


@dataclass(frozen=True)
class GroupMeta:
    """Description of a group, resolved once per group name.

    Attributes:
        name: Group name.
        bin_path: The instrumented binary every member exercises.
        directory: The shared group directory.
        extra: Anything that helps identify the group (JSON-serializable).
    """

    name: str
    bin_path: str
    directory: Path
    extra: Any = None


class DifftestsEnv:
    """A running recording; ``end`` (or leaving the ``with`` block) finishes it.

    Args:
        directory: Directory the recording writes to.
        gate_session: The held gate slot.
        on_end: Runs once after the gate slot is released.
    """

    def __init__(
        self,
        directory: Path,
        gate_session: GateSession,
        on_end: Callable[[], object] | None = None,
    ) -> None:
        self.directory = directory
        self._gate_session = gate_session
        self._on_end = on_end

    @property
    def self_profile(self) -> Path:
        """Return the path of the self profile."""
        return self.directory / SELF_PROFILE_FILENAME

    @property
    def profile_file_template(self) -> str:
        """Return the ``LLVM_PROFILE_FILE`` value for children."""
        return str(self.directory / OTHER_PROFILE_FILENAME_TEMPLATE)

    def env_for_children(self) -> dict[str, str]:
        """Return the environment variables spawned children need."""
        return {PROFILE_FILE_ENV_VAR: self.profile_file_template}

    @property
    def ended(self) -> bool:
        """Return True once the recording was finished."""
        return self._gate_session.ended

    def end(self) -> None:
        """Finish the recording and release the gate. Idempotent.

        Raises:
            DifftestsError: If compiling the index of the recording fails.
        """
        if self._gate_session.ended:
            return
        self._gate_session.end()
        if self._on_end is not None:
            self._on_end()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.end()


def _write_common_files(directory: Path) -> None:
    (directory / VERSION_FILENAME).write_text(__version__, encoding='utf-8')
    self_profile = directory / SELF_PROFILE_FILENAME
    if not self_profile.exists():
        self_profile.write_bytes(b'')


def _flush_callback(writer: Callable[[Path], None] | None, self_profile: Path) -> Callable[[], None] | None:
    if writer is None:
        return None

    def flush() -> None:
        logger.debug('Writing self profile %s', self_profile)
        writer(self_profile)

    return flush


def init(
    desc: TestDesc,
    directory: Path,
    gate: CoverageGate,
    *,
    self_profile_writer: Callable[[Path], None] | None = None,
    compile_config: CompileIndexAndCleanConfig | None = None,
) -> DifftestsEnv:
    """Start recording a standalone test into ``directory``.

    Waits for the gate first, then recreates the directory from scratch.

    Args:
        desc: Test description written to ``self.json``.
        directory: Difftest directory; removed first if it exists.
        gate: Coverage-writer gate of this process.
        self_profile_writer: Writes the process's own counters to the given
            path when the session ends.
        compile_config: When set, the index of the recording is
            compiled and the directory cleaned once the session ends.
    """
    self_profile = directory / SELF_PROFILE_FILENAME
    gate_session = gate.begin(None, _flush_callback(self_profile_writer, self_profile))
    try:
        if directory.exists():
            shutil.rmtree(directory)
        directory.mkdir(parents=True)
        self_profile.write_bytes(b'')
        (directory / SELF_JSON_FILENAME).write_text(
            json.dumps({'bin_path': desc.bin_path, 'extra': desc.extra}),
            encoding='utf-8',
        )
        _write_common_files(directory)
    except BaseException:
        gate_session.end()
        raise
    logger.debug('Recording %s into %s', desc.extra, directory)
    on_end = None
    if compile_config is not None:
        on_end = functools.partial(compile_difftest_index_and_clean, directory, compile_config)
    return DifftestsEnv(directory, gate_session, on_end)


def compile_difftest_index_and_clean(directory: Path, config: CompileIndexAndCleanConfig) -> Path:
    """Compile the index of the finished difftest in ``directory`` and clean it."""
    return compile_index_and_clean(Difftest.discover_from(directory), config)


def compile_group_index_and_clean(meta: GroupMeta, config: CompileIndexAndCleanConfig) -> Path:
    """Compile the index of a finished group and clean its directory.

    Call once every member of the group has ended.
    """
    return compile_index_and_clean(discover_group(meta.directory), config)


class GroupRegistry:
    """Tracks which group directories this process already initialized."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._groups: dict[str, GroupMeta] = {}

    def get_or_init(self, name: str, resolve_meta: Callable[[str], GroupMeta]) -> GroupMeta:
        """Return the meta of group ``name``, initializing its directory on first use."""
        with self._lock:
            meta = self._groups.get(name)
            if meta is None:
                meta = resolve_meta(name)
                if meta.name != name:
                    msg = f'group meta resolver returned {meta.name!r} for {name!r}'
                    raise ValueError(msg)
                init_group_dir(meta)
                self._groups[name] = meta
            return meta

    def groups(self) -> list[GroupMeta]:
        """Return the initialized groups in first-use order."""
        with self._lock:
            return list(self._groups.values())


def init_group_dir(meta: GroupMeta) -> None:
    """Create the group directory and its description files.

    An existing directory is wiped unless ``DIFFTESTS_GROUP_NO_CLEAN`` is set,
    in which case the recording accumulates and the first-run marker (the
    group watermark) is kept.
    """
    clean = GROUP_NO_CLEAN_ENV_VAR not in os.environ
    new = True
    if meta.directory.exists():
        if clean:
            shutil.rmtree(meta.directory)
        else:
            new = False
    meta.directory.mkdir(parents=True, exist_ok=True)
    if new:
        (meta.directory / GROUP_FIRST_TEST_RUN_FILENAME).write_bytes(b'')
    (meta.directory / GROUP_SELF_JSON_FILENAME).write_text(
        json.dumps({'name': meta.name, 'bin_path': meta.bin_path, 'extra': meta.extra}),
        encoding='utf-8',
    )
    _write_common_files(meta.directory)


def init_group(
    name: str,
    resolve_meta: Callable[[str], GroupMeta],
    gate: CoverageGate,
    registry: GroupRegistry,
    *,
    self_profile_writer: Callable[[Path], None] | None = None,
) -> DifftestsEnv:
    """Start recording a member of group ``name``.

    Args:
        name: Group name.
        resolve_meta: Builds the group meta the first time ``name`` is seen.
        gate: Coverage-writer gate of this process.
        registry: Group directories already initialized by this process.
        self_profile_writer: Writes the process's own counters when the last
            member of the running session ends.
    """
    meta = registry.get_or_init(name, resolve_meta)
    self_profile = meta.directory / SELF_PROFILE_FILENAME
    gate_session = gate.begin(name, _flush_callback(self_profile_writer, self_profile))
    logger.debug('Recording group member of %r into %s', name, meta.directory)
    return DifftestsEnv(meta.directory, gate_session)
