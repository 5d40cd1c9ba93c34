"""Test-client side of recording: coverage-writer gates and sessions.

Exports:
    SerialGate: One coverage-writing session at a time
    GroupGate: Same-group sessions may overlap, nothing else
    init: Start recording a standalone test
    init_group: Start recording a group member
"""

from __future__ import annotations

from pytest_difftests.client.gate import CoverageGate, GateSession, GroupGate, SerialGate
from pytest_difftests.client.session import (
    DifftestsEnv,
    GroupMeta,
    GroupRegistry,
    TestDesc,
    init,
    init_group,
)


__all__ = [
    'CoverageGate',
    'DifftestsEnv',
    'GateSession',
    'GroupGate',
    'GroupMeta',
    'GroupRegistry',
    'SerialGate',
    'TestDesc',
    'init',
    'init_group',
]
