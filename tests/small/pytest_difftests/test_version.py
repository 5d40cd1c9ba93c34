"""Tests for package version and basic imports."""

from __future__ import annotations

import re

import pytest

from pytest_difftests import __version__
from pytest_difftests.difftest.core import check_version
from pytest_difftests.errors import MissingFileError, VersionMismatchError


@pytest.mark.small
def test_version_is_string():
    assert isinstance(__version__, str)


@pytest.mark.small
def test_version_follows_semver_pattern():
    # Match semver with optional prerelease (e.g., 0.1.0-alpha.1)
    semver_pattern = r'^\d+\.\d+\.\d+(-[a-zA-Z]+\.\d+)?$'
    assert re.match(semver_pattern, __version__), f'Version {__version__} does not match semver pattern'


@pytest.mark.small
def test_recorded_version_must_match_exactly(tmp_path):
    (tmp_path / 'difftests_version').write_text(__version__ + '\n')
    check_version(tmp_path)

    (tmp_path / 'difftests_version').write_text('0.0.0')
    with pytest.raises(VersionMismatchError):
        check_version(tmp_path)


@pytest.mark.small
def test_missing_version_file(tmp_path):
    with pytest.raises(MissingFileError):
        check_version(tmp_path)
