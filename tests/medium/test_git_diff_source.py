"""Integration tests for the git diff algorithms against real repositories."""

from __future__ import annotations

from datetime import UTC, datetime

from git import Actor, Repo
import pytest

from pytest_difftests.analysis.dirty import GitDiff, GitDiffStrategy, is_dirty
from pytest_difftests.analysis.git import WHOLE_FILE, GitRepoDiffSource, LineRange
from pytest_difftests.config import make_compiler_config
from pytest_difftests.coverage.index import FullIndex, IndexRegion, TestInfo, TinyIndex, compile_index
from pytest_difftests.errors import GitDiffError, IndexGranularityError


T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)
INFO = TestInfo('', {'nodeid': 'tests/test_lib.py::test_add'})
AUTHOR = Actor('Difftests', 'difftests@example.com')

LIB_RS = """\
pub fn add(a: i32, b: i32) -> i32 {
    a + b
}

pub fn sub(a: i32, b: i32) -> i32 {
    a - b
}
"""


@pytest.fixture
def repo(tmp_path):
    """A repository with src/lib.rs committed."""
    repository = Repo.init(tmp_path)
    (tmp_path / 'src').mkdir()
    (tmp_path / 'src' / 'lib.rs').write_text(LIB_RS)
    repository.index.add(['src/lib.rs'])
    repository.index.commit('add lib', author=AUTHOR, committer=AUTHOR)
    return repository


def commit_all(repository, message):
    repository.git.add(all=True)
    return repository.index.commit(message, author=AUTHOR, committer=AUTHOR)


def edit_lib(repo_root, old, new):
    path = repo_root / 'src' / 'lib.rs'
    path.write_text(path.read_text().replace(old, new))


def add_index(regions=((2, 1, 2, 10),)):
    """Index of a test that executed the body of ``add``."""
    return FullIndex(
        files=('src/lib.rs',),
        test_run=T0,
        test_info=INFO,
        regions=tuple(IndexRegion(l1, c1, l2, c2, 1, 0) for l1, c1, l2, c2 in regions),
    )


def verdicts(repo_root, index=None, commit=None):
    index = index or add_index()
    source = GitRepoDiffSource(repo_root)
    return (
        is_dirty(index, GitDiff(GitDiffStrategy.FILES_ONLY, commit=commit, source=source)),
        is_dirty(index, GitDiff(GitDiffStrategy.HUNKS, commit=commit, source=source)),
    )


@pytest.mark.medium
class TestGitRepoDiffSource:
    """Tests for answering diff questions from a repository."""

    def test_root_is_the_working_tree(self, repo, tmp_path):
        (tmp_path / 'src' / 'nested').mkdir()

        assert GitRepoDiffSource(tmp_path / 'src' / 'nested').root == tmp_path.resolve()

    def test_clean_tree_has_no_changes(self, repo, tmp_path):
        assert GitRepoDiffSource(tmp_path).changed_files(None) == set()

    def test_modified_lines(self, repo, tmp_path):
        edit_lib(tmp_path, '    a - b', '    b - a')
        source = GitRepoDiffSource(tmp_path)
        lib = (tmp_path.resolve() / 'src' / 'lib.rs').as_posix()

        assert source.changed_files(None) == {lib}
        assert source.changed_hunks(None, lib) == [LineRange(6, 6)]

    def test_untracked_file_is_wholly_changed(self, repo, tmp_path):
        (tmp_path / 'src' / 'new.rs').write_text('pub fn f() {}\n')
        source = GitRepoDiffSource(tmp_path)
        new = (tmp_path.resolve() / 'src' / 'new.rs').as_posix()

        assert new in source.changed_files(None)
        assert source.changed_hunks(None, new) == [WHOLE_FILE]

    def test_deleted_file_is_wholly_changed(self, repo, tmp_path):
        (tmp_path / 'src' / 'lib.rs').unlink()
        source = GitRepoDiffSource(tmp_path)
        lib = (tmp_path.resolve() / 'src' / 'lib.rs').as_posix()

        assert source.changed_files(None) == {lib}
        assert source.changed_hunks(None, lib) == [WHOLE_FILE]

    def test_not_a_repository(self, tmp_path):
        with pytest.raises(GitDiffError, match='not a git repository'):
            GitRepoDiffSource(tmp_path / 'missing')

    def test_unknown_commit(self, repo, tmp_path):
        with pytest.raises(GitDiffError):
            GitRepoDiffSource(tmp_path).changed_files('0' * 40)


@pytest.mark.medium
class TestGitDiffVerdicts:
    """Tests for file- and hunk-level verdicts on real edits."""

    def test_change_inside_executed_region(self, repo, tmp_path):
        edit_lib(tmp_path, '    a + b', '    b + a')

        assert verdicts(tmp_path) == (True, True)

    def test_change_outside_executed_region(self, repo, tmp_path):
        edit_lib(tmp_path, '    a - b', '    b - a')

        assert verdicts(tmp_path) == (True, False)

    def test_deletion_right_after_executed_region(self, repo, tmp_path):
        edit_lib(tmp_path, '    a + b\n}\n', '    a + b\n')

        assert verdicts(tmp_path) == (True, True)

    def test_untouched_file_changes_are_clean(self, repo, tmp_path):
        (tmp_path / 'README.md').write_text('docs\n')

        assert verdicts(tmp_path) == (False, False)

    def test_deleted_file_is_dirty(self, repo, tmp_path):
        (tmp_path / 'src' / 'lib.rs').unlink()

        assert verdicts(tmp_path) == (True, True)

    def test_new_touched_file_is_dirty(self, repo, tmp_path):
        (tmp_path / 'src' / 'gen.rs').write_text('pub fn g() {}\n')
        index = FullIndex(
            files=('src/gen.rs',),
            test_run=T0,
            test_info=INFO,
            regions=(IndexRegion(1, 1, 1, 10, 1, 0),),
        )

        assert verdicts(tmp_path, index) == (True, True)

    def test_base_commit_sees_committed_changes(self, repo, tmp_path):
        base = repo.head.commit.hexsha
        edit_lib(tmp_path, '    a + b', '    b + a')
        commit_all(repo, 'swap operands')

        assert verdicts(tmp_path) == (False, False)
        assert verdicts(tmp_path, commit=base) == (True, True)

    def test_hunks_against_files_only_index(self, repo, tmp_path):
        index = TinyIndex(files=('src/lib.rs',), test_run=T0, test_info=INFO)

        with pytest.raises(IndexGranularityError, match='full index'):
            is_dirty(index, GitDiff(GitDiffStrategy.HUNKS, repo_path=tmp_path))


@pytest.mark.medium
def test_flattened_index_paths_are_relative_to_repo_root(repo, tmp_path, make_coverage, make_function):
    lib = (tmp_path.resolve() / 'src' / 'lib.rs').as_posix()
    coverage = make_coverage(make_function([lib], [[2, 1, 2, 10, 1, 0]]))
    config = make_compiler_config(full_index=True, flatten_files_to_repo_root=True, repo_path=tmp_path)

    index = compile_index(coverage, config, test_run=T0, test_info=INFO)

    assert index.files == ('src/lib.rs',)
    edit_lib(tmp_path, '    a + b', '    b + a')
    assert is_dirty(index, GitDiff(GitDiffStrategy.HUNKS, repo_path=tmp_path)) is True
