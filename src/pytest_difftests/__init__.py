"""pytest-difftests: Test-impact analysis from recorded coverage.

Rerun only the tests your change can actually reach.

pytest-difftests records the code-coverage footprint of every test run
(LLVM source-based coverage, exported with ``llvm-cov export``), compiles it
into a compact per-test index, and later decides whether the recorded result
is still valid ("clean") or must be rerun ("dirty") given the current state
of the source tree.

Example:
    Record coverage sessions while running a test suite::

        $ pytest --difftests

    Analyze every recorded test against the working tree::

        $ difftests analyze-all --algo=git-diff-hunks --index-strategy=always \\
            --index-root=.difftests-index

    Rerun the tests that became dirty::

        $ difftests analyze-all-from-index --index-root=.difftests-index --action=rerun-dirty
"""

from __future__ import annotations


__version__ = '0.5.0'
__all__ = ['__version__']
