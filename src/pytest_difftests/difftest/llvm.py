"""Thin wrapper around ``llvm-profdata`` and ``llvm-cov``.

Both tools are treated as black boxes: raw profiles go in, a merged profile
comes out; a merged profile plus the instrumented binaries go in, export
JSON comes out.

Tool locations come from the ``LLVM_PROFDATA`` and ``LLVM_COV`` environment
variables, falling back to whatever is on ``PATH``.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import subprocess
from typing import TYPE_CHECKING

from pytest_difftests.coverage.model import CoverageData
from pytest_difftests.errors import ExternalToolError


if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path


logger = logging.getLogger(__name__)

LLVM_PROFDATA_ENV_VAR = 'LLVM_PROFDATA'
LLVM_COV_ENV_VAR = 'LLVM_COV'
REGISTRY_FILENAME_REGEX = r'\.cargo/registry'


@dataclass(frozen=True)
class LlvmTools:
    """Locations of the LLVM coverage tools.

    Attributes:
        profdata: ``llvm-profdata`` executable.
        cov: ``llvm-cov`` executable.
    """

    profdata: str = 'llvm-profdata'
    cov: str = 'llvm-cov'

    @classmethod
    def from_env(cls) -> LlvmTools:
        """Resolve the tools from the environment."""
        return cls(
            profdata=os.environ.get(LLVM_PROFDATA_ENV_VAR, 'llvm-profdata'),
            cov=os.environ.get(LLVM_COV_ENV_VAR, 'llvm-cov'),
        )

    def _run(self, command: list[str]) -> str:
        logger.debug('Running %s', ' '.join(command))
        try:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise ExternalToolError(command, None, str(exc)) from exc
        if result.returncode != 0:
            raise ExternalToolError(command, result.returncode, result.stderr)
        return result.stdout

    def merge(self, profraws: Sequence[Path], out: Path) -> None:
        """Merge raw profiles into one sparse indexed profile at ``out``.

        Raises:
            ExternalToolError: If ``llvm-profdata`` fails.
        """
        command = [self.profdata, 'merge', '-sparse', *(str(p) for p in profraws), '-o', str(out)]
        logger.info('Merging %d profiles into %s', len(profraws), out)
        self._run(command)

    def export(
        self,
        profdata: Path,
        binaries: Sequence[str],
        ignore_filename_regex: str | None = None,
        out: Path | None = None,
    ) -> CoverageData:
        """Export coverage for ``binaries`` from ``profdata``.

        Args:
            profdata: Merged profile.
            binaries: Instrumented binaries; the first is the main object.
            ignore_filename_regex: Files to leave out of the export.
            out: If given, the raw export JSON is also written there.

        Returns:
            The decoded export.

        Raises:
            ExternalToolError: If ``llvm-cov`` fails.
            CoverageParseError: If its output is not a valid export.
        """
        if not binaries:
            msg = 'llvm-cov export needs at least one binary'
            raise ValueError(msg)
        command = [self.cov, 'export', f'-instr-profile={profdata}', binaries[0]]
        for other in binaries[1:]:
            command.extend(['-object', other])
        if ignore_filename_regex is not None:
            command.append(f'-ignore-filename-regex={ignore_filename_regex}')
        logger.info('Exporting coverage from %s', profdata)
        exported = self._run(command)
        coverage = CoverageData.from_json(exported)
        if out is not None:
            out.write_text(exported, encoding='utf-8')
        return coverage
