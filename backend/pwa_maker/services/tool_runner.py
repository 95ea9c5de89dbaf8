"""External tool invocation for the build pipeline.

The pipeline never calls subprocess APIs directly. It talks to a ToolRunner,
so tests can script exit codes and output without an Android SDK.

Provides:
- BuildStage: the pipeline stage a tool call belongs to
- ToolResult: exit code plus captured output
- ToolRunner: the seam the builder depends on
- SubprocessToolRunner: asyncio subprocess implementation
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence

from .errors import ToolFailureError

logger = logging.getLogger(__name__)

# (stream name, line) for each output line as it arrives
LineCallback = Callable[[str, str], None]


class BuildStage(str, Enum):
    """Pipeline stages, in execution order."""
    icons = "icons"
    generate_project = "generate_project"
    keystore = "keystore"
    compile = "compile"
    discover = "discover"
    sign = "sign"


@dataclass
class ToolResult:
    """Outcome of one tool invocation."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def diagnostic(self) -> str:
        """Tool's own error text: stderr, else stdout, else the exit code."""
        text = self.stderr.strip() or self.stdout.strip()
        return text or f"exited with code {self.exit_code}"


class ToolRunner(ABC):
    """Runs one external tool to completion."""

    @abstractmethod
    async def invoke(
        self,
        stage: BuildStage,
        args: Sequence[str],
        *,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        on_line: Optional[LineCallback] = None,
    ) -> ToolResult:
        """Run `args` and return its result.

        Args:
            stage: Stage the call belongs to (for logging and errors).
            args: Executable followed by its arguments. Never run via a shell.
            cwd: Working directory.
            env: Full environment for the child process.
            on_line: Called for each stdout/stderr line while the tool runs.

        Raises:
            ToolFailureError: The executable could not be started.
        """
        raise NotImplementedError


class SubprocessToolRunner(ToolRunner):
    """ToolRunner backed by asyncio subprocesses."""

    async def invoke(
        self,
        stage: BuildStage,
        args: Sequence[str],
        *,
        cwd: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        on_line: Optional[LineCallback] = None,
    ) -> ToolResult:
        executable = os.path.basename(args[0])
        # Arguments can carry URLs and paths; only the executable is logged
        logger.info(f"[{stage.value}] running {executable}")

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd) if cwd else None,
                env=dict(env) if env is not None else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ToolFailureError(
                stage.value, None, f"Could not start {executable}: {e.strerror or e}"
            ) from e

        try:
            stdout, stderr = await asyncio.gather(
                _drain(process.stdout, "stdout", on_line),
                _drain(process.stderr, "stderr", on_line),
            )
            exit_code = await process.wait()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        logger.info(f"[{stage.value}] {executable} exited with code {exit_code}")
        return ToolResult(exit_code=exit_code, stdout=stdout, stderr=stderr)


async def _drain(
    stream: Optional[asyncio.StreamReader],
    name: str,
    on_line: Optional[LineCallback],
) -> str:
    if stream is None:
        return ""
    chunks: list[str] = []
    while True:
        raw = await stream.readline()
        if not raw:
            break
        text = raw.decode("utf-8", errors="replace")
        chunks.append(text)
        if on_line:
            line = text.rstrip("\r\n")
            if line.strip():
                on_line(name, line)
    return "".join(chunks)
