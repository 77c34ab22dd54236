"""Async execution of provider and kubectl CLIs."""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of a CLI invocation."""

    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.returncode == 0


class CommandRunner(Protocol):
    async def __call__(
        self,
        args: Sequence[str],
        env: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult: ...


async def run_command(
    args: Sequence[str],
    env: Optional[dict[str, str]] = None,
    timeout: Optional[float] = None,
) -> CommandResult:
    """Run ``args`` without a shell and capture its output.

    ``env`` is layered over the current environment. A command that exceeds
    ``timeout`` is killed and reported with return code -1.
    """
    cmd = list(args)
    logger.info(f"Running: {' '.join(cmd)}")

    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env={**os.environ, **(env or {})},
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return CommandResult(cmd, -1, "", f"Command timed out after {timeout:g} seconds")
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    return CommandResult(
        cmd,
        process.returncode if process.returncode is not None else -1,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )
