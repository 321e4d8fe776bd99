"""
External command adapters.

Peer discovery, proposal sync and federation sync can be delegated to
operator-provided scripts. They run through `run_command`, which turns a
non-zero exit into ExternalProcessError so callers decide whether the
failure matters.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .errors import ExternalProcessError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandOutput:
    returncode: int
    stdout: str
    stderr: str


async def run_command(
    command: str,
    args: Sequence[str] = (),
    timeout: Optional[float] = 60.0,
) -> CommandOutput:
    """Run `command` plus `args` and capture its output."""
    argv: List[str] = shlex.split(command) + list(args)
    if not argv:
        raise ExternalProcessError("Empty command", -1)

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise ExternalProcessError(f"Failed to start {argv[0]}: {exc}", -1) from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise ExternalProcessError(f"{argv[0]} timed out after {timeout}s", -1) from exc
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise

    result = CommandOutput(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
    if result.returncode != 0:
        raise ExternalProcessError(
            f"{argv[0]} failed: {result.stderr.strip() or result.stdout.strip()}",
            result.returncode,
        )
    return result


class ProposalSync:
    """Pulls proposals into the queue by running an external sync command."""

    MARKER = "Proposal validated and added to queue"

    def __init__(self, command: str, timeout: float = 120.0) -> None:
        self._command = command
        self._timeout = timeout

    async def sync(self) -> int:
        """Run the command; returns how many proposals it reported adding."""
        logger.info("Syncing proposals from external source")
        result = await run_command(self._command, timeout=self._timeout)
        return sum(1 for line in result.stdout.splitlines() if self.MARKER in line)
