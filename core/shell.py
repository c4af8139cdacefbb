"""Attune — Shell Runner

Process-launch collaborator. Programs are executed directly from an argv
list (no shell interpretation of the command line).
"""

from __future__ import annotations
import asyncio
import logging
from typing import List, Protocol

from models.models import ShellResult

logger = logging.getLogger("attune.shell")

DEFAULT_TIMEOUT = 30.0


class Shell(Protocol):
    async def run(self, program: str, args: List[str]) -> ShellResult: ...

    async def spawn_detached(self, program: str) -> None: ...


class ShellRunner:
    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout

    async def run(self, program: str, args: List[str]) -> ShellResult:
        proc = await asyncio.create_subprocess_exec(
            program, *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error(f"Command timed out after {self.timeout}s: {program}")
            return ShellResult(exit_status=-1, stderr="timeout")

        return ShellResult(
            exit_status=proc.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def spawn_detached(self, program: str) -> None:
        """Start `program` in its own session without waiting for it."""
        proc = await asyncio.create_subprocess_exec(
            program,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )
        logger.info(f"Started {program} detached (pid={proc.pid})")
