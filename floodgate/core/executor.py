from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from .errors import ExecutionError


logger = logging.getLogger(__name__)


@dataclass
class EnforcementAction:
    """
    Applies and reverts a block for one address.

    Production deployments point the scripts at iptables/nftables wrappers,
    an SDN controller hook or a NAC integration. Both implementations raise
    `ExecutionError` on failure and never retry.
    """

    block_script: str = "/usr/local/bin/block_ip.sh"
    unblock_script: str = "/usr/local/bin/unblock_ip.sh"

    @property
    def dry_run(self) -> bool:
        raise NotImplementedError

    async def apply(self, address: str) -> None:
        raise NotImplementedError

    async def revert(self, address: str) -> None:
        raise NotImplementedError


@dataclass
class DryRunExecutor(EnforcementAction):
    @property
    def dry_run(self) -> bool:
        return True

    async def apply(self, address: str) -> None:
        logger.info(
            "dry_run_block",
            extra={"ip": address, "command": [self.block_script, address], "simulated": f"iptables -A INPUT -s {address} -j DROP"},
        )

    async def revert(self, address: str) -> None:
        logger.info("dry_run_unblock", extra={"ip": address, "command": [self.unblock_script, address]})


@dataclass
class ProcessExecutor(EnforcementAction):
    timeout_s: float = 30.0

    @property
    def dry_run(self) -> bool:
        return False

    async def apply(self, address: str) -> None:
        await self._run(self.block_script, address)

    async def revert(self, address: str) -> None:
        await self._run(self.unblock_script, address)

    async def _run(self, script: str, address: str) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                script,
                address,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise ExecutionError(f"cannot launch {script}: {e}") from e

        try:
            raw, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ExecutionError(f"{script} timed out after {self.timeout_s}s", exit_code=proc.returncode)

        output = (raw or b"").decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            raise ExecutionError(
                f"{script} failed with exit code {proc.returncode}",
                exit_code=proc.returncode,
                output=output,
            )
        logger.debug("enforcement_command_ok", extra={"command": [script, address], "output": output})
        return output


def build_executor(
    dry_run: bool,
    block_script: str,
    unblock_script: str,
    timeout_s: float = 30.0,
) -> EnforcementAction:
    if dry_run:
        return DryRunExecutor(block_script=block_script, unblock_script=unblock_script)
    return ProcessExecutor(block_script=block_script, unblock_script=unblock_script, timeout_s=timeout_s)
