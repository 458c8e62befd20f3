"""Remote command-execution channel to the gateway.

The pipeline only depends on ``RemoteCommandChannel``. ``SshCommandChannel``
is the production implementation: it drives the system ``ssh`` client with
an argument list (never a local shell) and a hard per-call timeout.
"""

import asyncio
import posixpath
import shlex
from dataclasses import dataclass
from typing import Optional, Protocol

from ..core.errors import RemoteUnreachable
from ..utils.input_validators import validate_ping_host, validate_remote_path, validate_username
from ..utils.logging import get_logger

logger = get_logger("transport.remote")

# ssh reserves 255 for its own (connection/auth) failures
SSH_TRANSPORT_FAILURE = 255


@dataclass(frozen=True)
class CommandResult:
    success: bool
    output: str
    exit_code: int


class RemoteCommandChannel(Protocol):
    async def execute(self, host: str, command: str, timeout: float) -> CommandResult: ...

    async def upload_content(self, host: str, content: str, remote_path: str, timeout: float) -> CommandResult: ...


class SshCommandChannel:
    """Executes commands on the gateway over SSH.

    Raises RemoteUnreachable when the host cannot be reached or the call
    times out; a command that ran and failed comes back as a CommandResult
    with ``success=False`` so callers can tell the two apart.
    """

    def __init__(
        self,
        username: str = "root",
        port: int = 22,
        key_path: Optional[str] = None,
        connect_timeout: int = 10,
        ssh_binary: str = "ssh",
    ):
        self._username = validate_username(username)
        self._port = int(port)
        self._key_path = key_path
        self._connect_timeout = connect_timeout
        self._ssh_binary = ssh_binary

    def _base_args(self, host: str) -> list[str]:
        host = validate_ping_host(host)
        args = [
            self._ssh_binary,
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self._connect_timeout}",
            "-o", "StrictHostKeyChecking=accept-new",
            "-p", str(self._port),
        ]
        if self._key_path:
            args += ["-i", self._key_path]
        args.append(f"{self._username}@{host}")
        return args

    async def _run(self, args: list[str], timeout: float, stdin: Optional[bytes] = None) -> CommandResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError:
            raise RemoteUnreachable(f"ssh client not found: {self._ssh_binary}")

        try:
            out, _ = await asyncio.wait_for(proc.communicate(stdin), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise RemoteUnreachable(f"remote command timed out after {timeout}s")

        output = (out or b"").decode("utf-8", errors="replace").strip()
        if proc.returncode == SSH_TRANSPORT_FAILURE:
            raise RemoteUnreachable(output or "ssh connection failed")
        return CommandResult(success=proc.returncode == 0, output=output, exit_code=proc.returncode)

    async def execute(self, host: str, command: str, timeout: float) -> CommandResult:
        result = await self._run(self._base_args(host) + [command], timeout)
        logger.debug("remote_command_executed", host=host, exit_code=result.exit_code)
        return result

    async def upload_content(self, host: str, content: str, remote_path: str, timeout: float) -> CommandResult:
        """Write ``content`` to ``remote_path`` atomically (temp file + rename)."""
        path = validate_remote_path(remote_path)
        directory = posixpath.dirname(path)
        tmp = f"{path}.tmp"
        command = (
            f"mkdir -p {shlex.quote(directory)} && cat > {shlex.quote(tmp)} && "
            f"chmod 755 {shlex.quote(tmp)} && mv {shlex.quote(tmp)} {shlex.quote(path)}"
        )
        result = await self._run(self._base_args(host) + [command], timeout, stdin=content.encode("utf-8"))
        logger.debug("remote_content_uploaded", host=host, path=path, exit_code=result.exit_code)
        return result
