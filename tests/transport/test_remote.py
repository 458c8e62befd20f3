"""Tests for the SSH command channel."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from adaptive_sqm.core.errors import RemoteUnreachable
from adaptive_sqm.transport.remote import SshCommandChannel


def _mock_process(output: bytes = b"", returncode: int = 0, hang: bool = False):
    proc = MagicMock()
    proc.returncode = returncode
    if hang:
        async def communicate(_input=None):
            await asyncio.Event().wait()
        proc.communicate = communicate
    else:
        proc.communicate = AsyncMock(return_value=(output, None))
    proc.kill = MagicMock()
    proc.wait = AsyncMock(return_value=returncode)
    return proc


class TestSshCommandChannel:
    @pytest.mark.asyncio
    async def test_execute_builds_argument_list(self):
        channel = SshCommandChannel(username="root", port=2222, key_path="/keys/gw")
        proc = _mock_process(b"ok\n")
        with patch(
            "adaptive_sqm.transport.remote.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)
        ) as create:
            result = await channel.execute("192.168.1.1", "tc qdisc show", timeout=10)

        args = create.call_args.args
        assert args[0] == "ssh"
        assert "BatchMode=yes" in args
        assert args[args.index("-p") + 1] == "2222"
        assert args[args.index("-i") + 1] == "/keys/gw"
        assert args[-2:] == ("root@192.168.1.1", "tc qdisc show")
        assert result.success
        assert result.output == "ok"

    @pytest.mark.asyncio
    async def test_command_failure_is_a_result(self):
        channel = SshCommandChannel()
        proc = _mock_process(b"RTNETLINK answers: Operation not permitted", returncode=2)
        with patch("adaptive_sqm.transport.remote.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            result = await channel.execute("192.168.1.1", "tc qdisc show", timeout=10)

        assert not result.success
        assert result.exit_code == 2

    @pytest.mark.asyncio
    async def test_ssh_failure_is_unreachable(self):
        channel = SshCommandChannel()
        proc = _mock_process(b"ssh: connect to host 192.168.1.1 port 22: No route to host", returncode=255)
        with patch("adaptive_sqm.transport.remote.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            with pytest.raises(RemoteUnreachable, match="No route to host"):
                await channel.execute("192.168.1.1", "true", timeout=10)

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        channel = SshCommandChannel()
        proc = _mock_process(hang=True)
        with patch("adaptive_sqm.transport.remote.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
            with pytest.raises(RemoteUnreachable, match="timed out"):
                await channel.execute("192.168.1.1", "sleep 60", timeout=0.01)
        proc.kill.assert_called_once()

    @pytest.mark.asyncio
    async def test_missing_ssh_binary_is_unreachable(self):
        channel = SshCommandChannel(ssh_binary="/nonexistent/ssh")
        with patch(
            "adaptive_sqm.transport.remote.asyncio.create_subprocess_exec",
            AsyncMock(side_effect=FileNotFoundError()),
        ):
            with pytest.raises(RemoteUnreachable):
                await channel.execute("192.168.1.1", "true", timeout=10)

    @pytest.mark.asyncio
    async def test_upload_writes_atomically_via_stdin(self):
        channel = SshCommandChannel()
        proc = _mock_process()
        with patch(
            "adaptive_sqm.transport.remote.asyncio.create_subprocess_exec", AsyncMock(return_value=proc)
        ) as create:
            result = await channel.upload_content(
                "192.168.1.1", "#!/bin/sh\necho hi\n", "/data/on_boot.d/25-adaptive-sqm-wan1.sh", timeout=10
            )

        command = create.call_args.args[-1]
        assert command.startswith("mkdir -p /data/on_boot.d && cat > /data/on_boot.d/25-adaptive-sqm-wan1.sh.tmp")
        assert command.endswith("mv /data/on_boot.d/25-adaptive-sqm-wan1.sh.tmp /data/on_boot.d/25-adaptive-sqm-wan1.sh")
        proc.communicate.assert_awaited_once_with(b"#!/bin/sh\necho hi\n")
        assert result.success

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/data/../etc/passwd", "relative/path.sh", "/data/a b.sh", "/data/x;reboot"])
    async def test_upload_rejects_unsafe_paths(self, path):
        channel = SshCommandChannel()
        with patch("adaptive_sqm.transport.remote.asyncio.create_subprocess_exec", AsyncMock()) as create:
            with pytest.raises(ValueError):
                await channel.upload_content("192.168.1.1", "x", path, timeout=10)
        create.assert_not_called()

    @pytest.mark.asyncio
    async def test_host_validated(self):
        channel = SshCommandChannel()
        with pytest.raises(ValueError):
            await channel.execute("gw; reboot", "true", timeout=10)

    def test_username_validated(self):
        with pytest.raises(ValueError):
            SshCommandChannel(username="root -oProxyCommand=x")
