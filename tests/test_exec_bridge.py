"""Tests for the privileged exec bridge.

Syscalls (setuid/setgid/setgroups/chdir/execve) are patched; nothing here
changes the identity of the test process. The round-trip tests run a real
bridge child with uid/gid 0, which keeps the current identity.
"""

import asyncio
import base64
import io
import os
import subprocess
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, call, patch

import pytest
from hypothesis import given
from hypothesis import strategies as st

import ci_sandbox
from ci_sandbox import constants
from ci_sandbox.exceptions import ExecRequestError, PrivilegeDropError
from ci_sandbox.exec_bridge import (
    ExecRequest,
    bridge_command,
    drop_privileges,
    maybe_exec,
    resolve_executable,
    spawn,
)

# Text without surrogates: anything a real argv/env can carry through JSON
_text = st.text(alphabet=st.characters(blacklist_categories=("Cs",)), max_size=40)
_env_entries = st.lists(
    st.builds(lambda k, v: f"{k}={v}", st.from_regex(r"[A-Z_][A-Z0-9_]{0,10}", fullmatch=True), _text),
    max_size=5,
)

# ============================================================================
# ExecRequest encoding
# ============================================================================


class TestExecRequestEncoding:
    @given(
        uid=st.integers(min_value=0, max_value=2**31 - 1),
        gid=st.integers(min_value=0, max_value=2**31 - 1),
        path=_text.filter(bool),
        argv=st.lists(_text, min_size=1, max_size=8),
        env=_env_entries,
        workdir=_text,
    )
    def test_round_trip(self, uid: int, gid: int, path: str, argv: list[str], env: list[str], workdir: str) -> None:
        """decode(encode(r)) == r for every valid request."""
        req = ExecRequest(uid=uid, gid=gid, path=path, argv=argv, env=env, dir=workdir)
        encoded = req.encode()
        assert encoded.isascii()
        assert ExecRequest.decode(encoded) == req

    def test_encoded_form_is_single_env_safe_token(self) -> None:
        req = ExecRequest(uid=1, gid=1, path="/bin/true", argv=["true", "a b\nc"])
        assert "\n" not in req.encode()
        assert "=" not in req.encode().rstrip("=")

    @pytest.mark.parametrize(
        "data",
        [
            "not base64 !!!",
            base64.b64encode(b"{not json").decode(),
            base64.b64encode(b'{"uid": 0}').decode(),
            base64.b64encode(b'{"uid": -1, "gid": 0, "path": "x", "argv": ["x"]}').decode(),
            base64.b64encode(b'{"uid": 0, "gid": 0, "path": "x", "argv": ["x"], "extra": 1}').decode(),
        ],
    )
    def test_decode_rejects_garbage(self, data: str) -> None:
        with pytest.raises(ExecRequestError):
            ExecRequest.decode(data)

    def test_env_entries_must_be_key_value(self) -> None:
        with pytest.raises(ValueError, match="KEY=VALUE"):
            ExecRequest(uid=0, gid=0, path="/bin/true", argv=["true"], env=["NOEQUALS"])

    def test_env_dict_splits_on_first_equals(self) -> None:
        req = ExecRequest(uid=0, gid=0, path="/bin/true", argv=["true"], env=["A=1", "B=x=y"])
        assert req.env_dict() == {"A": "1", "B": "x=y"}

    def test_argv_required(self) -> None:
        with pytest.raises(ValueError):
            ExecRequest(uid=0, gid=0, path="/bin/true", argv=[])


# ============================================================================
# Privilege drop
# ============================================================================


class TestDropPrivileges:
    def test_zero_ids_make_no_syscalls(self) -> None:
        """uid/gid 0 means keep the current identity."""
        with (
            patch("ci_sandbox.exec_bridge.os.setuid") as setuid,
            patch("ci_sandbox.exec_bridge.os.setgid") as setgid,
            patch("ci_sandbox.exec_bridge.os.setgroups") as setgroups,
        ):
            drop_privileges(0, 0)

        setuid.assert_not_called()
        setgid.assert_not_called()
        setgroups.assert_not_called()

    def test_gid_dropped_before_uid(self) -> None:
        calls = MagicMock()
        with (
            patch("ci_sandbox.exec_bridge.os.geteuid", return_value=0),
            patch("ci_sandbox.exec_bridge.os.setgroups", calls.setgroups),
            patch("ci_sandbox.exec_bridge.os.setgid", calls.setgid),
            patch("ci_sandbox.exec_bridge.os.setuid", calls.setuid),
        ):
            drop_privileges(1000, 1001)

        assert calls.mock_calls == [call.setgroups([]), call.setgid(1001), call.setuid(1000)]

    def test_supplementary_groups_kept_when_not_root(self) -> None:
        with (
            patch("ci_sandbox.exec_bridge.os.geteuid", return_value=1000),
            patch("ci_sandbox.exec_bridge.os.setgroups") as setgroups,
            patch("ci_sandbox.exec_bridge.os.setgid"),
        ):
            drop_privileges(0, 1001)

        setgroups.assert_not_called()

    def test_setuid_failure(self) -> None:
        with (
            patch("ci_sandbox.exec_bridge.os.setuid", side_effect=PermissionError("Operation not permitted")),
            pytest.raises(PrivilegeDropError, match="setuid"),
        ):
            drop_privileges(1000, 0)


# ============================================================================
# Bridge target
# ============================================================================


class TestMaybeExec:
    def test_returns_without_request(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv(constants.EXEC_REQUEST_ENV, raising=False)
        with patch("ci_sandbox.exec_bridge.os.execve") as execve:
            maybe_exec()
        execve.assert_not_called()

    def test_execs_request(self, monkeypatch: pytest.MonkeyPatch) -> None:
        req = ExecRequest(uid=0, gid=0, path="/usr/bin/linux", argv=["linux", "mem=64M"], env=["HOME=/root"], dir="/tmp")
        monkeypatch.setenv(constants.EXEC_REQUEST_ENV, req.encode())

        with (
            patch("ci_sandbox.exec_bridge.os.chdir") as chdir,
            patch("ci_sandbox.exec_bridge.os.setuid") as setuid,
            patch("ci_sandbox.exec_bridge.os.execve") as execve,
        ):
            maybe_exec()

        chdir.assert_called_once_with("/tmp")
        setuid.assert_not_called()
        execve.assert_called_once_with("/usr/bin/linux", ["linux", "mem=64M"], {"HOME": "/root"})

    def test_corrupt_request_exits_126(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(constants.EXEC_REQUEST_ENV, "%%%")
        with (
            patch("ci_sandbox.exec_bridge.os.execve") as execve,
            pytest.raises(SystemExit) as exc_info,
        ):
            maybe_exec()

        assert exc_info.value.code == constants.EXIT_BRIDGE_FAILURE
        execve.assert_not_called()

    def test_privilege_drop_failure_exits_126(self, monkeypatch: pytest.MonkeyPatch) -> None:
        req = ExecRequest(uid=1000, gid=0, path="/bin/true", argv=["true"])
        monkeypatch.setenv(constants.EXEC_REQUEST_ENV, req.encode())
        with (
            patch("ci_sandbox.exec_bridge.os.setuid", side_effect=PermissionError("denied")),
            patch("ci_sandbox.exec_bridge.os.execve") as execve,
            pytest.raises(SystemExit) as exc_info,
        ):
            maybe_exec()

        assert exc_info.value.code == constants.EXIT_BRIDGE_FAILURE
        execve.assert_not_called()

    def test_exec_failure_exits_126(self, monkeypatch: pytest.MonkeyPatch) -> None:
        req = ExecRequest(uid=0, gid=0, path="/nonexistent/hypervisor", argv=["hv"])
        monkeypatch.setenv(constants.EXEC_REQUEST_ENV, req.encode())
        with (
            patch("ci_sandbox.exec_bridge.os.execve", side_effect=FileNotFoundError("no such file")),
            pytest.raises(SystemExit) as exc_info,
        ):
            maybe_exec()

        assert exc_info.value.code == constants.EXIT_BRIDGE_FAILURE


# ============================================================================
# Launcher side
# ============================================================================


class TestSpawn:
    def test_bridge_command_reinvokes_package(self) -> None:
        assert bridge_command() == [sys.executable, "-m", "ci_sandbox"]

    async def test_request_travels_in_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("PYTHONPATH", raising=False)
        req = ExecRequest(uid=1000, gid=1000, path="/usr/bin/linux", argv=["linux"])
        proc = MagicMock(pid=99, returncode=None)

        with patch(
            "ci_sandbox.exec_bridge.asyncio.create_subprocess_exec", new=AsyncMock(return_value=proc)
        ) as mock_exec:
            bridged = await spawn(req, None, context_id="vm0")

        args, kwargs = mock_exec.call_args
        assert list(args) == bridge_command()
        assert kwargs["env"] == {constants.EXEC_REQUEST_ENV: req.encode()}
        assert kwargs["stdout"] == asyncio.subprocess.DEVNULL
        assert kwargs["stderr"] == asyncio.subprocess.STDOUT
        assert kwargs["start_new_session"] is True
        assert bridged.output_task is None
        assert bridged.pid == 99

    async def test_output_drained_into_sink(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PYTHONPATH", "/src")
        req = ExecRequest(uid=0, gid=0, path="/bin/true", argv=["true"])
        stdout = asyncio.StreamReader()
        stdout.feed_data(b"Linux version 6.1\n")
        stdout.feed_eof()
        proc = MagicMock(pid=100, returncode=None, stdout=stdout)
        proc.wait = AsyncMock(return_value=0)
        sink = MagicMock()

        with patch(
            "ci_sandbox.exec_bridge.asyncio.create_subprocess_exec", new=AsyncMock(return_value=proc)
        ) as mock_exec:
            bridged = await spawn(req, sink, context_id="vm1")
            assert await bridged.wait() == 0

        assert mock_exec.call_args.kwargs["env"]["PYTHONPATH"] == "/src"
        assert mock_exec.call_args.kwargs["stdout"] == asyncio.subprocess.PIPE
        sink.write.assert_called_once_with(b"Linux version 6.1\n")


# ============================================================================
# resolve_executable
# ============================================================================


class TestResolveExecutable:
    def test_path_with_slash_unchanged(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PATH", "")
        assert resolve_executable("./linux") == "./linux"
        assert resolve_executable("/opt/uml/linux") == "/opt/uml/linux"

    def test_bare_name_found_on_path(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        qemu = tmp_path / "qemu-system-x86_64"
        qemu.touch(mode=0o755)
        monkeypatch.setenv("PATH", str(tmp_path))

        assert resolve_executable("qemu-system-x86_64") == str(qemu)

    def test_bare_name_not_found_unchanged(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PATH", str(tmp_path))
        assert resolve_executable("linux") == "linux"


# ============================================================================
# Real bridge child
# ============================================================================

_SRC_DIR = str(Path(ci_sandbox.__file__).resolve().parents[1])


class TestBridgeRoundTrip:
    """The bridge child is a real ``python -m ci_sandbox`` process."""

    @pytest.fixture(autouse=True)
    def _pythonpath(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PYTHONPATH", _SRC_DIR)

    async def test_execs_target(self) -> None:
        out = io.BytesIO()
        req = ExecRequest(uid=0, gid=0, path="/bin/echo", argv=["echo", "hello", "bridge"])

        bridged = await spawn(req, out, context_id="vm0")

        assert await bridged.wait() == 0
        lines = out.getvalue().splitlines()
        assert lines[0].startswith(b"execing /bin/echo")
        assert lines[-1] == b"hello bridge"

    async def test_target_sees_only_requested_env(self) -> None:
        out = io.BytesIO()
        req = ExecRequest(uid=0, gid=0, path="/usr/bin/env", argv=["env"], env=["HOME=/nonexistent"])

        bridged = await spawn(req, out, context_id="vm0")

        assert await bridged.wait() == 0
        env_lines = out.getvalue().splitlines()[1:]
        assert env_lines == [b"HOME=/nonexistent"]
        assert constants.EXEC_REQUEST_ENV.encode() not in out.getvalue()

    async def test_exec_failure_exit_code(self) -> None:
        out = io.BytesIO()
        req = ExecRequest(uid=0, gid=0, path="/nonexistent/linux", argv=["linux"])

        bridged = await spawn(req, out, context_id="vm0")

        assert await bridged.wait() == constants.EXIT_BRIDGE_FAILURE
        assert b"failed to exec" in out.getvalue()

    def test_bridge_import_stays_light(self) -> None:
        """The bridge child reaches execve without loading the SSH and retry stack."""
        heavy = ["asyncssh", "tenacity", "pydantic_settings", "ci_sandbox.orchestrator", "ci_sandbox.settings"]
        code = "import sys, ci_sandbox.exec_bridge; print(' '.join(m for m in %r if m in sys.modules))" % (heavy,)

        result = subprocess.run(
            [sys.executable, "-c", code],
            env={"PYTHONPATH": _SRC_DIR, "PATH": os.environ.get("PATH", "")},
            capture_output=True,
            text=True,
            check=True,
        )

        assert result.stdout.strip() == ""
