"""FleetKeys command runners, one per transport.

Every runner takes a HostTarget and an ordered list of shell commands and
returns a RunResult. All commands are attempted even when one exits
non-zero; only a dropped connection, rejected password or timeout aborts
the sequence, and those raise TransportExecutionFailure. The password is
passed through the environment, a pty or stdin, never through argv.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
import time
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

import pexpect

from .constants import (
    ASKPASS_SECRET_ENV_VAR,
    REMOTE_SCRIPT_PREFIX,
    SSH_CONNECTION_FAILURE_EXIT_CODE,
    SSH_TIMEOUT_EXIT_CODE,
    SSHPASS_FAILURE_EXIT_CODES,
)
from .exceptions import TransportExecutionFailure, TransportUnavailable
from .known_hosts import TrustStore
from .ssh import (
    build_ssh_options,
    parse_exit_markers,
    password_auth_options,
    remote_exec_command,
    remote_script_body,
    run_process,
    scp_options,
    with_exit_marker,
)
from .transports import TransportCapability
from .types import CommandOutcome, HostTarget, RunResult
from .utils import redact

if TYPE_CHECKING:
    from .cli_types import TransportSettings

logger = logging.getLogger("fleetkeys")

PASSWORD_PROMPT_RE = r"(?i)password:"
HOST_KEY_PROMPT_RE = r"(?i)continue connecting \(yes/no"


class CommandRunner:
    """Base class for transport-specific runners."""

    capability: TransportCapability

    def __init__(self, settings: TransportSettings):
        self.settings = settings

    @property
    def name(self) -> str:
        return self.capability.value

    def run_commands(self, host: HostTarget, commands: Sequence[str]) -> RunResult:
        raise NotImplementedError

    def ssh_options(self) -> list[str]:
        """OpenSSH options for a password login against the primed trust store."""
        return (
            build_ssh_options(self.settings, known_hosts=self.settings.known_hosts)
            + password_auth_options()
        )

    def failure(self, host: HostTarget, message: str) -> TransportExecutionFailure:
        return TransportExecutionFailure(self.name, f"{host.hostname}: {message}")

    def check_connection(self, host: HostTarget, rc: int, err: str) -> None:
        """Raise when rc means the connection itself failed."""
        if rc == SSH_TIMEOUT_EXIT_CODE:
            raise self.failure(host, f"timed out after {self.settings.timeout_s}s")
        if rc == SSH_CONNECTION_FAILURE_EXIT_CODE:
            raise self.failure(host, f"connection failed: {redact(err.strip(), host.password)}")

    def outcomes_from_markers(
        self, host: HostTarget, commands: Sequence[str], rc: int, output: str
    ) -> RunResult:
        """Build a RunResult from exit markers in a single-session transcript."""
        codes = parse_exit_markers(output, len(commands))
        if all(code is None for code in codes):
            self.check_connection(host, rc, output)
            raise self.failure(host, f"no command ran (rc={rc}): {output.strip()[-200:]}")
        outcomes = [CommandOutcome(cmd, code) for cmd, code in zip(commands, codes)]
        return RunResult(
            succeeded=all(o.ok for o in outcomes), outcomes=outcomes, output=output
        )


class SshpassRunner(CommandRunner):
    """sshpass -e ssh, one connection per command."""

    capability = TransportCapability.PASSWORD_INJECTION

    def run_commands(self, host: HostTarget, commands: Sequence[str]) -> RunResult:
        env = {**os.environ, "SSHPASS": host.password}
        base = ["sshpass", "-e", "ssh", *self.ssh_options(), "-l", host.username, host.hostname]
        outcomes: list[CommandOutcome] = []
        output: list[str] = []
        for command in commands:
            rc, out, err = run_process([*base, command], env=env, timeout_s=self.settings.timeout_s)
            if rc in SSHPASS_FAILURE_EXIT_CODES:
                raise self.failure(host, SSHPASS_FAILURE_EXIT_CODES[rc])
            self.check_connection(host, rc, err)
            logger.debug("[%s] %s: rc=%d for %r", self.name, host.hostname, rc, command)
            outcomes.append(CommandOutcome(command, rc))
            output.append(out + err)
        return RunResult(
            succeeded=all(o.ok for o in outcomes),
            outcomes=outcomes,
            output=redact("".join(output), host.password),
        )


class InteractiveRunner(CommandRunner):
    """Interactive password handshake that leaves an ssh control master behind.

    Commands then run non-interactively over the multiplexed socket. If the
    handshake fails no command is issued.
    """

    capability = TransportCapability.INTERACTIVE_HANDSHAKE

    def run_commands(self, host: HostTarget, commands: Sequence[str]) -> RunResult:
        control_dir = Path(tempfile.mkdtemp(prefix="fleetkeys-"))
        control_path = control_dir / "master.sock"
        try:
            self.handshake(host, control_path, persist_s=self.settings.timeout_s * (len(commands) + 1))
            outcomes: list[CommandOutcome] = []
            output: list[str] = []
            for command in commands:
                rc, out, err = run_process(
                    [
                        "ssh",
                        "-o",
                        "BatchMode=yes",
                        "-o",
                        "ControlMaster=no",
                        "-o",
                        f"ControlPath={control_path}",
                        "-l",
                        host.username,
                        host.hostname,
                        command,
                    ],
                    timeout_s=self.settings.timeout_s,
                )
                self.check_connection(host, rc, err)
                logger.debug("[%s] %s: rc=%d for %r", self.name, host.hostname, rc, command)
                outcomes.append(CommandOutcome(command, rc))
                output.append(out + err)
            return RunResult(
                succeeded=all(o.ok for o in outcomes),
                outcomes=outcomes,
                output=redact("".join(output), host.password),
            )
        finally:
            self.close_master(host, control_path)
            shutil.rmtree(control_dir, ignore_errors=True)

    def handshake(self, host: HostTarget, control_path: Path, *, persist_s: int) -> None:
        """Authenticate once through a pty and start the control master."""
        argv = [
            *self.ssh_options(),
            "-o",
            "ControlMaster=yes",
            "-o",
            f"ControlPath={control_path}",
            "-o",
            f"ControlPersist={persist_s}",
            "-l",
            host.username,
            host.hostname,
            "true",
        ]
        deadline = time.monotonic() + self.settings.timeout_s
        child = None
        try:
            child = pexpect.spawn("ssh", argv, timeout=self.settings.timeout_s, encoding="utf-8")
            password_sent = False
            while True:
                idx = child.expect(
                    [PASSWORD_PROMPT_RE, HOST_KEY_PROMPT_RE, pexpect.EOF],
                    timeout=max(0.1, deadline - time.monotonic()),
                )
                if idx == 0:
                    if password_sent:
                        raise self.failure(host, "password rejected")
                    child.sendline(host.password)
                    password_sent = True
                elif idx == 1:
                    raise self.failure(host, "unexpected host key prompt")
                else:
                    break
        except pexpect.TIMEOUT:
            raise self.failure(host, f"handshake timed out after {self.settings.timeout_s}s")
        except pexpect.ExceptionPexpect as e:
            raise self.failure(host, f"handshake failed: {e}")
        finally:
            if child is not None:
                child.close(force=True)
        if child.exitstatus != 0:
            before = redact(str(child.before or "").strip(), host.password)
            raise self.failure(host, f"handshake failed (rc={child.exitstatus}): {before}")
        logger.debug("[%s] %s: control master up", self.name, host.hostname)

    def close_master(self, host: HostTarget, control_path: Path) -> None:
        if not control_path.exists():
            return
        run_process(
            ["ssh", "-o", f"ControlPath={control_path}", "-O", "exit", host.hostname],
            timeout_s=self.settings.connect_timeout,
        )


class PlinkRunner(CommandRunner):
    """One plink session fed the password, then each command, on stdin.

    The child gets its own session so plink has no /dev/tty and reads the
    password prompt answer from stdin. The host key is pinned with -hostkey
    from the trust store since plink keeps its own cache.
    """

    capability = TransportCapability.STDIN_INJECTION

    def run_commands(self, host: HostTarget, commands: Sequence[str]) -> RunResult:
        fingerprints = TrustStore(self.settings.known_hosts).fingerprints(host.hostname)
        if not fingerprints:
            raise self.failure(host, "no recorded host key to pin; plink would prompt")

        # -noagent keeps an agent key from logging in before the password prompt.
        argv = ["plink", "-ssh", "-T", "-noagent", "-l", host.username]
        for fp in fingerprints:
            argv += ["-hostkey", fp]
        argv.append(host.hostname)
        lines = [host.password, *(with_exit_marker(i, c) for i, c in enumerate(commands)), "exit"]

        timeout_s = self.settings.timeout_s
        deadline = time.monotonic() + timeout_s
        logger.debug("Running: %s", " ".join(argv))
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except FileNotFoundError:
            raise TransportUnavailable("plink binary not found on PATH.")

        assert proc.stdin is not None
        try:
            for line in lines:
                proc.stdin.write(line.encode("utf-8") + b"\n")
                proc.stdin.flush()
                # Give plink/the remote shell time to consume the line.
                time.sleep(self.settings.line_delay_s)
                if time.monotonic() >= deadline:
                    raise subprocess.TimeoutExpired(argv, timeout_s)
            raw, _ = proc.communicate(timeout=max(0.1, deadline - time.monotonic()))
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.communicate()
            raise self.failure(host, f"session did not finish within {timeout_s}s")
        except BrokenPipeError:
            proc.kill()
            raw, _ = proc.communicate()
            output = redact(raw.decode("utf-8", "replace"), host.password)
            raise self.failure(host, f"session closed early: {output.strip()[-200:]}")

        output = redact(raw.decode("utf-8", "replace"), host.password)
        logger.debug("[%s] %s: rc=%d", self.name, host.hostname, proc.returncode)
        return self.outcomes_from_markers(host, commands, proc.returncode, output)


class UploadRunner(CommandRunner):
    """Copy the commands as one script with scp and run it once with ssh.

    The script removes itself on exit. The password reaches scp/ssh through a
    throwaway SSH_ASKPASS helper that echoes an environment variable; the
    helper and the local script live in a scratch directory removed before
    returning.
    """

    capability = TransportCapability.UPLOAD_AND_EXECUTE

    def run_commands(self, host: HostTarget, commands: Sequence[str]) -> RunResult:
        remote_script = f"{REMOTE_SCRIPT_PREFIX}{uuid.uuid4().hex[:12]}.sh"
        timeout_s = self.settings.timeout_s
        with tempfile.TemporaryDirectory(prefix="fleetkeys-") as scratch:
            scratch_dir = Path(scratch)
            local_script = scratch_dir / "provision.sh"
            local_script.write_text(remote_script_body(commands), encoding="utf-8")
            local_script.chmod(0o600)
            askpass = scratch_dir / "askpass.sh"
            askpass.write_text(
                f"#!/bin/sh\nprintf '%s\\n' \"${ASKPASS_SECRET_ENV_VAR}\"\n", encoding="utf-8"
            )
            askpass.chmod(0o700)

            env = {
                **os.environ,
                "SSH_ASKPASS": str(askpass),
                "SSH_ASKPASS_REQUIRE": "force",
                "DISPLAY": os.environ.get("DISPLAY", ":0"),
                ASKPASS_SECRET_ENV_VAR: host.password,
            }
            opts = self.ssh_options()
            target = f"[{host.hostname}]" if ":" in host.hostname else host.hostname

            rc, _, err = run_process(
                [
                    "scp",
                    "-q",
                    *scp_options(opts),
                    str(local_script),
                    f"{host.username}@{target}:{remote_script}",
                ],
                env=env,
                timeout_s=timeout_s,
                detach=True,
            )
            self.check_connection(host, rc, err)
            if rc != 0:
                raise self.failure(host, f"upload failed (rc={rc}): {redact(err.strip(), host.password)}")

            ssh_base = ["ssh", *opts, "-l", host.username, host.hostname]
            rc, out, err = run_process(
                [*ssh_base, remote_exec_command(remote_script)],
                env=env,
                timeout_s=timeout_s,
                detach=True,
            )
            if rc in (SSH_TIMEOUT_EXIT_CODE, SSH_CONNECTION_FAILURE_EXIT_CODE):
                # The script's trap never ran; remove it if the host is still reachable.
                run_process(
                    [*ssh_base, f"rm -f {shlex.quote(remote_script)}"],
                    env=env,
                    timeout_s=self.settings.connect_timeout,
                    detach=True,
                )
        logger.debug("[%s] %s: rc=%d", self.name, host.hostname, rc)
        return self.outcomes_from_markers(host, commands, rc, redact(out + err, host.password))


RUNNERS: dict[TransportCapability, type[CommandRunner]] = {
    TransportCapability.PASSWORD_INJECTION: SshpassRunner,
    TransportCapability.INTERACTIVE_HANDSHAKE: InteractiveRunner,
    TransportCapability.STDIN_INJECTION: PlinkRunner,
    TransportCapability.UPLOAD_AND_EXECUTE: UploadRunner,
}


def build_runner(capability: TransportCapability, settings: TransportSettings) -> CommandRunner:
    return RUNNERS[capability](settings)
