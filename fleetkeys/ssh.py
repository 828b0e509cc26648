"""FleetKeys process execution and remote command generation."""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from pathlib import Path
from typing import TYPE_CHECKING, List, Mapping, Optional, Sequence, Tuple

from .constants import (
    AUTHORIZED_KEYS_FILE_NAME,
    EXIT_MARKER_PREFIX,
    SSH_TIMEOUT_EXIT_CODE,
    VERIFY_TOKEN,
)
from .exceptions import TransportUnavailable, VerificationFailure
from .utils import parse_kv_lines

if TYPE_CHECKING:
    from .cli_types import HasSshOptions

logger = logging.getLogger("fleetkeys")


def run_process(
    argv: Sequence[str],
    *,
    input_bytes: Optional[bytes] = None,
    timeout_s: float = 60,
    env: Optional[Mapping[str, str]] = None,
    detach: bool = False,
) -> Tuple[int, str, str]:
    """
    Executes argv with a bounded timeout.

    Returns (returncode, stdout, stderr). Does NOT raise on non-zero rc.
    A timeout returns SSH_TIMEOUT_EXIT_CODE. With detach=True the child
    gets a new session and no controlling terminal, so prompts can't
    reach /dev/tty.
    """
    logger.debug("Running: %s", " ".join(shlex.quote(a) for a in argv))
    logger.debug("Timeout: %ss", timeout_s)

    start_time = time.time()
    try:
        p = subprocess.run(
            list(argv),
            input=input_bytes,
            stdin=None if input_bytes is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout_s,
            env=dict(env) if env is not None else None,
            start_new_session=detach,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        elapsed = time.time() - start_time
        logger.debug("%s timeout after %.2fs", argv[0], elapsed)
        return (
            SSH_TIMEOUT_EXIT_CODE,
            e.stdout.decode("utf-8", "replace") if e.stdout else "",
            e.stderr.decode("utf-8", "replace") if e.stderr else f"{argv[0]} timeout",
        )
    except FileNotFoundError:
        raise TransportUnavailable(f"{argv[0]} binary not found on PATH.")

    elapsed = time.time() - start_time
    logger.debug("%s completed in %.2fs (rc=%d)", argv[0], elapsed, p.returncode)
    return (
        p.returncode,
        p.stdout.decode("utf-8", "replace"),
        p.stderr.decode("utf-8", "replace"),
    )


def run_ssh(
    host: str,
    remote_cmd: str,
    *,
    ssh_options: List[str],
    input_bytes: Optional[bytes] = None,
    timeout_s: float = 60,
) -> Tuple[int, str, str]:
    """
    Executes: ssh -o BatchMode=yes [opts...] host remote_cmd

    Key-based only; BatchMode rules out any password prompt.
    """
    cmd = ["ssh", "-o", "BatchMode=yes"] + ssh_options + [host, remote_cmd]
    return run_process(cmd, input_bytes=input_bytes, timeout_s=timeout_s)


def build_ssh_options(args: HasSshOptions, *, known_hosts: Optional[Path] = None) -> List[str]:
    """Build SSH options list from command arguments."""
    opts: List[str] = []
    # ConnectTimeout is client-side only; safe default for humans.
    opts += ["-o", f"ConnectTimeout={args.connect_timeout}"]
    # Never prompt for unknown host keys; a changed key still fails.
    opts += ["-o", "StrictHostKeyChecking=accept-new"]
    if known_hosts is not None:
        opts += ["-o", f"UserKnownHostsFile={known_hosts}"]
    if args.ssh_option:
        for item in args.ssh_option:
            # Each --ssh-option can include multiple tokens, e.g. "-J bastion" or "-p 2222"
            opts += shlex.split(item)
    return opts


def password_auth_options() -> List[str]:
    """Options that stop ssh from falling back to keys when a password is given."""
    return [
        "-o",
        "PubkeyAuthentication=no",
        "-o",
        "PreferredAuthentications=password,keyboard-interactive",
        "-o",
        "NumberOfPasswordPrompts=1",
    ]


def scp_options(ssh_options: List[str]) -> List[str]:
    """Adapt ssh options for scp, which spells the port flag -P."""
    opts: List[str] = []
    for opt in ssh_options:
        if opt.startswith("-p"):
            opt = "-P" + opt[2:]
        opts.append(opt)
    return opts


def key_login_options(
    private_key: Path, *, connect_timeout: int, ssh_option: Optional[List[str]] = None
) -> List[str]:
    """Options for a publickey-only login that skips host key checking."""
    opts = [
        "-i",
        str(private_key),
        "-o",
        "IdentitiesOnly=yes",
        "-o",
        "PreferredAuthentications=publickey",
        "-o",
        "StrictHostKeyChecking=no",
        "-o",
        "UserKnownHostsFile=/dev/null",
        "-o",
        f"ConnectTimeout={connect_timeout}",
    ]
    for item in ssh_option or []:
        opts += shlex.split(item)
    return opts


def remote_path(path: str) -> str:
    """Quote a remote path for sh, keeping a leading ~ expandable."""
    if path == "~":
        return '"$HOME"'
    if path.startswith("~/"):
        return '"$HOME"/' + shlex.quote(path[2:])
    return shlex.quote(path)


def authorized_keys_commands(public_key: str, keys_dir: str) -> List[str]:
    """Return the ordered commands that install public_key under keys_dir.

    The directory is only tightened after the file has been written and
    chmodded, so the append never hits an already-locked directory.
    """
    keys_dir = keys_dir.rstrip("/") or "/"
    d = remote_path(keys_dir)
    f = remote_path(f"{keys_dir.rstrip('/')}/{AUTHORIZED_KEYS_FILE_NAME}")
    return [
        f"umask 077 && mkdir -p {d}",
        f"printf '%s\\n' {shlex.quote(public_key.strip())} >> {f}",
        f"chmod 600 {f}",
        f"chmod 700 {d}",
    ]


def exit_marker_key(index: int) -> str:
    return f"{EXIT_MARKER_PREFIX}{index}__"


def with_exit_marker(index: int, command: str) -> str:
    """Run command in a subshell and print its exit status on its own line."""
    return f"( {command} ); printf '{exit_marker_key(index)}=%s\\n' \"$?\""


def parse_exit_markers(output: str, count: int) -> List[Optional[int]]:
    """Return the exit status recorded for each of `count` commands (None if absent)."""
    info = parse_kv_lines(output)
    codes: List[Optional[int]] = []
    for i in range(count):
        raw = info.get(exit_marker_key(i))
        try:
            codes.append(int(raw) if raw is not None else None)
        except ValueError:
            codes.append(None)
    return codes


def remote_script_body(commands: Sequence[str]) -> str:
    """Render commands as one sh script that deletes itself on exit."""
    lines = [
        "#!/bin/sh",
        "# fleetkeys: install operator public key",
        "trap 'rm -f \"$0\"' EXIT",
    ]
    lines += [with_exit_marker(i, cmd) for i, cmd in enumerate(commands)]
    return "\n".join(lines) + "\n"


def remote_exec_command(script_path: str) -> str:
    """Command that marks an uploaded script executable and runs it once."""
    p = shlex.quote(script_path)
    return f"chmod 700 {p} && {p}"


def verify_key_login(
    hostname: str,
    username: str,
    private_key: Path,
    *,
    connect_timeout: int,
    timeout_s: float,
    ssh_option: Optional[List[str]] = None,
) -> None:
    """Log in with only the private key and echo a token.

    Raises VerificationFailure when the login or the echo fails.
    """
    opts = key_login_options(private_key, connect_timeout=connect_timeout, ssh_option=ssh_option)
    opts += ["-l", username]
    rc, out, err = run_ssh(hostname, f"echo {VERIFY_TOKEN}", ssh_options=opts, timeout_s=timeout_s)
    if rc != 0 or VERIFY_TOKEN not in out:
        detail = err.strip() or out.strip() or "no output"
        raise VerificationFailure(f"{hostname}: key login failed (rc={rc}): {detail}")
