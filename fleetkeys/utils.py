"""FleetKeys utility functions."""

from __future__ import annotations

import base64
import datetime as dt
import hashlib
import ipaddress
import os
import re
from pathlib import Path

from .constants import AUDIT_DIR_NAME, AUDIT_FILE_NAME, REDACTED
from .exceptions import FleetKeysError, UserError


def utc_now_iso() -> str:
    """Return current UTC time in ISO format without microseconds."""
    return dt.datetime.now(dt.UTC).replace(microsecond=0).isoformat()


def format_elapsed_time(seconds: float) -> str:
    """Format elapsed time in human-readable format.

    Args:
        seconds: Elapsed time in seconds

    Returns:
        Formatted string like "1m25s", "45s", or "1h05m30s"
    """
    total_seconds = int(seconds)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, secs = divmod(remainder, 60)

    if hours:
        return f"{hours}h{minutes:02d}m{secs:02d}s"
    if minutes:
        return f"{minutes}m{secs:02d}s"
    return f"{secs}s"


def sha256_fingerprint(key_b64: str) -> str:
    """Return the OpenSSH-style SHA256 fingerprint of a base64 key blob."""
    key_bytes = base64.b64decode(key_b64.encode("ascii"))
    digest = hashlib.sha256(key_bytes).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def expand_path(path: str | Path) -> Path:
    """Expand ~ in a local path."""
    return Path(os.path.expanduser(str(path)))


def ensure_parent_dir(p: Path, mode: int = 0o700) -> None:
    """Create parent directory of path if it doesn't exist."""
    p.parent.mkdir(mode=mode, parents=True, exist_ok=True)


def infer_actor() -> str:
    """Infer the actor (user) performing the operation."""
    return (
        os.environ.get("FLEETKEYS_ACTOR")
        or os.environ.get("SUDO_USER")
        or os.environ.get("USER")
        or "unknown"
    )


def default_audit_log_path() -> Path:
    """Return default path for audit log file."""
    home = Path(os.path.expanduser("~"))
    return home / AUDIT_DIR_NAME / AUDIT_FILE_NAME


def redact(text: str, secret: str | None) -> str:
    """Replace every occurrence of secret in text."""
    if not secret:
        return text
    return text.replace(secret, REDACTED)


def parse_kv_lines(output: str) -> dict[str, str]:
    """Parse key=value lines from string output."""
    d: dict[str, str] = {}
    for line in output.splitlines():
        if "=" in line:
            k, v = line.split("=", 1)
            d[k.strip()] = v.strip()
    return d


def split_user_host(host_arg: str, default_user: str) -> tuple[str, str]:
    """Split 'user@host' into (user, host); plain hosts get default_user."""
    if "@" in host_arg:
        user, host = host_arg.rsplit("@", 1)
        return (user or default_user), host
    return default_user, host_arg


def is_host_file(host_arg: str) -> bool:
    """Check if argument is a host list file path."""
    p = Path(host_arg)
    if p.suffix == ".list":
        return True
    return p.exists() and p.is_file()


def parse_host_list(file_path: Path) -> list[str]:
    """Parse host list file. One host per line, ignore comments (#) and blank lines."""
    if not (file_path.exists() and file_path.is_file()):
        raise FleetKeysError(f"Host list file not found: {file_path}")
    hosts = []
    with file_path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            hosts.append(line)
    if not hosts:
        raise FleetKeysError(f"No valid hosts found in {file_path}")
    return hosts


_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)([A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)"
    r"(\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$"
)


def looks_like_host(host_arg: str) -> bool:
    """Return True if host_arg looks like a hostname or IP address."""
    if not host_arg:
        return False
    if "@" in host_arg:
        _, host = host_arg.rsplit("@", 1)
    else:
        host = host_arg
    if not host:
        return False
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        return _HOSTNAME_RE.match(host) is not None


def ensure_host_or_file(host_arg: str) -> None:
    """If not host-like, require host_arg to exist as a file."""
    p = Path(host_arg)
    if p.suffix == ".list":
        if not (p.exists() and p.is_file()):
            raise UserError(f"Host list file not found: {host_arg}")
        return
    if looks_like_host(host_arg):
        return
    if not (p.exists() and p.is_file()):
        raise UserError(
            f"HOST_OR_FILE does not look like a hostname or IP and file was not found: {host_arg}"
        )


def resolve_hosts(host_arg: str) -> tuple[list[str], Path | None]:
    """Return (hosts, host_file) for a HOST_OR_FILE argument."""
    ensure_host_or_file(host_arg)
    if is_host_file(host_arg):
        host_file = Path(host_arg)
        return parse_host_list(host_file), host_file
    return [host_arg], None


def format_host_preview(hosts: list[str], *, limit: int) -> list[str]:
    """Return indented preview lines for the first `limit` hosts."""
    lines = [f"  - {host}" for host in hosts[:limit]]
    hidden = len(hosts) - limit
    if hidden > 0:
        noun = "host" if hidden == 1 else "hosts"
        lines.append(f"  ... and {hidden} more {noun}")
    return lines
