"""FleetKeys known-hosts trust store."""

from __future__ import annotations

import logging
from pathlib import Path

from .constants import KEYSCAN_TIMEOUT_S
from .exceptions import FleetKeysError, TrustPrimingWarning
from .ssh import run_process
from .utils import ensure_parent_dir, sha256_fingerprint

logger = logging.getLogger("fleetkeys")


class TrustStore:
    """Append-only OpenSSH known_hosts file.

    Entries are written unhashed so fingerprints can be looked up again by
    hostname. Duplicate lines are left alone; ssh tolerates them.
    """

    def __init__(self, path: Path, *, timeout_s: int = KEYSCAN_TIMEOUT_S):
        self.path = path
        self.timeout_s = timeout_s

    def fetch_host_keys(self, hostname: str) -> list[str]:
        """Return known_hosts lines for hostname as reported by ssh-keyscan."""
        rc, out, err = run_process(
            ["ssh-keyscan", "-T", str(self.timeout_s), hostname],
            # keyscan's -T bounds each read; the outer timeout bounds DNS and connect.
            timeout_s=self.timeout_s + 5,
        )
        lines = [
            line.strip()
            for line in out.splitlines()
            if line.strip() and not line.startswith("#")
        ]
        if not lines:
            detail = err.strip().splitlines()[-1] if err.strip() else f"rc={rc}"
            raise TrustPrimingWarning(f"ssh-keyscan returned no host keys for {hostname}: {detail}")
        return lines

    def append(self, lines: list[str]) -> None:
        ensure_parent_dir(self.path)
        with self.path.open("a", encoding="utf-8") as f:
            for line in lines:
                f.write(line + "\n")

    def prime_host(self, hostname: str) -> bool:
        """Fetch and record hostname's keys. Best effort: failures only warn."""
        try:
            lines = self.fetch_host_keys(hostname)
            self.append(lines)
        except TrustPrimingWarning as e:
            logger.warning("%s", e)
            return False
        except (FleetKeysError, OSError) as e:
            logger.warning("Could not prime known_hosts for %s: %s", hostname, e)
            return False
        logger.info("Recorded %d host key(s) for %s in %s", len(lines), hostname, self.path)
        return True

    def fingerprints(self, hostname: str) -> list[str]:
        """Return SHA256 fingerprints of the stored keys for hostname."""
        result: list[str] = []
        try:
            with self.path.open("r", encoding="utf-8") as f:
                for line in f:
                    parts = line.split()
                    if len(parts) < 3 or line.startswith(("#", "|1|", "@")):
                        continue
                    names = [_strip_port(n) for n in parts[0].split(",")]
                    if hostname not in names:
                        continue
                    try:
                        fp = sha256_fingerprint(parts[2])
                    except ValueError:
                        continue
                    if fp not in result:
                        result.append(fp)
        except FileNotFoundError:
            return []
        return result


def _strip_port(name: str) -> str:
    # [host]:port entries
    if name.startswith("[") and "]" in name:
        return name[1 : name.index("]")]
    return name
