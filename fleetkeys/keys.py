"""FleetKeys local key material."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .constants import KEY_BITS, KEY_TYPE
from .exceptions import KeyGenerationError, KeyMaterialError
from .utils import ensure_parent_dir, infer_actor, sha256_fingerprint

logger = logging.getLogger("fleetkeys")


@dataclass(frozen=True)
class KeyPair:
    """Local identity installed onto hosts."""

    private_key_path: Path
    public_key_path: Path
    public_key_content: str

    @property
    def fingerprint(self) -> str:
        return public_key_fingerprint(self.public_key_content)


def public_key_path_for(private_key: Path) -> Path:
    return private_key.with_name(private_key.name + ".pub")


def public_key_fingerprint(content: str) -> str:
    """Return SHA256 fingerprint of an OpenSSH public key line."""
    parts = content.split()
    if len(parts) < 2:
        raise KeyMaterialError("Public key is not in OpenSSH format.")
    try:
        return sha256_fingerprint(parts[1])
    except ValueError as e:
        raise KeyMaterialError(f"Public key is not valid base64: {e}") from e


def _run_keygen(argv: list[str]) -> subprocess.CompletedProcess:
    logger.debug("Running: %s", " ".join(argv))
    try:
        return subprocess.run(argv, capture_output=True, text=True, check=False)
    except FileNotFoundError:
        raise KeyGenerationError("ssh-keygen binary not found on PATH. Install OpenSSH client.")


def ensure_key_pair(path: Path, *, bits: int = KEY_BITS) -> bool:
    """Generate an RSA key pair at path unless one already exists.

    Returns True when a new pair was created, False when the private key
    was already there (a missing .pub is rebuilt from it).
    """
    pub_path = public_key_path_for(path)
    if path.exists():
        if not pub_path.exists():
            logger.info("Public key %s missing; deriving it from %s", pub_path, path)
            proc = _run_keygen(["ssh-keygen", "-y", "-f", str(path)])
            if proc.returncode != 0:
                raise KeyGenerationError(
                    f"ssh-keygen -y failed for {path}: {proc.stderr.strip() or 'unknown error'}"
                )
            pub_path.write_text(proc.stdout.strip() + "\n", encoding="utf-8")
        logger.debug("Key pair already exists at %s", path)
        return False

    try:
        ensure_parent_dir(path)
    except OSError as e:
        raise KeyGenerationError(f"Cannot create key directory {path.parent}: {e}") from e

    proc = _run_keygen(
        [
            "ssh-keygen",
            "-q",
            "-t",
            KEY_TYPE,
            "-b",
            str(bits),
            "-N",
            "",
            "-C",
            f"{infer_actor()}@fleetkeys",
            "-f",
            str(path),
        ]
    )
    if proc.returncode != 0 or not path.exists():
        raise KeyGenerationError(
            f"ssh-keygen failed for {path}: {proc.stderr.strip() or 'unknown error'}"
        )
    logger.info("Generated %s-%d key pair at %s", KEY_TYPE, bits, path)
    return True


def load_key_pair(path: Path) -> KeyPair:
    """Read the key pair at path; the public key must be non-empty."""
    pub_path = public_key_path_for(path)
    if not path.exists():
        raise KeyMaterialError(f"Private key not found: {path}")
    try:
        content = pub_path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        raise KeyMaterialError(f"Public key not found: {pub_path}")
    if not content:
        raise KeyMaterialError(f"Public key is empty: {pub_path}")
    return KeyPair(private_key_path=path, public_key_path=pub_path, public_key_content=content)
