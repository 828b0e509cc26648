"""
FleetKeys - bootstrap SSH key authentication on password-only hosts.

Design goals:
- No agent or server on the target; only a password and a shell.
- Uses whatever transport is installed locally (sshpass, pexpect + OpenSSH,
  plink, scp) and falls back across them.
- The password never lands in argv, logs or the audit trail.
"""

from __future__ import annotations

from .cli import main
from .constants import DEFAULT_KEY_PATH, DEFAULT_KEYS_DIR
from .exceptions import FleetKeysError, UserError

__all__ = [
    "DEFAULT_KEYS_DIR",
    "DEFAULT_KEY_PATH",
    "FleetKeysError",
    "UserError",
    "main",
]
