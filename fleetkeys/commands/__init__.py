"""FleetKeys command implementations."""

from __future__ import annotations

from .inventory import cmd_transports
from .keygen import cmd_keygen
from .provision import cmd_provision
from .verify import cmd_verify

__all__ = [
    "cmd_keygen",
    "cmd_provision",
    "cmd_transports",
    "cmd_verify",
]
