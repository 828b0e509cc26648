"""Type definitions for CLI command arguments."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .constants import (
    DEFAULT_CONNECT_TIMEOUT_S,
    DEFAULT_KNOWN_HOSTS_PATH,
    DEFAULT_TIMEOUT_S,
    STDIN_LINE_DELAY_S,
)
from .utils import expand_path


@dataclass
class ProvisionArgs:
    """Arguments for provision command."""

    host: str
    user: str
    password: str | None
    key_path: str
    known_hosts: str
    keys_dir: str
    timeout: int
    connect_timeout: int
    settle: float
    ssh_option: list[str] | None
    transport: list[str] | None
    verify: bool
    audit_log: str | None
    json: bool
    confirm: bool


@dataclass
class VerifyArgs:
    """Arguments for verify command."""

    host: str
    user: str
    key_path: str
    timeout: int
    connect_timeout: int
    ssh_option: list[str] | None
    audit_log: str | None
    json: bool


@dataclass
class KeygenArgs:
    """Arguments for keygen command."""

    key_path: str
    bits: int
    json: bool


@dataclass
class TransportsArgs:
    """Arguments for transports command."""

    transport: list[str] | None
    json: bool


@dataclass
class TransportSettings:
    """Connection settings shared by every command runner."""

    timeout_s: int = DEFAULT_TIMEOUT_S
    connect_timeout: int = DEFAULT_CONNECT_TIMEOUT_S
    ssh_option: list[str] | None = None
    known_hosts: Path = expand_path(DEFAULT_KNOWN_HOSTS_PATH)
    line_delay_s: float = STDIN_LINE_DELAY_S


class HasSshOptions(Protocol):
    """Protocol for args that contain SSH connection options."""

    connect_timeout: int
    ssh_option: list[str] | None
