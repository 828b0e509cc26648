"""FleetKeys provisioning engine and fleet driver."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from .constants import DEFAULT_KEYS_DIR, DEFAULT_SETTLE_S, KEY_BITS
from .exceptions import KeyMaterialError, TransportUnavailable, VerificationFailure
from .keys import KeyPair, ensure_key_pair, load_key_pair
from .runners import CommandRunner, build_runner
from .ssh import authorized_keys_commands, verify_key_login
from .types import HostTarget, ProvisioningResult, RunResult
from .utils import redact

if TYPE_CHECKING:
    from .cli_types import TransportSettings
    from .known_hosts import TrustStore
    from .transports import TransportCapability, TransportSelector

logger = logging.getLogger("fleetkeys")


def describe_failed_run(run: RunResult) -> str:
    failed = [o for o in run.outcomes if not o.ok]
    if not failed:
        return "no commands ran"
    return "; ".join(f"{o.command!r} exited {o.exit_code}" for o in failed)


class ProvisioningEngine:
    """Installs the operator key on one host, trying transports in priority order."""

    def __init__(
        self,
        *,
        selector: TransportSelector,
        trust_store: TrustStore,
        settings: TransportSettings,
        keys_dir: str = DEFAULT_KEYS_DIR,
        settle_s: float = DEFAULT_SETTLE_S,
        verify: bool = True,
        runner_factory: Callable[[TransportCapability, TransportSettings], CommandRunner] = build_runner,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.selector = selector
        self.trust_store = trust_store
        self.settings = settings
        self.keys_dir = keys_dir
        self.settle_s = settle_s
        self.verify_enabled = verify
        self.runner_factory = runner_factory
        self.sleep = sleep

    def install_commands(self, key_pair: KeyPair) -> list[str]:
        return authorized_keys_commands(key_pair.public_key_content, self.keys_dir)

    def provision(self, host: HostTarget, key_pair: KeyPair) -> ProvisioningResult:
        """Install key_pair's public key on host and optionally verify it."""
        if not key_pair.public_key_content.strip():
            raise KeyMaterialError(f"Public key is empty: {key_pair.public_key_path}")

        result = ProvisioningResult(host=host.hostname, user=host.username, succeeded=False)

        # Host must be in known_hosts before any runner connects.
        self.trust_store.prime_host(host.hostname)
        commands = self.install_commands(key_pair)

        transports = self.selector.available_transports()
        if not transports:
            logger.warning("%s: no transports available on this machine", host.hostname)
            result.error = "no transports available"
            return result

        for capability in transports:
            logger.info("%s: trying transport %s", host.hostname, capability.value)
            try:
                runner = self.runner_factory(capability, self.settings)
                run = runner.run_commands(host, commands)
            except Exception as e:
                # Any runner error just means this transport failed.
                error = redact(str(e), host.password)
                logger.info("%s: transport %s failed: %s", host.hostname, capability.value, error)
                result.attempts.append({"transport": capability.value, "ok": False, "error": error})
                continue

            if run.succeeded:
                result.attempts.append({"transport": capability.value, "ok": True, "error": None})
                result.succeeded = True
                result.transport_used = capability
                break

            error = describe_failed_run(run)
            logger.info("%s: transport %s failed: %s", host.hostname, capability.value, error)
            result.attempts.append({"transport": capability.value, "ok": False, "error": error})

        if not result.succeeded:
            result.error = f"all {len(transports)} transport(s) failed"
            return result

        logger.info("%s: key installed via %s", host.hostname, capability.value)
        if self.verify_enabled:
            self.sleep(self.settle_s)
            result.verified = self.verify(host, key_pair)
        return result

    def verify(self, host: HostTarget, key_pair: KeyPair) -> bool:
        """Return True when host accepts a login with only the private key."""
        try:
            verify_key_login(
                host.hostname,
                host.username,
                key_pair.private_key_path,
                connect_timeout=self.settings.connect_timeout,
                timeout_s=self.settings.timeout_s,
                ssh_option=self.settings.ssh_option,
            )
        except (VerificationFailure, TransportUnavailable) as e:
            logger.warning("%s", e)
            return False
        logger.info("%s: key login verified", host.hostname)
        return True


def provision_fleet(
    hosts: Sequence[HostTarget],
    *,
    engine: ProvisioningEngine,
    key_path: Path,
    bits: int = KEY_BITS,
    stop_event: threading.Event | None = None,
    on_result: Callable[[ProvisioningResult], None] | None = None,
) -> list[ProvisioningResult]:
    """Provision hosts one after another.

    Key material problems raise; anything that goes wrong for a single host
    becomes a failed result and the next host is tried. Results come back in
    input order, one per host.
    """
    ensure_key_pair(key_path, bits=bits)
    key_pair = load_key_pair(key_path)

    results: list[ProvisioningResult] = []
    for host in hosts:
        if stop_event is not None and stop_event.is_set():
            result = ProvisioningResult(
                host=host.hostname, user=host.username, succeeded=False, error="cancelled"
            )
        else:
            try:
                result = engine.provision(host, key_pair)
            except Exception as e:
                error = redact(str(e), host.password) or type(e).__name__
                logger.error("%s: provisioning failed: %s", host.hostname, error)
                result = ProvisioningResult(
                    host=host.hostname, user=host.username, succeeded=False, error=error
                )
        results.append(result)
        if on_result is not None:
            try:
                on_result(result)
            except Exception as e:
                # A broken audit log or console must not stop the remaining hosts.
                logger.error("%s: recording result failed: %s", host.hostname, e)
    return results
