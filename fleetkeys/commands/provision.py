"""FleetKeys provision command implementation."""

from __future__ import annotations

import json
import signal
import threading
import time
from pathlib import Path
from typing import TYPE_CHECKING

import click

from ..audit import append_jsonl, audit_record
from ..exceptions import CommandFailureError
from ..cli_types import TransportSettings
from ..constants import DRY_RUN_PREVIEW_LIMIT, KEY_BITS
from ..engine import ProvisioningEngine, provision_fleet
from ..known_hosts import TrustStore
from ..keys import ensure_key_pair, load_key_pair
from ..transports import TransportSelector, parse_transports
from ..types import HostTarget, ProvisioningResult
from ..utils import (
    default_audit_log_path,
    expand_path,
    format_elapsed_time,
    format_host_preview,
    resolve_hosts,
    split_user_host,
)

if TYPE_CHECKING:
    from ..cli_types import ProvisionArgs


def host_targets(hosts: list[str], *, default_user: str, password: str) -> list[HostTarget]:
    """Build HostTargets from HOST or user@HOST strings."""
    targets = []
    for entry in hosts:
        user, hostname = split_user_host(entry, default_user)
        targets.append(HostTarget(hostname=hostname, username=user, password=password))
    return targets


def format_provision_line(result: ProvisioningResult) -> str:
    """Format a single-line status for a provisioning result."""
    if result.succeeded:
        transport = result.transport_used.value if result.transport_used else "?"
        state = "verified" if result.verified else "unverified"
        return f"OK {result.host} transport={transport} {state}"
    return f"FAIL {result.host} {result.error or 'unknown_error'}"


def print_dry_run(
    args: ProvisionArgs,
    *,
    hosts: list[str],
    host_file: Path | None,
    selector: TransportSelector,
    audit_log: Path,
) -> None:
    available = [t.value for t in selector.available_transports()]
    if args.json:
        summary = {
            "dry_run": True,
            "action": "host.provision_key",
            "host_count": len(hosts),
            "host": None if host_file else hosts[0],
            "host_file": str(host_file) if host_file else None,
            "user": args.user,
            "key_path": str(expand_path(args.key_path)),
            "keys_dir": args.keys_dir,
            "transports": available,
            "verify": args.verify,
            "audit_log": str(audit_log),
        }
        print(json.dumps(summary, indent=2, sort_keys=True))
        return

    print(click.style("DRY RUN: --confirm not provided; no changes will be made.", fg="yellow"))
    if host_file:
        print(f"{click.style('Hosts file:', fg='cyan')} {host_file}")
        print(f"{click.style('Host count:', fg='cyan')} {len(hosts)}")
        print(f"{click.style('Hosts:', fg='cyan')}")
        for line in format_host_preview(hosts, limit=DRY_RUN_PREVIEW_LIMIT):
            print(line)
    else:
        print(f"{click.style('Host:', fg='cyan')} {hosts[0]}")
    print(f"{click.style('Default user:', fg='cyan')} {args.user}")
    print(f"{click.style('Key:', fg='cyan')} {expand_path(args.key_path)}")
    print(f"{click.style('Remote keys dir:', fg='cyan')} {args.keys_dir}")
    print(f"{click.style('Transports:', fg='cyan')} {', '.join(available) or 'none available'}")
    print(f"{click.style('Verify:', fg='cyan')} {'yes' if args.verify else 'no'}")
    print(f"Audit log: {audit_log}")
    print("Run again with --confirm to apply changes.")


def cmd_provision(args: ProvisionArgs) -> None:
    """Install the operator public key on one host or a host list."""
    hosts, host_file = resolve_hosts(args.host)
    audit_log = Path(args.audit_log) if args.audit_log else default_audit_log_path()
    key_path = expand_path(args.key_path)
    selector = TransportSelector(allowed=parse_transports(args.transport))

    if not args.confirm:
        print_dry_run(args, hosts=hosts, host_file=host_file, selector=selector, audit_log=audit_log)
        return

    if not selector.available_transports():
        click.echo(
            "WARNING: no transports available (install sshpass, plink or an OpenSSH client).",
            err=True,
        )

    password = args.password
    if password is None:
        password = click.prompt(f"Password for {args.user}", hide_input=True, err=True)

    settings = TransportSettings(
        timeout_s=args.timeout,
        connect_timeout=args.connect_timeout,
        ssh_option=args.ssh_option,
        known_hosts=expand_path(args.known_hosts),
    )
    engine = ProvisioningEngine(
        selector=selector,
        trust_store=TrustStore(settings.known_hosts),
        settings=settings,
        keys_dir=args.keys_dir,
        settle_s=args.settle,
        verify=args.verify,
    )
    targets = host_targets(hosts, default_user=args.user, password=password)
    ensure_key_pair(key_path, bits=KEY_BITS)
    fingerprint = load_key_pair(key_path).fingerprint

    def on_result(result: ProvisioningResult) -> None:
        if not args.json:
            print(format_provision_line(result), flush=True)
        record = audit_record(result, action="host.provision_key", key_fingerprint=fingerprint)
        append_jsonl(audit_log, record)

    # SIGTERM lets the current host finish; the rest are reported as cancelled.
    stop_event = threading.Event()
    previous = signal.signal(signal.SIGTERM, lambda signum, frame: stop_event.set())
    start_time = time.monotonic()
    try:
        results = provision_fleet(
            targets,
            engine=engine,
            key_path=key_path,
            stop_event=stop_event,
            on_result=on_result,
        )
    finally:
        signal.signal(signal.SIGTERM, previous)

    if args.json:
        print(json.dumps([r.to_record() for r in results], indent=2, sort_keys=True))
    else:
        counts = summarize(results)
        duration = format_elapsed_time(time.monotonic() - start_time)
        print(
            "\nSummary: total="
            f"{counts['total']} successful={counts['successful']} "
            f"verified={counts['verified']} failed={counts['failed']} "
            f"duration={duration}"
        )
        print(f"Audit log: {audit_log}")

    if any(not r.succeeded for r in results):
        raise CommandFailureError(1)


def summarize(results: list[ProvisioningResult]) -> dict[str, int]:
    """Return total/successful/verified/failed counts."""
    return {
        "total": len(results),
        "successful": sum(1 for r in results if r.succeeded),
        "verified": sum(1 for r in results if r.verified),
        "failed": sum(1 for r in results if not r.succeeded),
    }
