"""FleetKeys verify command implementation."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

from ..audit import append_jsonl, audit_record
from ..exceptions import CommandFailureError, TransportUnavailable, VerificationFailure
from ..keys import load_key_pair
from ..ssh import verify_key_login
from ..types import ProvisioningResult
from ..utils import default_audit_log_path, expand_path, resolve_hosts, split_user_host

if TYPE_CHECKING:
    from ..cli_types import VerifyArgs


def verify_host(entry: str, *, args: VerifyArgs, private_key: Path) -> ProvisioningResult:
    """Check key login for one HOST or user@HOST entry."""
    user, hostname = split_user_host(entry, args.user)
    result = ProvisioningResult(host=hostname, user=user, succeeded=False)
    try:
        verify_key_login(
            hostname,
            user,
            private_key,
            connect_timeout=args.connect_timeout,
            timeout_s=args.timeout,
            ssh_option=args.ssh_option,
        )
    except (VerificationFailure, TransportUnavailable) as e:
        result.error = str(e)
        return result
    result.succeeded = True
    result.verified = True
    return result


def cmd_verify(args: VerifyArgs) -> None:
    """Confirm that hosts accept a login with the local private key."""
    hosts, _ = resolve_hosts(args.host)
    audit_log = Path(args.audit_log) if args.audit_log else default_audit_log_path()
    key_pair = load_key_pair(expand_path(args.key_path))

    results = []
    for entry in hosts:
        result = verify_host(entry, args=args, private_key=key_pair.private_key_path)
        append_jsonl(
            audit_log,
            audit_record(result, action="host.verify_key", key_fingerprint=key_pair.fingerprint),
        )
        results.append(result)
        if not args.json:
            if result.verified:
                print(f"OK {result.host} key login verified", flush=True)
            else:
                print(f"FAIL {result.host} {result.error}", flush=True)

    if args.json:
        print(json.dumps([r.to_record() for r in results], indent=2, sort_keys=True))

    if any(not r.verified for r in results):
        raise CommandFailureError(1)
