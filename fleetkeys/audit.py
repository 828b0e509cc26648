"""FleetKeys audit logging functions."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from .types import ProvisioningResult
from .utils import ensure_parent_dir, infer_actor, utc_now_iso


def append_jsonl(path: Path, record: dict[str, Any]) -> None:
    """Append a JSON record to a JSONL file."""
    ensure_parent_dir(path)
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(record, sort_keys=True) + "\n")


def audit_record(
    result: ProvisioningResult,
    *,
    action: str,
    key_fingerprint: str | None,
    actor: str | None = None,
) -> dict[str, Any]:
    """Return the audit log entry for one host result (never the password)."""
    record = result.to_record()
    record.update(
        {
            "ts": utc_now_iso(),
            "actor": actor or infer_actor(),
            "action": action,
            "key_fingerprint": key_fingerprint,
        }
    )
    return record
