"""FleetKeys keygen command implementation."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

from ..keys import ensure_key_pair, load_key_pair
from ..utils import expand_path

if TYPE_CHECKING:
    from ..cli_types import KeygenArgs


def cmd_keygen(args: KeygenArgs) -> None:
    """Create the local key pair if it does not exist yet."""
    path = expand_path(args.key_path)
    created = ensure_key_pair(path, bits=args.bits)
    key_pair = load_key_pair(path)

    if args.json:
        print(
            json.dumps(
                {
                    "created": created,
                    "private_key": str(key_pair.private_key_path),
                    "public_key": str(key_pair.public_key_path),
                    "fingerprint": key_pair.fingerprint,
                },
                indent=2,
                sort_keys=True,
            )
        )
        return

    if created:
        print(f"Generated new key pair: {key_pair.private_key_path}")
    else:
        print(f"Key pair already exists (no change): {key_pair.private_key_path}")
    print(f"Public key: {key_pair.public_key_path}")
    print(f"Fingerprint: {key_pair.fingerprint}")
