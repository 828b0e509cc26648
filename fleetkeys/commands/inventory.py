"""FleetKeys transports command implementation."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import click

from ..transports import TransportSelector, parse_transports

if TYPE_CHECKING:
    from ..cli_types import TransportsArgs


def cmd_transports(args: TransportsArgs) -> None:
    """Show which transports can be used, in the order they are tried."""
    allowed = parse_transports(args.transport)
    selector = TransportSelector(allowed=allowed)
    rows = selector.inventory()

    if args.json:
        print(
            json.dumps(
                [
                    {
                        "transport": capability.value,
                        "available": ok,
                        "missing": missing,
                        "selected": allowed is None or capability in allowed,
                    }
                    for capability, ok, missing in rows
                ],
                indent=2,
                sort_keys=True,
            )
        )
        return

    for position, (capability, ok, missing) in enumerate(rows, start=1):
        if allowed is not None and capability not in allowed:
            state = click.style("excluded", fg="yellow")
        elif ok:
            state = click.style("available", fg="green")
        else:
            state = click.style(f"missing: {', '.join(missing)}", fg="red")
        print(f"{position}. {capability.value:<10} {state}")

    if not selector.available_transports():
        click.echo("WARNING: no usable transport; provisioning will fail on every host.", err=True)
