"""FleetKeys CLI using Click."""

from __future__ import annotations

import json
import logging
import sys
from importlib.metadata import version

import click

from .cli_types import KeygenArgs, ProvisionArgs, TransportsArgs, VerifyArgs
from .commands import cmd_keygen, cmd_provision, cmd_transports, cmd_verify
from .constants import (
    DEFAULT_CONNECT_TIMEOUT_S,
    DEFAULT_KEY_PATH,
    DEFAULT_KEYS_DIR,
    DEFAULT_KNOWN_HOSTS_PATH,
    DEFAULT_SETTLE_S,
    DEFAULT_TIMEOUT_S,
    DEFAULT_USERNAME,
    KEY_BITS,
    PASSWORD_ENV_VAR,
)
from .exceptions import CommandFailureError, FleetKeysError, UserError
from .ssh import authorized_keys_commands, remote_script_body
from .transports import TRANSPORT_PRIORITY

# Module logger
logger = logging.getLogger("fleetkeys")

TRANSPORT_CHOICES = [t.value for t in TRANSPORT_PRIORITY]


def setup_logging(debug: bool = False, verbose: bool = False) -> None:
    """Configure logging for the CLI."""
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING
    logger.setLevel(level)
    if any(
        isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
        for h in logger.handlers
    ):
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(handler)


# Common options that apply to all remote commands
def common_options(func):
    """Decorator to add common options to remote commands."""
    func = click.option(
        "--ssh-option",
        multiple=True,
        help="Extra ssh options, e.g. '--ssh-option \"-o Port=2222\"' (repeatable).",
    )(func)
    func = click.option(
        "--connect-timeout",
        type=int,
        default=DEFAULT_CONNECT_TIMEOUT_S,
        show_default=True,
        help="SSH connect timeout seconds.",
    )(func)
    func = click.option(
        "--timeout",
        type=int,
        default=DEFAULT_TIMEOUT_S,
        show_default=True,
        help="Overall timeout seconds for each remote call.",
    )(func)
    func = click.option(
        "--user",
        "-u",
        default=DEFAULT_USERNAME,
        show_default=True,
        help="Remote user for hosts given without user@.",
    )(func)
    func = click.option(
        "--key-path",
        "-i",
        default=DEFAULT_KEY_PATH,
        show_default=True,
        help="Private key path; the public key is <path>.pub.",
    )(func)
    func = click.option(
        "--audit-log",
        type=click.Path(),
        help="Path to local JSONL audit log (default: ~/.fleetkeys/audit.jsonl).",
    )(func)
    func = click.option(
        "--json",
        "json_output",
        is_flag=True,
        help="Emit machine-readable JSON to stdout.",
    )(func)
    return func


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=version("fleetkeys"), prog_name="fleetkeys")
@click.option(
    "--debug",
    "-d",
    is_flag=True,
    help="Enable debug logging to stderr.",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Log transport attempts and fallbacks to stderr.",
)
@click.pass_context
def cli(ctx: click.Context, debug: bool, verbose: bool):
    """FleetKeys: install your SSH public key on password-only hosts."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    setup_logging(debug=debug, verbose=verbose)


@cli.command("provision")
@click.argument("host", metavar="HOST_OR_FILE")
@common_options
@click.option(
    "--password",
    envvar=PASSWORD_ENV_VAR,
    help=f"Remote password (prompted when omitted; also read from ${PASSWORD_ENV_VAR}).",
)
@click.option(
    "--known-hosts",
    default=DEFAULT_KNOWN_HOSTS_PATH,
    show_default=True,
    help="known_hosts file that host keys are recorded in.",
)
@click.option(
    "--keys-dir",
    default=DEFAULT_KEYS_DIR,
    show_default=True,
    help="Remote directory holding authorized_keys (e.g. /etc/ssh/keys-root on ESXi).",
)
@click.option(
    "--settle",
    type=float,
    default=DEFAULT_SETTLE_S,
    show_default=True,
    help="Seconds to wait after install before verifying.",
)
@click.option(
    "--transport",
    type=click.Choice(TRANSPORT_CHOICES),
    multiple=True,
    help="Only use these transports (repeatable; priority order is kept).",
)
@click.option(
    "--no-verify",
    is_flag=True,
    help="Skip the key login check after install.",
)
@click.option(
    "--confirm",
    is_flag=True,
    help="Apply the changes. Without this flag, a summary is printed and the command exits.",
)
def provision(
    host: str,
    ssh_option: tuple[str, ...],
    connect_timeout: int,
    timeout: int,
    user: str,
    key_path: str,
    audit_log: str | None,
    json_output: bool,
    password: str | None,
    known_hosts: str,
    keys_dir: str,
    settle: float,
    transport: tuple[str, ...],
    no_verify: bool,
    confirm: bool,
):
    """Install the local public key on hosts that only accept passwords.

    HOST_OR_FILE can be a hostname, user@hostname, or a file containing hosts
    (one per line). Hosts are processed one at a time.
    """
    args = ProvisionArgs(
        host=host,
        user=user,
        password=password,
        key_path=key_path,
        known_hosts=known_hosts,
        keys_dir=keys_dir,
        timeout=timeout,
        connect_timeout=connect_timeout,
        settle=settle,
        ssh_option=list(ssh_option) if ssh_option else None,
        transport=list(transport) if transport else None,
        verify=not no_verify,
        audit_log=audit_log,
        json=json_output,
        confirm=confirm,
    )
    cmd_provision(args)


@cli.command("verify")
@click.argument("host", metavar="HOST_OR_FILE")
@common_options
def verify(
    host: str,
    ssh_option: tuple[str, ...],
    connect_timeout: int,
    timeout: int,
    user: str,
    key_path: str,
    audit_log: str | None,
    json_output: bool,
):
    """Check that hosts accept a login with the local private key."""
    args = VerifyArgs(
        host=host,
        user=user,
        key_path=key_path,
        timeout=timeout,
        connect_timeout=connect_timeout,
        ssh_option=list(ssh_option) if ssh_option else None,
        audit_log=audit_log,
        json=json_output,
    )
    cmd_verify(args)


@cli.command("keygen")
@click.option(
    "--key-path",
    "-i",
    default=DEFAULT_KEY_PATH,
    show_default=True,
    help="Private key path; the public key is <path>.pub.",
)
@click.option(
    "--bits",
    type=int,
    default=KEY_BITS,
    show_default=True,
    help="RSA key size for a new key.",
)
@click.option(
    "--json",
    "json_output",
    is_flag=True,
    help="Emit machine-readable JSON to stdout.",
)
def keygen(key_path: str, bits: int, json_output: bool):
    """Create the local key pair if it does not exist."""
    cmd_keygen(KeygenArgs(key_path=key_path, bits=bits, json=json_output))


@cli.command("transports")
@click.option(
    "--transport",
    type=click.Choice(TRANSPORT_CHOICES),
    multiple=True,
    help="Restrict to these transports (repeatable).",
)
@click.option(
    "--json",
    "json_output",
    is_flag=True,
    help="Emit machine-readable JSON to stdout.",
)
def transports(transport: tuple[str, ...], json_output: bool):
    """List transports in the order they are tried and whether they are installed."""
    cmd_transports(
        TransportsArgs(transport=list(transport) if transport else None, json=json_output)
    )


@cli.command("debug-remote-script")
@click.option(
    "--public-key",
    default="ssh-rsa AAAA... operator@example",
    show_default=True,
    help="Public key line to render into the commands.",
)
@click.option(
    "--keys-dir",
    default=DEFAULT_KEYS_DIR,
    show_default=True,
    help="Remote directory holding authorized_keys.",
)
@click.option(
    "--script",
    is_flag=True,
    help="Print the self-deleting script used by the scp-exec transport.",
)
@click.option(
    "--json",
    "json_output",
    is_flag=True,
    help="Emit the command list as JSON.",
)
def debug_remote_script(public_key: str, keys_dir: str, script: bool, json_output: bool):
    """Print the remote commands that install a public key."""
    commands = authorized_keys_commands(public_key, keys_dir)
    if script:
        print(remote_script_body(commands), end="")
    elif json_output:
        print(json.dumps(commands, indent=2))
    else:
        for command in commands:
            print(command)


def main():
    """Main entry point for the CLI."""
    try:
        cli()
    except CommandFailureError as e:
        # Command already printed its error message, just exit
        sys.exit(e.rc)
    except UserError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(e.rc)
    except FleetKeysError as e:
        click.echo(f"ERROR: {e}", err=True)
        sys.exit(2)
    except KeyboardInterrupt:
        click.echo("ERROR: Interrupted", err=True)
        sys.exit(130)
