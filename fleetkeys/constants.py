"""FleetKeys constants."""

from __future__ import annotations

# Local key material
DEFAULT_KEY_PATH = "~/.ssh/id_rsa"
KEY_TYPE = "rsa"
KEY_BITS = 4096
DEFAULT_KNOWN_HOSTS_PATH = "~/.ssh/known_hosts"

# Remote side
DEFAULT_USERNAME = "root"
# ESXi keeps root's keys in /etc/ssh/keys-root; pass --keys-dir for those hosts.
DEFAULT_KEYS_DIR = "~/.ssh"
AUTHORIZED_KEYS_FILE_NAME = "authorized_keys"
REMOTE_SCRIPT_PREFIX = "/tmp/.fleetkeys-"
VERIFY_TOKEN = "fleetkeys-verified"

# Timeouts (seconds)
DEFAULT_TIMEOUT_S = 30
DEFAULT_CONNECT_TIMEOUT_S = 10
KEYSCAN_TIMEOUT_S = 5
DEFAULT_SETTLE_S = 2.0
STDIN_LINE_DELAY_S = 0.5
SSH_TIMEOUT_EXIT_CODE = 124

# ssh exits 255 on connection/auth failure; sshpass uses 3-6 for its own errors
SSH_CONNECTION_FAILURE_EXIT_CODE = 255
SSHPASS_FAILURE_EXIT_CODES = {
    3: "sshpass runtime error",
    4: "unrecognized response from ssh",
    5: "password rejected",
    6: "host key unknown",
}

# Environment variables
PASSWORD_ENV_VAR = "FLEETKEYS_PASSWORD"
ASKPASS_SECRET_ENV_VAR = "FLEETKEYS_ASKPASS_SECRET"

# Markers printed after each command in single-session transports
EXIT_MARKER_PREFIX = "__FLEETKEYS_RC_"

# Local state
AUDIT_DIR_NAME = ".fleetkeys"
AUDIT_FILE_NAME = "audit.jsonl"
DRY_RUN_PREVIEW_LIMIT = 5
REDACTED = "********"
