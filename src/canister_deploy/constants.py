"""
Centralized constants for canister-deploy configuration.

Single-source-of-truth defaults for values used across modules.

Environment variable overrides:
- CDEPLOY_HOST: Address the local replica binds to
- CDEPLOY_REPLICA_PORT: Fixed port for the local replica
- CDEPLOY_DFX_BIN: Explicit path to the dfx binary
"""

from __future__ import annotations

import os

from canister_deploy.utils import safe_parse_int

# =============================================================================
# Replica
# =============================================================================

DEFAULT_REPLICA_HOST = os.environ.get("CDEPLOY_HOST", "127.0.0.1")

# Fixed well-known port. Changing it breaks the bind address recorded in any
# existing dfx.json and the canister ids the replica already issued.
DEFAULT_REPLICA_PORT = safe_parse_int(
    os.environ.get("CDEPLOY_REPLICA_PORT", "8000"), 8000, min_val=1, max_val=65535, name="CDEPLOY_REPLICA_PORT"
)

# Liveness poll: 24 attempts x 5s = 120s ceiling
REPLICA_POLL_INTERVAL_SECONDS = 5.0
REPLICA_POLL_ATTEMPTS = 24

# Per-request timeout of the HTTP liveness probe (seconds)
LIVENESS_PROBE_TIMEOUT_SECONDS = 2.0

# `/api/v2/status` of a replica answers 200 with a CBOR-encoded body
REPLICA_STATUS_CONTENT_TYPE = "application/cbor"

# Timeout for `dfx stop` (seconds); the replica may take a moment to shut down
REPLICA_STOP_TIMEOUT_SECONDS = 60.0

# =============================================================================
# Port management
# =============================================================================

PORT_SETTLE_DELAY_SECONDS = 2.0
PORT_FREE_RETRIES = 1

# =============================================================================
# Project layout
# =============================================================================

WORKSPACE_DIRNAME = "deploy_workspace"
SOURCE_DIRNAME = "src"
MODULE_SOURCE_FILENAME = "main.mo"
CONFIG_FILENAME = "dfx.json"
REPLICA_LOG_FILENAME = ".replica.log"

# Name of the base library package passed to moc
BASE_PACKAGE = "base"

# =============================================================================
# Capability check
# =============================================================================

TOOLCHAIN_CHECK_MAX_ATTEMPTS = 2
TOOLCHAIN_CHECK_BASE_DELAY = 1.0
TOOLCHAIN_VERSION_TIMEOUT_SECONDS = 30.0

DFX_INSTALL_HINT = (
    'Install the DFINITY SDK: sh -ci "$(curl -fsSL https://internetcomputer.org/install.sh)", '
    "then run `dfx cache install` (or set CDEPLOY_DFX_BIN to the dfx binary)."
)

# =============================================================================
# Code generation service
# =============================================================================

DEFAULT_CODEGEN_BASE_URL = "https://api.openai.com/v1"
CODEGEN_REQUEST_MAX_RETRIES = 4
CODEGEN_REQUEST_TIMEOUT_SECONDS = 120.0
CODEGEN_BACKOFF_INITIAL = 1.0  # seconds
CODEGEN_BACKOFF_MAX = 8.0  # seconds
