"""Shared constants and interfaces for the vaultix escrow protocol.

All modules import from here to avoid circular dependencies.
"""

import os
from enum import Enum, IntEnum

# --- Protocol Constants ---

# Platform fee in basis points (1 bps = 0.01%). Default: 50 bps = 0.5%
DEFAULT_FEE_BPS = int(os.environ.get("VAULTIX_DEFAULT_FEE_BPS", "50"))
BPS_DENOMINATOR = 10000

# Upper bound on milestones per escrow (keeps every call bounded)
MAX_MILESTONES = 20

# Escrow listing page size (default and upper bound)
DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100

# Numeric domains of the ledger host
I128_MIN = -(1 << 127)
I128_MAX = (1 << 127) - 1
U64_MAX = (1 << 64) - 1
U32_MAX = (1 << 32) - 1

# Milestone descriptions are short symbols
MAX_DESCRIPTION_LEN = 32

# Storage keys
CONFIG_TREASURY_KEY = "treasury"
CONFIG_FEE_KEY = "fee_bps"
ESCROW_KEY_TAG = "escrow"

# Event topics
EVENT_FEE_COLLECTED = "fee_coll"
EVENT_RELEASED = "released"

# Identity that holds deposited funds while an escrow is open.
# Set via VAULTIX_CONTRACT_ADDRESS env var.
CONTRACT_ADDRESS = os.environ.get("VAULTIX_CONTRACT_ADDRESS", "vx_escrow_contract")

# Signed-request freshness window (seconds), also the replay guard TTL
REQUEST_MAX_AGE = int(os.environ.get("VAULTIX_REPLAY_TTL", "300"))


# --- State Machine ---

class EscrowStatus(Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MilestoneStatus(Enum):
    PENDING = "pending"
    RELEASED = "released"
    DISPUTED = "disputed"  # reserved: no operation moves a milestone here


# Valid escrow transitions: current_state -> set of valid next states
STATE_TRANSITIONS = {
    EscrowStatus.ACTIVE: {EscrowStatus.COMPLETED, EscrowStatus.CANCELLED},
    EscrowStatus.COMPLETED: set(),
    EscrowStatus.CANCELLED: set(),
}


# --- Errors ---

class ErrorCode(IntEnum):
    ESCROW_NOT_FOUND = 1
    ESCROW_ALREADY_EXISTS = 2
    MILESTONE_NOT_FOUND = 3
    MILESTONE_ALREADY_RELEASED = 4
    UNAUTHORIZED_ACCESS = 5
    INVALID_MILESTONE_AMOUNT = 6
    TOTAL_AMOUNT_MISMATCH = 7  # reserved
    INSUFFICIENT_BALANCE = 8  # reserved
    ESCROW_NOT_ACTIVE = 9
    VECTOR_TOO_LARGE = 10
    TREASURY_NOT_INITIALIZED = 11
    INVALID_FEE_CONFIGURATION = 12
    ZERO_AMOUNT = 13
    INVALID_DEADLINE = 14  # reserved
    SELF_DEALING = 15

    @property
    def title(self) -> str:
        """CamelCase name, e.g. EscrowNotFound."""
        return "".join(part.capitalize() for part in self.name.split("_"))

    @property
    def category(self) -> str:
        return ERROR_CATEGORIES[self]


ERROR_CATEGORIES = {
    ErrorCode.ESCROW_NOT_FOUND: "not_found",
    ErrorCode.MILESTONE_NOT_FOUND: "not_found",
    ErrorCode.ESCROW_ALREADY_EXISTS: "conflict",
    ErrorCode.MILESTONE_ALREADY_RELEASED: "conflict",
    ErrorCode.UNAUTHORIZED_ACCESS: "authorization",
    ErrorCode.INVALID_MILESTONE_AMOUNT: "validation",
    ErrorCode.TOTAL_AMOUNT_MISMATCH: "validation",
    ErrorCode.ZERO_AMOUNT: "validation",
    ErrorCode.SELF_DEALING: "validation",
    ErrorCode.VECTOR_TOO_LARGE: "validation",
    ErrorCode.INVALID_FEE_CONFIGURATION: "validation",
    ErrorCode.INVALID_DEADLINE: "validation",
    ErrorCode.ESCROW_NOT_ACTIVE: "state",
    ErrorCode.TREASURY_NOT_INITIALIZED: "configuration",
    ErrorCode.INSUFFICIENT_BALANCE: "configuration",
}


class EscrowError(Exception):
    """A recoverable escrow failure. Carries one ErrorCode."""

    def __init__(self, code: ErrorCode, message: str = ""):
        self.code = ErrorCode(code)
        super().__init__(message or self.code.title)

    def __repr__(self):
        return f"EscrowError({self.code.title})"


class AuthorizationError(Exception):
    """Caller lacks a valid proof for an identity. Aborts the whole call.

    Not an EscrowError subclass, so `except EscrowError` never catches it.
    """

    def __init__(self, identity: str, reason: str = ""):
        self.identity = identity
        self.reason = reason
        msg = f"missing authorization for {identity}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
