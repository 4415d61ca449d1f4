"""Milestone escrow for the vaultix platform.

A depositor funds an escrow for a recipient; each milestone pays out once,
either through release_milestone (platform fee skimmed into the treasury) or
confirm_delivery (full amount, no fee). Records are never deleted.

All amounts are signed 128-bit integers and every sum/product is checked;
overflow surfaces as InvalidMilestoneAmount.
"""

import logging
import re
from dataclasses import dataclass, field

from protocol import (
    BPS_DENOMINATOR, ESCROW_KEY_TAG, EVENT_FEE_COLLECTED, EVENT_RELEASED,
    I128_MAX, I128_MIN, MAX_DESCRIPTION_LEN, MAX_MILESTONES, U32_MAX, U64_MAX,
    DEFAULT_FEE_BPS, DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT, STATE_TRANSITIONS,
    ErrorCode, EscrowError, EscrowStatus, MilestoneStatus,
)
from vaultix.auth import AuthProvider, StaticAuth
from vaultix.config import ConfigStore, PlatformConfig
from vaultix.host import Host

logger = logging.getLogger(__name__)

_SYMBOL_RE = re.compile(r"[A-Za-z0-9_]*")


# --- Checked 128-bit arithmetic ---

def _check_i128(value: int) -> int:
    if not I128_MIN <= value <= I128_MAX:
        raise EscrowError(ErrorCode.INVALID_MILESTONE_AMOUNT, f"128-bit overflow: {value}")
    return value


def checked_add(a: int, b: int) -> int:
    return _check_i128(a + b)


def checked_sub(a: int, b: int) -> int:
    return _check_i128(a - b)


def checked_mul(a: int, b: int) -> int:
    return _check_i128(a * b)


def checked_div(a: int, b: int) -> int:
    """Integer division truncating toward zero, like the ledger's i128."""
    if b == 0:
        raise EscrowError(ErrorCode.INVALID_MILESTONE_AMOUNT, "division by zero")
    q = abs(a) // abs(b)
    return _check_i128(q if (a >= 0) == (b > 0) else -q)


def calculate_fee(amount: int, fee_bps: int) -> int:
    """Platform fee in basis points: (amount * fee_bps) / 10000, floored.

    For amount = 10000 and fee_bps = 50 (0.5%): fee = 50.
    """
    return checked_div(checked_mul(amount, fee_bps), BPS_DENOMINATOR)


# --- Data model ---

def _require_int(name: str, value, upper: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {value!r}")
    if not 0 <= value <= upper:
        raise ValueError(f"{name} out of range: {value}")
    return value


@dataclass
class Milestone:
    amount: int
    description: str = ""
    status: MilestoneStatus = MilestoneStatus.PENDING

    def __post_init__(self):
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise ValueError(f"milestone amount must be an integer, got {self.amount!r}")
        if (not isinstance(self.description, str) or len(self.description) > MAX_DESCRIPTION_LEN
                or not _SYMBOL_RE.fullmatch(self.description)):
            raise ValueError(
                f"milestone description must be at most {MAX_DESCRIPTION_LEN} "
                f"characters of [A-Za-z0-9_]: {self.description!r}"
            )
        if not isinstance(self.status, MilestoneStatus):
            self.status = MilestoneStatus(self.status)

    @classmethod
    def coerce(cls, value) -> "Milestone":
        """Accept a Milestone or a mapping with amount/description/status."""
        if isinstance(value, cls):
            return value
        return cls(
            amount=value["amount"],
            description=value.get("description", ""),
            status=value.get("status", MilestoneStatus.PENDING.value),
        )

    def to_dict(self) -> dict:
        return {"amount": self.amount, "description": self.description, "status": self.status.value}

    @classmethod
    def from_dict(cls, d: dict) -> "Milestone":
        return cls(amount=d["amount"], description=d["description"], status=MilestoneStatus(d["status"]))


@dataclass
class Escrow:
    depositor: str
    recipient: str
    total_amount: int
    token: str
    milestones: list[Milestone] = field(default_factory=list)
    total_released: int = 0
    status: EscrowStatus = EscrowStatus.ACTIVE

    def to_dict(self) -> dict:
        return {
            "depositor": self.depositor,
            "recipient": self.recipient,
            "total_amount": self.total_amount,
            "total_released": self.total_released,
            "milestones": [m.to_dict() for m in self.milestones],
            "token": self.token,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Escrow":
        return cls(
            depositor=d["depositor"],
            recipient=d["recipient"],
            total_amount=d["total_amount"],
            total_released=d["total_released"],
            milestones=[Milestone.from_dict(m) for m in d["milestones"]],
            token=d["token"],
            status=EscrowStatus(d["status"]),
        )


def storage_key(escrow_id: int) -> str:
    """Composite key: namespace tag + numeric id."""
    _require_int("escrow_id", escrow_id, U64_MAX)
    return f"{ESCROW_KEY_TAG}:{escrow_id}"


def validate_milestones(milestones: list[Milestone]) -> int:
    """Check the milestone vector and return the total amount."""
    if len(milestones) > MAX_MILESTONES:
        raise EscrowError(ErrorCode.VECTOR_TOO_LARGE, f"{len(milestones)} milestones, max {MAX_MILESTONES}")

    total = 0
    for m in milestones:
        if m.amount <= 0:
            raise EscrowError(ErrorCode.ZERO_AMOUNT, f"milestone amount must be positive, got {m.amount}")
        total = checked_add(total, _check_i128(m.amount))
    return total


def verify_all_released(milestones: list[Milestone]) -> bool:
    return all(m.status == MilestoneStatus.RELEASED for m in milestones)


# --- Manager ---

class EscrowManager:
    """Escrow registry, release engine and lifecycle controller.

    Every mutating call takes an optional `auth`; without one the manager's
    own provider is used. The default provider proves nothing.
    """

    def __init__(self, host: Host | None = None, auth: AuthProvider | None = None,
                 default_fee_bps: int = DEFAULT_FEE_BPS):
        self.host = host or Host()
        self.auth = auth or StaticAuth()
        self.config = ConfigStore(self.host, default_fee_bps=default_fee_bps)

    # --- Configuration ---

    def initialize(self, treasury: str, fee_bps: int | None = None,
                   auth: AuthProvider | None = None) -> PlatformConfig:
        return self.config.initialize(auth or self.auth, treasury, fee_bps)

    def update_fee(self, new_fee_bps: int, auth: AuthProvider | None = None) -> PlatformConfig:
        return self.config.update_fee(auth or self.auth, new_fee_bps)

    def get_config(self) -> PlatformConfig:
        return self.config.get_config()

    # --- Registry ---

    def create_escrow(self, escrow_id: int, depositor: str, recipient: str,
                      milestones, token: str, auth: AuthProvider | None = None) -> Escrow:
        """Open and fund an escrow. Caller-supplied milestone statuses are reset to Pending."""
        auth = auth or self.auth

        with self.host.atomic():
            auth.require_proof(depositor)

            key = storage_key(escrow_id)
            milestones = [Milestone.coerce(m) for m in milestones]

            if depositor == recipient:
                raise EscrowError(ErrorCode.SELF_DEALING)

            if self.host.store.has(key):
                raise EscrowError(ErrorCode.ESCROW_ALREADY_EXISTS, f"escrow {escrow_id} already exists")

            total_amount = validate_milestones(milestones)

            escrow = Escrow(
                depositor=depositor,
                recipient=recipient,
                total_amount=total_amount,
                token=token,
                milestones=[Milestone(m.amount, m.description) for m in milestones],
            )
            self.host.store.set(key, escrow.to_dict())

            self.host.ledger.transfer(token, depositor, self.host.contract_address, total_amount)

        logger.info("escrow %d created: %s -> %s, %d in %d milestones",
                    escrow_id, depositor, recipient, total_amount, len(milestones))
        return escrow

    def get_escrow(self, escrow_id: int) -> Escrow:
        data = self.host.store.get(storage_key(escrow_id))
        if data is None:
            raise EscrowError(ErrorCode.ESCROW_NOT_FOUND, f"escrow {escrow_id} not found")
        return Escrow.from_dict(data)

    def get_state(self, escrow_id: int) -> EscrowStatus:
        return self.get_escrow(escrow_id).status

    def list_escrows(self, status: EscrowStatus | str | None = None, party: str | None = None,
                     page: int = 1, limit: int = DEFAULT_PAGE_LIMIT) -> dict:
        """One page of escrows in ascending id order.

        `status` keeps escrows in that state; `party` keeps those where the
        identity is depositor or recipient. Returns
        {"data": [(escrow_id, Escrow), ...], "total", "page", "limit"} where
        total counts every match, not just the page.
        """
        if status is not None and not isinstance(status, EscrowStatus):
            status = EscrowStatus(status)
        _require_int("page", page, U32_MAX)
        _require_int("limit", limit, MAX_PAGE_LIMIT)
        if page < 1 or limit < 1:
            raise ValueError(f"page and limit must be positive, got page={page} limit={limit}")

        prefix = f"{ESCROW_KEY_TAG}:"
        matches = []
        with self.host.atomic():
            ids = sorted(int(k[len(prefix):]) for k in self.host.store.keys(prefix))
            for escrow_id in ids:
                escrow = self.get_escrow(escrow_id)
                if status is not None and escrow.status != status:
                    continue
                if party is not None and party not in (escrow.depositor, escrow.recipient):
                    continue
                matches.append((escrow_id, escrow))

        start = (page - 1) * limit
        return {"data": matches[start:start + limit], "total": len(matches), "page": page, "limit": limit}

    def _save(self, escrow_id: int, escrow: Escrow) -> None:
        self.host.store.set(storage_key(escrow_id), escrow.to_dict())

    # --- Release engine ---

    def _payable_milestone(self, escrow: Escrow, milestone_index: int) -> Milestone:
        """Shared ordered checks: active, index in bounds, not yet released."""
        if escrow.status != EscrowStatus.ACTIVE:
            raise EscrowError(ErrorCode.ESCROW_NOT_ACTIVE)
        if milestone_index >= len(escrow.milestones):
            raise EscrowError(ErrorCode.MILESTONE_NOT_FOUND, f"no milestone {milestone_index}")
        milestone = escrow.milestones[milestone_index]
        if milestone.status == MilestoneStatus.RELEASED:
            raise EscrowError(ErrorCode.MILESTONE_ALREADY_RELEASED)
        return milestone

    def _mark_released(self, escrow: Escrow, milestone: Milestone) -> None:
        milestone.status = MilestoneStatus.RELEASED
        escrow.total_released = checked_add(escrow.total_released, milestone.amount)

    def release_milestone(self, escrow_id: int, milestone_index: int, token_address: str,
                          auth: AuthProvider | None = None) -> dict:
        """Pay one milestone to the recipient minus the platform fee.

        The fee goes to the treasury; both transfers use `token_address`.
        Returns {"amount", "fee", "payout"}.
        """
        _require_int("milestone_index", milestone_index, U32_MAX)
        auth = auth or self.auth

        with self.host.atomic():
            escrow = self.get_escrow(escrow_id)
            auth.require_proof(escrow.depositor)

            milestone = self._payable_milestone(escrow, milestone_index)
            cfg = self.config.get_config()

            fee = calculate_fee(milestone.amount, cfg.fee_bps)
            payout = checked_sub(milestone.amount, fee)

            self._mark_released(escrow, milestone)
            self._save(escrow_id, escrow)

            contract = self.host.contract_address
            self.host.ledger.transfer(token_address, contract, escrow.recipient, payout)
            if fee > 0:
                self.host.ledger.transfer(token_address, contract, cfg.treasury, fee)
                self.host.events.publish(
                    (EVENT_FEE_COLLECTED, escrow_id, milestone_index), (fee, cfg.treasury),
                )
            self.host.events.publish(
                (EVENT_RELEASED, escrow_id, milestone_index), (payout, escrow.recipient),
            )

        logger.info("escrow %d milestone %d released: payout=%d fee=%d",
                    escrow_id, milestone_index, payout, fee)
        return {"amount": milestone.amount, "fee": fee, "payout": payout}

    def confirm_delivery(self, escrow_id: int, milestone_index: int, buyer: str,
                         auth: AuthProvider | None = None) -> dict:
        """Buyer confirms delivery: full milestone amount to the recipient, no fee.

        Pays in the escrow's own token and publishes no events.
        """
        _require_int("milestone_index", milestone_index, U32_MAX)
        auth = auth or self.auth

        with self.host.atomic():
            escrow = self.get_escrow(escrow_id)
            auth.require_proof(buyer)

            if escrow.depositor != buyer:
                raise EscrowError(ErrorCode.UNAUTHORIZED_ACCESS, "buyer is not the depositor")

            milestone = self._payable_milestone(escrow, milestone_index)

            self._mark_released(escrow, milestone)
            self._save(escrow_id, escrow)

            self.host.ledger.transfer(
                escrow.token, self.host.contract_address, escrow.recipient, milestone.amount,
            )

        logger.info("escrow %d milestone %d delivered: %d", escrow_id, milestone_index, milestone.amount)
        return {"amount": milestone.amount, "fee": 0, "payout": milestone.amount}

    # --- Lifecycle ---

    def _transition(self, escrow_id: int, escrow: Escrow, status: EscrowStatus) -> None:
        if status not in STATE_TRANSITIONS[escrow.status]:
            raise EscrowError(
                ErrorCode.ESCROW_NOT_ACTIVE,
                f"invalid transition: {escrow.status.value} -> {status.value}",
            )
        escrow.status = status
        self._save(escrow_id, escrow)
        logger.info("escrow %d %s", escrow_id, status.value)

    def cancel_escrow(self, escrow_id: int, auth: AuthProvider | None = None) -> Escrow:
        """Cancel before the first payout. Deposited funds stay with the contract."""
        auth = auth or self.auth
        with self.host.atomic():
            escrow = self.get_escrow(escrow_id)
            auth.require_proof(escrow.depositor)

            if escrow.total_released > 0:
                raise EscrowError(ErrorCode.MILESTONE_ALREADY_RELEASED, "funds already released")

            self._transition(escrow_id, escrow, EscrowStatus.CANCELLED)
        return escrow

    def complete_escrow(self, escrow_id: int, auth: AuthProvider | None = None) -> Escrow:
        """Close an escrow whose milestones have all been released."""
        auth = auth or self.auth
        with self.host.atomic():
            escrow = self.get_escrow(escrow_id)
            auth.require_proof(escrow.depositor)

            if not verify_all_released(escrow.milestones):
                raise EscrowError(ErrorCode.ESCROW_NOT_ACTIVE, "unreleased milestones remain")

            self._transition(escrow_id, escrow, EscrowStatus.COMPLETED)
        return escrow
