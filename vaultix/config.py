"""Platform fee configuration: treasury identity + fee rate in basis points."""

import logging
from dataclasses import dataclass

from protocol import (
    BPS_DENOMINATOR, CONFIG_FEE_KEY, CONFIG_TREASURY_KEY, DEFAULT_FEE_BPS,
    ErrorCode, EscrowError,
)
from vaultix.auth import AuthProvider
from vaultix.host import Host

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlatformConfig:
    treasury: str
    fee_bps: int

    def to_dict(self) -> dict:
        return {"treasury": self.treasury, "fee_bps": self.fee_bps}


def validate_fee_bps(fee_bps: int) -> int:
    """Return fee_bps if it lies in [0, 10000], else InvalidFeeConfiguration."""
    if isinstance(fee_bps, bool) or not isinstance(fee_bps, int):
        raise EscrowError(ErrorCode.INVALID_FEE_CONFIGURATION, f"fee_bps must be an integer, got {fee_bps!r}")
    if not 0 <= fee_bps <= BPS_DENOMINATOR:
        raise EscrowError(ErrorCode.INVALID_FEE_CONFIGURATION, f"fee_bps {fee_bps} outside [0, {BPS_DENOMINATOR}]")
    return fee_bps


class ConfigStore:
    """Singleton platform configuration held in host storage.

    Treasury and fee are stored under separate keys; a treasury without a
    stored fee reads back with DEFAULT_FEE_BPS.
    """

    def __init__(self, host: Host, default_fee_bps: int = DEFAULT_FEE_BPS):
        self.host = host
        self.default_fee_bps = default_fee_bps

    def initialize(self, auth: AuthProvider, treasury: str, fee_bps: int | None = None) -> PlatformConfig:
        """Store treasury and fee. Not guarded: a second call overwrites both."""
        with self.host.atomic():
            auth.require_proof(treasury)
            fee = validate_fee_bps(self.default_fee_bps if fee_bps is None else fee_bps)
            if self.host.store.has(CONFIG_TREASURY_KEY):
                logger.info("re-initializing platform config (treasury %s)", treasury)
            self.host.store.set(CONFIG_TREASURY_KEY, treasury)
            self.host.store.set(CONFIG_FEE_KEY, fee)
        logger.info("platform config: treasury=%s fee_bps=%d", treasury, fee)
        return PlatformConfig(treasury, fee)

    def update_fee(self, auth: AuthProvider, new_fee_bps: int) -> PlatformConfig:
        """Treasury-only fee change."""
        with self.host.atomic():
            treasury = self._treasury()
            auth.require_proof(treasury)
            fee = validate_fee_bps(new_fee_bps)
            self.host.store.set(CONFIG_FEE_KEY, fee)
        logger.info("platform fee updated to %d bps", fee)
        return PlatformConfig(treasury, fee)

    def get_config(self) -> PlatformConfig:
        treasury = self._treasury()
        fee = self.host.store.get(CONFIG_FEE_KEY)
        if fee is None:
            fee = self.default_fee_bps
        return PlatformConfig(treasury, int(fee))

    def _treasury(self) -> str:
        treasury = self.host.store.get(CONFIG_TREASURY_KEY)
        if treasury is None:
            raise EscrowError(ErrorCode.TREASURY_NOT_INITIALIZED)
        return treasury
