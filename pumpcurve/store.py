"""
Persistence for the registry and curve records.

Layout:
    REGISTRY            -> msgpack(RegistryState.to_dict())
    CURVE:<mint bytes>  -> msgpack(BondingCurveState.to_dict())
"""
import logging
from typing import Optional

import msgpack

from pumpcurve.curve_state import BondingCurveState
from pumpcurve.db import DB
from pumpcurve.registry_state import RegistryState

logger = logging.getLogger(__name__)

REGISTRY_KEY = b"REGISTRY"
CURVE_PREFIX = b"CURVE:"


def curve_key(mint: bytes) -> bytes:
    return CURVE_PREFIX + mint


def _pack(data: dict) -> bytes:
    return msgpack.packb(data, use_bin_type=True)


def _unpack(raw: bytes) -> dict:
    return msgpack.unpackb(raw, raw=False)


class CurveStore:
    """Reads and writes registry and curve records."""

    def __init__(self, db: DB):
        self.db = db

    def get_registry(self) -> Optional[RegistryState]:
        raw = self.db.get(REGISTRY_KEY)
        if raw is None:
            return None
        return RegistryState(_unpack(raw))

    def has_registry(self) -> bool:
        return self.db.exists(REGISTRY_KEY)

    def set_registry(self, registry: RegistryState):
        self.db.put(REGISTRY_KEY, _pack(registry.to_dict()))

    def get_curve(self, mint: bytes) -> Optional[BondingCurveState]:
        raw = self.db.get(curve_key(mint))
        if raw is None:
            return None
        return BondingCurveState(_unpack(raw))

    def has_curve(self, mint: bytes) -> bool:
        return self.db.exists(curve_key(mint))

    def set_curve(self, curve: BondingCurveState):
        self.db.put(curve_key(curve.mint), _pack(curve.to_dict()))

    def create_curve(self, curve: BondingCurveState, registry: RegistryState):
        """Write a new curve and the bumped registry in one batch."""
        with self.db.write_batch() as batch:
            batch.put(curve_key(curve.mint), _pack(curve.to_dict()))
            batch.put(REGISTRY_KEY, _pack(registry.to_dict()))
        logger.debug(f"Stored new curve {curve.mint.hex()}")

    def list_curves(self) -> list[BondingCurveState]:
        """All stored curves, in key order."""
        return [BondingCurveState(_unpack(value))
                for _, value in self.db.get_prefix(CURVE_PREFIX)]
