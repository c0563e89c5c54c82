"""
Per-token bonding curve state.
"""
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from pumpcurve import curve_math
from pumpcurve.curve_math import check_u64
from pumpcurve.errors import AlreadyCompleted, InsufficientLiquidity, InvalidAmount


class CurveStatus(Enum):
    """Lifecycle of a curve."""
    ACTIVE = "active"
    COMPLETED = "completed"


@dataclass(frozen=True)
class ReserveSnapshot:
    """Virtual reserves at a point in time."""
    virtual_base_reserve: int
    virtual_asset_reserve: int

    @property
    def k(self) -> int:
        return curve_math.calculate_k(self.virtual_base_reserve, self.virtual_asset_reserve)

    def to_dict(self) -> dict:
        return {
            'virtual_base_reserve': self.virtual_base_reserve,
            'virtual_asset_reserve': self.virtual_asset_reserve,
        }


class BondingCurveState:
    """
    Represents one token's bonding curve as stored.

    Invariants checked after every load and mutation:
    - 0 <= virtual_asset_reserve <= initial_virtual_asset_reserve
    - total_sold == initial_virtual_asset_reserve - virtual_asset_reserve
    - completed_at is set iff completed
    """

    def __init__(self, data: dict):
        """
        Initialize curve state.

        Args:
            data: Dict with identity, reserves, counters and lifecycle fields
        """
        self.mint = bytes(data['mint'])
        self.creator = bytes(data['creator'])
        self.virtual_base_reserve = int(data['virtual_base_reserve'])
        self.virtual_asset_reserve = int(data['virtual_asset_reserve'])
        self.initial_virtual_asset_reserve = int(
            data.get('initial_virtual_asset_reserve', curve_math.INITIAL_VIRTUAL_ASSET_RESERVE))
        self.real_base_accrued = int(data.get('real_base_accrued', 0))
        self.total_sold = int(data.get('total_sold', 0))
        self.completed = bool(data.get('completed', False))
        self.created_at = int(data['created_at'])
        completed_at = data.get('completed_at')
        self.completed_at: Optional[int] = None if completed_at is None else int(completed_at)
        self.name = data.get('name', '')
        self.symbol = data.get('symbol', '')
        self.uri = data.get('uri', '')
        self._validate()

    @classmethod
    def new(cls, mint: bytes, creator: bytes, created_at: int,
            initial_base_reserve: int = curve_math.INITIAL_VIRTUAL_BASE_RESERVE,
            initial_asset_reserve: int = curve_math.INITIAL_VIRTUAL_ASSET_RESERVE,
            name: str = '', symbol: str = '', uri: str = '') -> 'BondingCurveState':
        """Seed a fresh, active curve."""
        return cls({
            'mint': mint,
            'creator': creator,
            'virtual_base_reserve': initial_base_reserve,
            'virtual_asset_reserve': initial_asset_reserve,
            'initial_virtual_asset_reserve': initial_asset_reserve,
            'real_base_accrued': 0,
            'total_sold': 0,
            'completed': False,
            'created_at': created_at,
            'completed_at': None,
            'name': name,
            'symbol': symbol,
            'uri': uri,
        })

    def to_dict(self) -> dict:
        """
        Convert to dict for storage.
        """
        return {
            'mint': self.mint,
            'creator': self.creator,
            'virtual_base_reserve': self.virtual_base_reserve,
            'virtual_asset_reserve': self.virtual_asset_reserve,
            'initial_virtual_asset_reserve': self.initial_virtual_asset_reserve,
            'real_base_accrued': self.real_base_accrued,
            'total_sold': self.total_sold,
            'completed': self.completed,
            'created_at': self.created_at,
            'completed_at': self.completed_at,
            'name': self.name,
            'symbol': self.symbol,
            'uri': self.uri,
        }

    def copy(self) -> 'BondingCurveState':
        return BondingCurveState(self.to_dict())

    @property
    def status(self) -> CurveStatus:
        return CurveStatus.COMPLETED if self.completed else CurveStatus.ACTIVE

    @property
    def reserves(self) -> ReserveSnapshot:
        return ReserveSnapshot(self.virtual_base_reserve, self.virtual_asset_reserve)

    @property
    def k(self) -> int:
        return curve_math.calculate_k(self.virtual_base_reserve, self.virtual_asset_reserve)

    @property
    def current_price(self) -> Decimal:
        """Base units per asset unit."""
        return curve_math.spot_price(self.virtual_base_reserve, self.virtual_asset_reserve)

    def apply_buy(self, base_in: int, asset_out: int):
        """Update reserves after a buy."""
        if self.completed:
            raise AlreadyCompleted()
        if asset_out > self.virtual_asset_reserve:
            raise InsufficientLiquidity()

        self.virtual_base_reserve = check_u64(self.virtual_base_reserve + base_in,
                                              "virtual_base_reserve")
        self.virtual_asset_reserve -= asset_out
        self.real_base_accrued = check_u64(self.real_base_accrued + base_in,
                                           "real_base_accrued")
        self.total_sold = check_u64(self.total_sold + asset_out, "total_sold")
        self._validate()

    def apply_sell(self, asset_in: int, base_out: int):
        """Update reserves after a sell."""
        if self.completed:
            raise AlreadyCompleted()
        if base_out > self.virtual_base_reserve or base_out > self.real_base_accrued:
            raise InsufficientLiquidity()
        if asset_in > self.total_sold:
            raise InvalidAmount("Sell exceeds tokens sold from the curve")

        self.virtual_base_reserve -= base_out
        self.virtual_asset_reserve = check_u64(self.virtual_asset_reserve + asset_in,
                                               "virtual_asset_reserve")
        self.real_base_accrued -= base_out
        self.total_sold -= asset_in
        self._validate()

    def complete(self, timestamp: int):
        """Mark the curve as completed."""
        if self.completed:
            raise AlreadyCompleted()
        self.completed = True
        self.completed_at = timestamp

    def __repr__(self) -> str:
        return (
            f"BondingCurveState("
            f"mint={self.mint.hex()}, "
            f"base={self.virtual_base_reserve}, "
            f"asset={self.virtual_asset_reserve}, "
            f"sold={self.total_sold}, "
            f"status={self.status.value})"
        )

    def _validate(self):
        """Ensure state consistency."""
        for name in ('virtual_base_reserve', 'virtual_asset_reserve',
                     'initial_virtual_asset_reserve', 'real_base_accrued', 'total_sold'):
            value = getattr(self, name)
            if value < 0 or value > curve_math.U64_MAX:
                raise ValueError(f"{name} out of range: {value}")

        if self.virtual_asset_reserve > self.initial_virtual_asset_reserve:
            raise ValueError("Virtual asset reserve exceeds its initial value")

        if self.total_sold != self.initial_virtual_asset_reserve - self.virtual_asset_reserve:
            raise ValueError(
                f"total_sold {self.total_sold} does not match reserve drawdown "
                f"{self.initial_virtual_asset_reserve - self.virtual_asset_reserve}"
            )

        if self.completed != (self.completed_at is not None):
            raise ValueError("completed_at must be set iff the curve is completed")
