"""
Bonding curve pricing.
Implements the constant product formula over virtual reserves: base * asset = k

All amounts are integers in the smallest unit. Reserves live in the unsigned
64-bit domain; products are taken with Python ints so k never truncates, and
every division floors.
"""
from dataclasses import dataclass
from decimal import Decimal

from pumpcurve.errors import (
    InsufficientLiquidity,
    InvalidAmount,
    InvalidReserves,
    MathOverflow,
)

U64_MAX = 2**64 - 1
BPS_DENOMINATOR = 10_000

# Supply constants (6 decimals)
TOTAL_SUPPLY = 1_000_000_000_000_000     # 1B tokens
CURVE_TOKENS = 793_000_000_000_000       # 793M sold through the curve
RESERVED_TOKENS = 207_000_000_000_000    # 207M kept for the migration pool

# Reserve seeds
INITIAL_VIRTUAL_BASE_RESERVE = 30_000_000_000   # 30 base coins (9 decimals)
INITIAL_VIRTUAL_ASSET_RESERVE = CURVE_TOKENS

# Graduation threshold on the virtual base reserve
TARGET_VIRTUAL_MC = 500_000_000_000

# Fees and limits
PROTOCOL_FEE_BPS = 50                 # 0.5%
CREATION_FEE = 20_000_000             # 0.02 base coins
MIN_BASE_AMOUNT = 1_000_000           # 0.001 base coins
DEFAULT_SLIPPAGE_BPS = 500            # 5%


@dataclass(frozen=True)
class TradeQuote:
    """A priced trade.

    new_base_reserve and new_asset_reserve are the constant product step
    before the fee is skimmed from the output.
    """
    amount_in: int
    raw_amount_out: int
    fee: int
    amount_out: int
    new_base_reserve: int
    new_asset_reserve: int


def check_u64(value: int, name: str = "value") -> int:
    """Reject values outside the unsigned 64-bit domain."""
    if value < 0:
        raise InvalidAmount(f"{name} must be non-negative, got {value}")
    if value > U64_MAX:
        raise MathOverflow(f"{name} exceeds u64: {value}")
    return value


def calculate_k(base_reserve: int, asset_reserve: int) -> int:
    """Constant product k = base * asset (no truncation)."""
    return base_reserve * asset_reserve


def protocol_fee(amount: int, fee_bps: int = PROTOCOL_FEE_BPS) -> int:
    """Fee portion of an amount, floored."""
    if not 0 <= fee_bps <= BPS_DENOMINATOR:
        raise InvalidAmount(f"fee_bps must be within 0..{BPS_DENOMINATOR}, got {fee_bps}")
    return (amount * fee_bps) // BPS_DENOMINATOR


def _validate_inputs(amount_in: int, base_reserve: int, asset_reserve: int):
    if amount_in <= 0:
        raise InvalidAmount()
    if base_reserve <= 0 or asset_reserve <= 0:
        raise InvalidReserves()
    check_u64(amount_in, "amount_in")
    check_u64(base_reserve, "base_reserve")
    check_u64(asset_reserve, "asset_reserve")


def buy_quote(base_in: int, base_reserve: int, asset_reserve: int,
              fee_bps: int = PROTOCOL_FEE_BPS) -> TradeQuote:
    """
    Price a buy: base in, asset out.

    (base + base_in) * new_asset = k, asset out = asset - new_asset,
    then the protocol fee is taken from the asset output.

    Args:
        base_in: Base amount paid
        base_reserve: Current virtual base reserve
        asset_reserve: Current virtual asset reserve
        fee_bps: Protocol fee in basis points

    Returns:
        TradeQuote with the post-fee asset amount
    """
    _validate_inputs(base_in, base_reserve, asset_reserve)

    k = calculate_k(base_reserve, asset_reserve)
    new_base_reserve = base_reserve + base_in
    if new_base_reserve > U64_MAX:
        raise MathOverflow()

    new_asset_reserve = k // new_base_reserve
    raw_out = asset_reserve - new_asset_reserve
    if raw_out < 0:
        raise InsufficientLiquidity()

    fee = protocol_fee(raw_out, fee_bps)
    return TradeQuote(
        amount_in=base_in,
        raw_amount_out=raw_out,
        fee=fee,
        amount_out=raw_out - fee,
        new_base_reserve=new_base_reserve,
        new_asset_reserve=new_asset_reserve,
    )


def sell_quote(asset_in: int, base_reserve: int, asset_reserve: int,
               fee_bps: int = PROTOCOL_FEE_BPS) -> TradeQuote:
    """
    Price a sell: asset in, base out.

    new_base * (asset + asset_in) = k, base out = base - new_base,
    then the protocol fee is taken from the base output.
    """
    _validate_inputs(asset_in, base_reserve, asset_reserve)

    k = calculate_k(base_reserve, asset_reserve)
    new_asset_reserve = asset_reserve + asset_in
    if new_asset_reserve > U64_MAX:
        raise MathOverflow()

    new_base_reserve = k // new_asset_reserve
    raw_out = base_reserve - new_base_reserve
    if raw_out < 0:
        raise InsufficientLiquidity()

    fee = protocol_fee(raw_out, fee_bps)
    return TradeQuote(
        amount_in=asset_in,
        raw_amount_out=raw_out,
        fee=fee,
        amount_out=raw_out - fee,
        new_base_reserve=new_base_reserve,
        new_asset_reserve=new_asset_reserve,
    )


def quote_buy(base_in: int, base_reserve: int, asset_reserve: int,
              fee_bps: int = PROTOCOL_FEE_BPS) -> int:
    """Asset out for base_in, after fee."""
    return buy_quote(base_in, base_reserve, asset_reserve, fee_bps).amount_out


def quote_sell(asset_in: int, base_reserve: int, asset_reserve: int,
               fee_bps: int = PROTOCOL_FEE_BPS) -> int:
    """Base out for asset_in, after fee."""
    return sell_quote(asset_in, base_reserve, asset_reserve, fee_bps).amount_out


def is_graduated(base_reserve: int, threshold: int = TARGET_VIRTUAL_MC) -> bool:
    """True once the virtual base reserve reaches the graduation threshold."""
    return base_reserve >= threshold


def min_amount_out(quoted: int, slippage_bps: int = DEFAULT_SLIPPAGE_BPS) -> int:
    """
    Lowest acceptable output for a quote under a slippage tolerance.

    Example: a 1000 quote at 500 bps gives 950.
    """
    if not 0 <= slippage_bps <= BPS_DENOMINATOR:
        raise InvalidAmount(f"slippage_bps must be within 0..{BPS_DENOMINATOR}")
    return (quoted * (BPS_DENOMINATOR - slippage_bps)) // BPS_DENOMINATOR


def spot_price(base_reserve: int, asset_reserve: int) -> Decimal:
    """Base units per asset unit at the current reserves."""
    if asset_reserve == 0:
        return Decimal('0')
    return Decimal(base_reserve) / Decimal(asset_reserve)


def market_cap(base_reserve: int, asset_reserve: int,
               total_supply: int = TOTAL_SUPPLY) -> Decimal:
    """Spot price times total supply, in base units."""
    return spot_price(base_reserve, asset_reserve) * Decimal(total_supply)


def graduation_progress_bps(base_reserve: int,
                            initial_base_reserve: int = INITIAL_VIRTUAL_BASE_RESERVE,
                            threshold: int = TARGET_VIRTUAL_MC) -> int:
    """Progress from the seed reserve to the threshold, clamped to 0..10000."""
    span = threshold - initial_base_reserve
    if span <= 0:
        return BPS_DENOMINATOR
    progress = ((base_reserve - initial_base_reserve) * BPS_DENOMINATOR) // span
    return max(0, min(BPS_DENOMINATOR, progress))
