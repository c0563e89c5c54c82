"""Bonding curve token launches: pricing, per-token state and lifecycle."""
from pumpcurve.config import Config, CurveConfig
from pumpcurve.controller import BuyResult, CurveController, SellResult
from pumpcurve.curve_state import BondingCurveState, CurveStatus, ReserveSnapshot
from pumpcurve.errors import ValidationError
from pumpcurve.registry_state import RegistryState

__version__ = "0.1.0"
