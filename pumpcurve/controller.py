"""
Bonding curve lifecycle controller.

Orchestrates initialize, create, buy, sell and complete:
- validates every precondition before touching any state
- prices trades through curve_math
- applies external effects (payment rail, token ledger) under a journal that
  reverses them if a later step fails
- writes the curve record last, then emits the notification

Operations on the same mint are serialized by a per-mint lock held across the
whole read-quote-commit sequence. Different mints never share a lock.
"""
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Optional

from pumpcurve import curve_math
from pumpcurve.access import initialize_payload
from pumpcurve.accounts import AccountStore, StorePaymentRail, StoreTokenLedger
from pumpcurve.config import Config, CurveConfig
from pumpcurve.curve_math import TradeQuote
from pumpcurve.curve_state import BondingCurveState, ReserveSnapshot
from pumpcurve.db import DB
from pumpcurve.errors import (
    AlreadyCompleted,
    AlreadyInitialized,
    CurveAlreadyExists,
    CurveNotFound,
    InsufficientCreationFee,
    InsufficientFunds,
    InsufficientLiquidity,
    InvalidAmount,
    InvalidMetadata,
    MinAmountNotMet,
    NotCompleted,
    NotInitialized,
    RollbackFailed,
    SlippageExceeded,
    Unauthorized,
    ValidationError,
)
from pumpcurve.events import CurveCompleted, EventLog, TokenBought, TokenCreated, TokenSold
from pumpcurve.interfaces import AccessControl, Clock, PaymentRail, SystemClock, TokenLedger
from pumpcurve.monitoring import CurveMonitor
from pumpcurve.registry_state import RegistryState
from pumpcurve.store import CurveStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 32
MAX_SYMBOL_LENGTH = 10
MAX_URI_LENGTH = 200


@dataclass(frozen=True)
class BuyResult:
    asset_out: int
    protocol_fee: int
    reserves: ReserveSnapshot
    completed: bool


@dataclass(frozen=True)
class SellResult:
    base_out: int
    reserves: ReserveSnapshot


class _Journal:
    """
    Inverse actions for external effects already applied.

    Used as a context manager: if the body raises, the recorded inverses run
    newest first and the exception still propagates. If any inverse fails,
    the remaining ones still run and RollbackFailed is raised instead, with
    the aborting exception as its cause.
    """

    def __init__(self, operation: str):
        self.operation = operation
        self._undo: list[tuple[str, Callable[[], None]]] = []

    def record(self, description: str, undo: Callable[[], None]):
        self._undo.append((description, undo))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            return False
        logger.warning(f"{self.operation} failed after {len(self._undo)} effect(s), rolling back: {exc_val}")
        failures = []
        for description, undo in reversed(self._undo):
            try:
                undo()
            except Exception as e:
                logger.error(f"Rollback of {description} during {self.operation} failed: {e}")
                failures.append((description, e))
        if failures:
            raise RollbackFailed(self.operation, failures) from exc_val
        return False


class CurveController:
    """
    Runs the bonding curve state machine (Active -> Completed) over the store.

    The registry returned by initialize() is the configuration handle every
    other operation takes; it is checked against the stored registry on each
    call.
    """

    def __init__(self, store: CurveStore, ledger: TokenLedger, rail: PaymentRail,
                 access_control: AccessControl, clock: Optional[Clock] = None,
                 config: Optional[CurveConfig] = None, events: Optional[EventLog] = None,
                 monitor=None):
        self.store = store
        self.ledger = ledger
        self.rail = rail
        self.access_control = access_control
        self.clock = clock or SystemClock()
        self.config = config or CurveConfig()
        self.events = events or EventLog()
        self.monitor = monitor
        if monitor is not None:
            monitor.attach(self.events)

        self._curve_locks: dict[bytes, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._registry_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Config, access_control: AccessControl,
                    clock: Optional[Clock] = None, events: Optional[EventLog] = None) -> 'CurveController':
        """
        Wire a controller from configuration.

        Opens the database at config.database, uses DB-backed accounts as the
        token ledger and payment rail, and serves metrics when
        config.monitoring is enabled.
        """
        db = DB(config.database.path,
                write_buffer_size=config.database.write_buffer_size,
                max_open_files=config.database.max_open_files)
        try:
            monitor = CurveMonitor.from_config(config.monitoring)
        except OSError:
            db.close()
            raise

        accounts = AccountStore(db)
        return cls(CurveStore(db), StoreTokenLedger(accounts), StorePaymentRail(accounts),
                   access_control, clock=clock, config=config.curve, events=events,
                   monitor=monitor)

    def close(self):
        """Stop the metrics endpoint, if any, and close the database."""
        if self.monitor is not None:
            self.monitor.stop_server()
            self.monitor.detach(self.events)
        self.store.db.close()

    # ==========================================================================
    # LOCKING AND OBSERVATION
    # ==========================================================================

    def _existing_curve_lock(self, mint: bytes) -> threading.Lock:
        """Lock for a mint that already has a curve; unknown mints never get one."""
        if not self.store.has_curve(mint):
            raise CurveNotFound(f"No bonding curve for mint {mint.hex()}")
        return self._curve_lock(mint)

    def _curve_lock(self, mint: bytes) -> threading.Lock:
        with self._locks_guard:
            lock = self._curve_locks.get(mint)
            if lock is None:
                lock = threading.Lock()
                self._curve_locks[mint] = lock
            return lock

    @contextmanager
    def _observe(self, operation: str, mint: bytes = b''):
        start = time.perf_counter()
        try:
            yield
        except ValidationError as e:
            logger.warning(f"{operation} rejected for {mint.hex() or '-'}: {type(e).__name__}: {e}")
            self._record(operation, type(e).__name__, start)
            raise
        except RollbackFailed as e:
            logger.error(f"{operation} for {mint.hex() or '-'} left effects applied: {e}")
            self._record(operation, "RollbackFailed", start)
            raise
        except Exception as e:
            logger.error(f"{operation} failed for {mint.hex() or '-'}: {e}")
            self._record(operation, "error", start)
            raise
        else:
            self._record(operation, "ok", start)

    def _record(self, operation: str, status: str, start: float):
        if self.monitor is not None:
            self.monitor.record_operation(operation, status, time.perf_counter() - start)

    # ==========================================================================
    # REGISTRY
    # ==========================================================================

    def initialize(self, authority_public_key: str, signature: bytes,
                   treasury: bytes) -> RegistryState:
        """
        Create the registry. Succeeds once.

        Args:
            authority_public_key: PEM public key of the protocol authority
            signature: Authority's signature over initialize_payload(treasury)
            treasury: Account receiving fees and holding curve proceeds

        Returns:
            The registry handle to pass to every other operation
        """
        with self._observe("initialize"):
            authority = self.access_control.verify_caller(
                authority_public_key, signature, initialize_payload(treasury))
            if not treasury:
                raise InvalidAmount("Treasury account is required")

            with self._registry_lock:
                if self.store.has_registry():
                    raise AlreadyInitialized()

                registry = RegistryState({
                    'authority': authority,
                    'treasury': treasury,
                    'protocol_fee_bps': self.config.protocol_fee_bps,
                    'creation_fee': self.config.creation_fee,
                    'total_tokens_created': 0,
                })
                self.store.set_registry(registry)

        logger.info(f"Registry initialized by {authority.hex()}, treasury {treasury.hex()}")
        return registry

    def get_registry(self) -> RegistryState:
        registry = self.store.get_registry()
        if registry is None:
            raise NotInitialized()
        return registry

    def _check_registry(self, registry: RegistryState) -> RegistryState:
        stored = self.get_registry()
        if registry is None or (registry.authority, registry.treasury) != (stored.authority, stored.treasury):
            raise Unauthorized("Registry handle does not match the initialized registry")
        return stored

    # ==========================================================================
    # CURVE OPERATIONS
    # ==========================================================================

    def _load_curve(self, mint: bytes) -> BondingCurveState:
        curve = self.store.get_curve(mint)
        if curve is None:
            raise CurveNotFound(f"No bonding curve for mint {mint.hex()}")
        return curve

    @staticmethod
    def _validate_metadata(name: str, symbol: str, uri: str):
        if len(name) > MAX_NAME_LENGTH:
            raise InvalidMetadata(f"Name longer than {MAX_NAME_LENGTH} characters")
        if len(symbol) > MAX_SYMBOL_LENGTH:
            raise InvalidMetadata(f"Symbol longer than {MAX_SYMBOL_LENGTH} characters")
        if len(uri) > MAX_URI_LENGTH:
            raise InvalidMetadata(f"URI longer than {MAX_URI_LENGTH} characters")

    def create_curve(self, registry: RegistryState, mint: bytes, creator: bytes, fee_paid: int,
                     name: str = '', symbol: str = '', uri: str = '') -> BondingCurveState:
        """
        Open a bonding curve for a newly issued token.

        The creation fee moves from the creator to the treasury and the
        registry counter is bumped in the same write as the new record.
        """
        with self._observe("create", mint):
            if not mint:
                raise InvalidMetadata("Mint identity is required")
            self._validate_metadata(name, symbol, uri)

            with self._registry_lock:
                stored = self._check_registry(registry)
                if self.store.has_curve(mint):
                    raise CurveAlreadyExists(f"Curve for mint {mint.hex()} already exists")

                creation_fee = stored.creation_fee
                if fee_paid < creation_fee:
                    raise InsufficientCreationFee(f"Paid {fee_paid}, creation fee is {creation_fee}")
                if self.rail.balance_of(creator) < creation_fee:
                    raise InsufficientCreationFee(f"Creator cannot cover creation fee {creation_fee}")

                now = self.clock.now()
                curve = BondingCurveState.new(
                    mint, creator, now,
                    initial_base_reserve=self.config.initial_virtual_base_reserve,
                    initial_asset_reserve=self.config.initial_virtual_asset_reserve,
                    name=name, symbol=symbol, uri=uri,
                )
                stored.record_creation()

                with _Journal("create") as journal:
                    if creation_fee > 0:
                        self.rail.transfer(creator, stored.treasury, creation_fee)
                        journal.record("creation fee",
                                       lambda: self.rail.transfer(stored.treasury, creator, creation_fee))
                    self.store.create_curve(curve, stored)

                registry.total_tokens_created = stored.total_tokens_created
                self.events.emit(TokenCreated(
                    mint=mint, creator=creator, name=name, symbol=symbol, timestamp=now,
                ))

        logger.info(f"Curve created for {mint.hex()} by {creator.hex()} ({symbol or 'no symbol'})")
        return curve

    def buy(self, registry: RegistryState, mint: bytes, buyer: bytes,
            base_in: int, min_asset_out: int = 0) -> BuyResult:
        """
        Pay base_in, receive tokens minted off the curve.

        Graduates the curve in the same step when the new virtual base
        reserve reaches the threshold.
        """
        with self._observe("buy", mint):
            with self._existing_curve_lock(mint):
                stored = self._check_registry(registry)
                curve = self._load_curve(mint)

                if curve.completed:
                    raise AlreadyCompleted()
                if base_in < self.config.min_base_amount:
                    raise MinAmountNotMet(f"Buy of {base_in} below minimum {self.config.min_base_amount}")
                if base_in <= 0:
                    raise InvalidAmount()

                quote = curve_math.buy_quote(base_in, curve.virtual_base_reserve,
                                             curve.virtual_asset_reserve, stored.protocol_fee_bps)
                asset_out = quote.amount_out
                if asset_out < min_asset_out:
                    raise SlippageExceeded(f"Slippage: got {asset_out}, expected {min_asset_out}")
                if asset_out <= 0:
                    raise InvalidAmount("Buy too small to receive any tokens")
                if self.rail.balance_of(buyer) < base_in:
                    raise InsufficientFunds(f"Buyer {buyer.hex()} cannot pay {base_in}")

                fee = curve_math.protocol_fee(base_in, stored.protocol_fee_bps)
                updated = curve.copy()
                updated.apply_buy(base_in, asset_out)
                now = self.clock.now()
                graduated = curve_math.is_graduated(updated.virtual_base_reserve,
                                                    self.config.graduation_threshold)
                if graduated:
                    updated.complete(now)

                with _Journal("buy") as journal:
                    # fee and net portions both land in the treasury
                    self.rail.transfer(buyer, stored.treasury, base_in)
                    journal.record("payment", lambda: self.rail.transfer(stored.treasury, buyer, base_in))
                    self.ledger.mint(mint, asset_out, buyer)
                    journal.record("mint", lambda: self.ledger.burn(mint, asset_out, buyer))
                    self.store.set_curve(updated)

                self.events.emit(TokenBought(
                    mint=mint,
                    buyer=buyer,
                    base_in=base_in,
                    asset_out=asset_out,
                    protocol_fee=fee,
                    virtual_base_reserve=updated.virtual_base_reserve,
                    virtual_asset_reserve=updated.virtual_asset_reserve,
                    completed=updated.completed,
                    timestamp=now,
                ))
                if graduated:
                    self.events.emit(self._completion_event(updated))

        logger.info(
            f"Buy: {base_in} base -> {asset_out} tokens of {mint.hex()[:8]} "
            f"(fee {fee}), reserves {updated.virtual_base_reserve}/{updated.virtual_asset_reserve}"
        )
        if graduated:
            logger.info(f"Curve {mint.hex()} graduated at {now}")
        return BuyResult(asset_out=asset_out, protocol_fee=fee,
                         reserves=updated.reserves, completed=updated.completed)

    def sell(self, registry: RegistryState, mint: bytes, seller: bytes,
             asset_in: int, min_base_out: int = 0) -> SellResult:
        """
        Return tokens to the curve for base currency paid from the treasury.

        A sell never pays out more than the curve has accrued and never
        graduates the curve.
        """
        with self._observe("sell", mint):
            with self._existing_curve_lock(mint):
                stored = self._check_registry(registry)
                curve = self._load_curve(mint)

                if curve.completed:
                    raise AlreadyCompleted()
                if asset_in <= 0:
                    raise InvalidAmount()
                if asset_in > curve.total_sold:
                    raise InvalidAmount(f"Sell of {asset_in} exceeds {curve.total_sold} sold")
                if self.ledger.balance_of(mint, seller) < asset_in:
                    raise InvalidAmount(f"Seller {seller.hex()} holds fewer than {asset_in} tokens")

                quote = curve_math.sell_quote(asset_in, curve.virtual_base_reserve,
                                              curve.virtual_asset_reserve, stored.protocol_fee_bps)
                base_out = quote.amount_out
                if base_out < min_base_out:
                    raise SlippageExceeded(f"Slippage: got {base_out}, expected {min_base_out}")
                if base_out > curve.real_base_accrued:
                    raise InsufficientLiquidity(
                        f"Payout {base_out} exceeds accrued {curve.real_base_accrued}")
                if self.rail.balance_of(stored.treasury) < base_out:
                    raise InsufficientLiquidity("Treasury cannot cover payout")

                updated = curve.copy()
                updated.apply_sell(asset_in, base_out)
                now = self.clock.now()

                with _Journal("sell") as journal:
                    self.ledger.burn(mint, asset_in, seller)
                    journal.record("burn", lambda: self.ledger.mint(mint, asset_in, seller))
                    if base_out > 0:
                        self.rail.transfer(stored.treasury, seller, base_out)
                        journal.record("payout",
                                       lambda: self.rail.transfer(seller, stored.treasury, base_out))
                    self.store.set_curve(updated)

                self.events.emit(TokenSold(
                    mint=mint,
                    seller=seller,
                    asset_in=asset_in,
                    base_out=base_out,
                    virtual_base_reserve=updated.virtual_base_reserve,
                    virtual_asset_reserve=updated.virtual_asset_reserve,
                    timestamp=now,
                ))

        logger.info(
            f"Sell: {asset_in} tokens of {mint.hex()[:8]} -> {base_out} base, "
            f"reserves {updated.virtual_base_reserve}/{updated.virtual_asset_reserve}"
        )
        return SellResult(base_out=base_out, reserves=updated.reserves)

    def complete(self, registry: RegistryState, mint: bytes) -> int:
        """
        Graduate a curve that reached the threshold but is still active.

        Only flips the terminal state and notifies; pool migration belongs to
        whoever consumes CurveCompleted.
        """
        with self._observe("complete", mint):
            with self._existing_curve_lock(mint):
                self._check_registry(registry)
                curve = self._load_curve(mint)

                if curve.completed:
                    raise AlreadyCompleted()
                if not curve_math.is_graduated(curve.virtual_base_reserve,
                                               self.config.graduation_threshold):
                    raise NotCompleted(
                        f"Base reserve {curve.virtual_base_reserve} below "
                        f"threshold {self.config.graduation_threshold}")

                updated = curve.copy()
                now = self.clock.now()
                updated.complete(now)
                self.store.set_curve(updated)
                self.events.emit(self._completion_event(updated))

        logger.info(f"Curve {mint.hex()} completed at {now}")
        return now

    @staticmethod
    def _completion_event(curve: BondingCurveState) -> CurveCompleted:
        return CurveCompleted(
            mint=curve.mint,
            creator=curve.creator,
            virtual_base_reserve=curve.virtual_base_reserve,
            virtual_asset_reserve=curve.virtual_asset_reserve,
            real_base_accrued=curve.real_base_accrued,
            total_sold=curve.total_sold,
            completed_at=curve.completed_at,
        )

    # ==========================================================================
    # READ API
    # ==========================================================================

    def get_curve(self, mint: bytes) -> BondingCurveState:
        return self._load_curve(mint)

    def list_curves(self) -> list[BondingCurveState]:
        return self.store.list_curves()

    def quote_buy(self, mint: bytes, base_in: int) -> TradeQuote:
        """Price a buy against the current reserves without executing it."""
        curve = self._load_curve(mint)
        if curve.completed:
            raise AlreadyCompleted()
        return curve_math.buy_quote(base_in, curve.virtual_base_reserve, curve.virtual_asset_reserve,
                                    self.get_registry().protocol_fee_bps)

    def quote_sell(self, mint: bytes, asset_in: int) -> TradeQuote:
        """Price a sell against the current reserves without executing it."""
        curve = self._load_curve(mint)
        if curve.completed:
            raise AlreadyCompleted()
        return curve_math.sell_quote(asset_in, curve.virtual_base_reserve, curve.virtual_asset_reserve,
                                     self.get_registry().protocol_fee_bps)

    def curve_stats(self, mint: bytes) -> dict:
        """Current price and progress for one curve."""
        return curve_summary(self._load_curve(mint), self.config)


def curve_summary(curve: BondingCurveState, config: CurveConfig) -> dict:
    """JSON-friendly view of a curve: reserves, price, market cap, progress."""
    return {
        'mint': curve.mint.hex(),
        'creator': curve.creator.hex(),
        'name': curve.name,
        'symbol': curve.symbol,
        'status': curve.status.value,
        'virtual_base_reserve': curve.virtual_base_reserve,
        'virtual_asset_reserve': curve.virtual_asset_reserve,
        'real_base_accrued': curve.real_base_accrued,
        'total_sold': curve.total_sold,
        'current_price': str(curve.current_price),
        'market_cap': str(curve_math.market_cap(curve.virtual_base_reserve,
                                                curve.virtual_asset_reserve,
                                                config.total_supply)),
        'graduation_progress_bps': curve_math.graduation_progress_bps(
            curve.virtual_base_reserve,
            config.initial_virtual_base_reserve,
            config.graduation_threshold),
        'created_at': curve.created_at,
        'completed_at': curve.completed_at,
    }
