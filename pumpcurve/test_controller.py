"""
Test Suite: Curve lifecycle
Initialize, create, buy, sell and complete through the controller, including
rejections, graduation and rollback of partially applied effects.
"""
import pytest

from pumpcurve import curve_math
from pumpcurve.access import SignatureAccessControl, initialize_payload
from pumpcurve.accounts import StorePaymentRail, StoreTokenLedger
from pumpcurve.conftest import MINT, START_TIME, TREASURY
from pumpcurve.config import Config
from pumpcurve.controller import CurveController, _Journal
from pumpcurve.crypto import generate_key_pair, serialize_public_key, sign
from pumpcurve.curve_state import CurveStatus
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
)
from pumpcurve.events import CurveCompleted, TokenBought, TokenCreated, TokenSold
from pumpcurve.registry_state import RegistryState

ONE_BASE = 1_000_000_000
GRADUATING_BUY = curve_math.TARGET_VIRTUAL_MC - curve_math.INITIAL_VIRTUAL_BASE_RESERVE


class FailingLedger(StoreTokenLedger):
    """Ledger whose mint always fails."""

    def mint(self, mint, amount, to_account):
        raise RuntimeError("ledger unavailable")


class FailingPayoutRail(StorePaymentRail):
    """Rail that refuses to pay out of the treasury."""

    def transfer(self, from_account, to_account, amount):
        if from_account == TREASURY:
            raise RuntimeError("treasury frozen")
        super().transfer(from_account, to_account, amount)


class TestInitialize:

    def test_initialize_once(self, controller, registry, authority):
        assert registry.authority == authority['address']
        assert registry.treasury == TREASURY
        assert registry.protocol_fee_bps == curve_math.PROTOCOL_FEE_BPS
        assert registry.creation_fee == curve_math.CREATION_FEE
        assert registry.total_tokens_created == 0

        signature = sign(authority['priv_key'], initialize_payload(TREASURY))
        with pytest.raises(AlreadyInitialized):
            controller.initialize(authority['pub_key_pem'], signature, TREASURY)

    def test_unknown_deployer(self, controller):
        priv_key, pub_key = generate_key_pair()
        signature = sign(priv_key, initialize_payload(TREASURY))
        with pytest.raises(Unauthorized):
            controller.initialize(serialize_public_key(pub_key), signature, TREASURY)
        with pytest.raises(NotInitialized):
            controller.get_registry()

    def test_bad_signature(self, controller, authority):
        signature = sign(authority['priv_key'], initialize_payload(b'other'))
        with pytest.raises(Unauthorized):
            controller.initialize(authority['pub_key_pem'], signature, TREASURY)

    def test_operations_require_registry(self, controller, creator):
        with pytest.raises(NotInitialized):
            controller.create_curve(RegistryState(), MINT, creator, curve_math.CREATION_FEE)

    def test_foreign_registry_handle(self, controller, registry, creator):
        forged = RegistryState({'authority': b'X' * 20, 'treasury': b'Y' * 20,
                                'protocol_fee_bps': 0, 'creation_fee': 0})
        with pytest.raises(Unauthorized):
            controller.create_curve(forged, MINT, creator, 0)


class TestCreateCurve:

    def test_create(self, controller, registry, curve, creator, rail, events):
        assert curve.mint == MINT
        assert curve.creator == creator
        assert curve.virtual_base_reserve == curve_math.INITIAL_VIRTUAL_BASE_RESERVE
        assert curve.virtual_asset_reserve == curve_math.INITIAL_VIRTUAL_ASSET_RESERVE
        assert curve.created_at == START_TIME
        assert curve.status == CurveStatus.ACTIVE

        assert rail.balance_of(TREASURY) == curve_math.CREATION_FEE
        assert rail.balance_of(creator) == 10**12 - curve_math.CREATION_FEE
        assert registry.total_tokens_created == 1
        assert controller.get_registry().total_tokens_created == 1

        created = events.of_type(TokenCreated)
        assert len(created) == 1
        assert created[0].symbol == "TEST"
        assert created[0].timestamp == START_TIME

    def test_duplicate_mint(self, controller, registry, curve, creator):
        with pytest.raises(CurveAlreadyExists):
            controller.create_curve(registry, MINT, creator, registry.creation_fee)
        assert controller.get_registry().total_tokens_created == 1

    def test_underpaid_fee(self, controller, registry, creator):
        with pytest.raises(InsufficientCreationFee):
            controller.create_curve(registry, MINT, creator, registry.creation_fee - 1)

    def test_creator_cannot_cover_fee(self, controller, registry):
        broke = b'Z' * 20
        with pytest.raises(InsufficientCreationFee):
            controller.create_curve(registry, MINT, broke, registry.creation_fee)
        with pytest.raises(CurveNotFound):
            controller.get_curve(MINT)

    @pytest.mark.parametrize("name, symbol, uri", [
        ("n" * 33, "S", ""),
        ("N", "s" * 11, ""),
        ("N", "S", "u" * 201),
    ])
    def test_metadata_limits(self, controller, registry, creator, name, symbol, uri):
        with pytest.raises(InvalidMetadata):
            controller.create_curve(registry, MINT, creator, registry.creation_fee,
                                    name=name, symbol=symbol, uri=uri)

    def test_metadata_at_limits(self, controller, registry, creator):
        curve = controller.create_curve(registry, MINT, creator, registry.creation_fee,
                                        name="n" * 32, symbol="s" * 10, uri="u" * 200)
        assert controller.get_curve(MINT).name == curve.name

    def test_list_curves(self, controller, registry, creator):
        for i in range(3):
            controller.create_curve(registry, bytes([i]) * 32, creator, registry.creation_fee)
        assert len(controller.list_curves()) == 3
        assert registry.total_tokens_created == 3


class TestBuy:

    def test_first_buy(self, controller, registry, curve, buyer, rail, ledger, events):
        result = controller.buy(registry, MINT, buyer, ONE_BASE, 0)

        assert result.asset_out == 25_452_741_935_485
        assert result.protocol_fee == 5_000_000
        assert result.reserves.virtual_base_reserve == 31_000_000_000
        assert result.reserves.virtual_asset_reserve == 793_000_000_000_000 - 25_452_741_935_485
        assert not result.completed

        stored = controller.get_curve(MINT)
        assert stored.real_base_accrued == ONE_BASE
        assert stored.total_sold == result.asset_out
        assert ledger.balance_of(MINT, buyer) == result.asset_out
        assert rail.balance_of(buyer) == 10**15 - ONE_BASE
        assert rail.balance_of(TREASURY) == curve_math.CREATION_FEE + ONE_BASE

        bought = events.of_type(TokenBought)
        assert len(bought) == 1
        assert bought[0].asset_out == result.asset_out
        assert bought[0].virtual_base_reserve == 31_000_000_000
        assert events.of_type(CurveCompleted) == []

    def test_quote_matches_execution(self, controller, registry, curve, buyer):
        quote = controller.quote_buy(MINT, 3 * ONE_BASE)
        result = controller.buy(registry, MINT, buyer, 3 * ONE_BASE, quote.amount_out)
        assert result.asset_out == quote.amount_out

    def test_minimum_boundary(self, controller, registry, curve, buyer):
        with pytest.raises(MinAmountNotMet):
            controller.buy(registry, MINT, buyer, curve_math.MIN_BASE_AMOUNT - 1, 0)
        result = controller.buy(registry, MINT, buyer, curve_math.MIN_BASE_AMOUNT, 0)
        assert result.asset_out > 0

    @pytest.mark.parametrize("amount", [0, -ONE_BASE])
    def test_non_positive_buy(self, controller, registry, curve, buyer, amount):
        with pytest.raises(MinAmountNotMet):
            controller.buy(registry, MINT, buyer, amount, 0)

    def test_slippage(self, controller, registry, curve, buyer, rail):
        quoted = controller.quote_buy(MINT, ONE_BASE).amount_out
        with pytest.raises(SlippageExceeded):
            controller.buy(registry, MINT, buyer, ONE_BASE, quoted + 1)
        assert controller.get_curve(MINT).total_sold == 0
        assert rail.balance_of(buyer) == 10**15

    def test_buyer_cannot_pay(self, controller, registry, curve, accounts):
        poor = b'P' * 20
        accounts.deposit(poor, ONE_BASE - 1)
        with pytest.raises(InsufficientFunds):
            controller.buy(registry, MINT, poor, ONE_BASE, 0)

    def test_unknown_mint(self, controller, registry, buyer):
        with pytest.raises(CurveNotFound):
            controller.buy(registry, b'?' * 32, buyer, ONE_BASE, 0)

    def test_price_increases(self, controller, registry, curve, buyer):
        first = controller.buy(registry, MINT, buyer, ONE_BASE, 0).asset_out
        second = controller.buy(registry, MINT, buyer, ONE_BASE, 0).asset_out
        assert second < first

    def test_graduation_boundary(self, controller, registry, curve, buyer, events):
        result = controller.buy(registry, MINT, buyer, GRADUATING_BUY - 1, 0)
        assert not result.completed
        assert controller.get_curve(MINT).status == CurveStatus.ACTIVE

        result = controller.buy(registry, MINT, buyer, 1_000_000, 0)
        assert result.completed
        stored = controller.get_curve(MINT)
        assert stored.status == CurveStatus.COMPLETED
        assert stored.completed_at == START_TIME

        completed = events.of_type(CurveCompleted)
        assert len(completed) == 1
        assert completed[0].virtual_base_reserve == stored.virtual_base_reserve
        assert completed[0].total_sold == stored.total_sold

    def test_buy_exactly_to_threshold(self, controller, registry, curve, buyer):
        result = controller.buy(registry, MINT, buyer, GRADUATING_BUY, 0)
        assert result.completed
        assert result.reserves.virtual_base_reserve == curve_math.TARGET_VIRTUAL_MC

    def test_no_trades_after_graduation(self, controller, registry, curve, buyer):
        result = controller.buy(registry, MINT, buyer, GRADUATING_BUY, 0)
        with pytest.raises(AlreadyCompleted):
            controller.buy(registry, MINT, buyer, ONE_BASE, 0)
        with pytest.raises(AlreadyCompleted):
            controller.sell(registry, MINT, buyer, result.asset_out, 0)
        with pytest.raises(AlreadyCompleted):
            controller.quote_buy(MINT, ONE_BASE)

    def test_ledger_failure_rolls_back_payment(self, store, accounts, rail, clock, authority,
                                               events, creator, buyer):
        access = SignatureAccessControl(allowed_addresses=[authority['address']])
        controller = CurveController(store, FailingLedger(accounts), rail, access,
                                     clock=clock, events=events)
        registry = controller.initialize(
            authority['pub_key_pem'], sign(authority['priv_key'], initialize_payload(TREASURY)), TREASURY)
        controller.create_curve(registry, MINT, creator, registry.creation_fee)
        before = controller.get_curve(MINT).to_dict()

        with pytest.raises(RuntimeError):
            controller.buy(registry, MINT, buyer, ONE_BASE, 0)

        assert controller.get_curve(MINT).to_dict() == before
        assert rail.balance_of(buyer) == 10**15
        assert rail.balance_of(TREASURY) == registry.creation_fee
        assert events.of_type(TokenBought) == []

    def test_failed_rollback_is_reported(self, store, accounts, clock, authority, events, creator, buyer):
        access = SignatureAccessControl(allowed_addresses=[authority['address']])
        rail = FailingPayoutRail(accounts)
        controller = CurveController(store, FailingLedger(accounts), rail, access,
                                     clock=clock, events=events)
        registry = controller.initialize(
            authority['pub_key_pem'], sign(authority['priv_key'], initialize_payload(TREASURY)), TREASURY)
        controller.create_curve(registry, MINT, creator, registry.creation_fee)
        before = controller.get_curve(MINT).to_dict()

        with pytest.raises(RollbackFailed) as excinfo:
            controller.buy(registry, MINT, buyer, ONE_BASE, 0)

        assert excinfo.value.operation == "buy"
        assert [description for description, _ in excinfo.value.failures] == ["payment"]
        assert str(excinfo.value.__cause__) == "ledger unavailable"
        # the payment stays in the treasury but the curve record is untouched
        assert rail.balance_of(TREASURY) == registry.creation_fee + ONE_BASE
        assert controller.get_curve(MINT).to_dict() == before
        assert events.of_type(TokenBought) == []


class TestSell:

    def test_round_trip_never_profits(self, controller, registry, curve, buyer, rail, ledger, events):
        bought = controller.buy(registry, MINT, buyer, ONE_BASE, 0)
        result = controller.sell(registry, MINT, buyer, bought.asset_out, 0)

        assert 0 < result.base_out <= ONE_BASE
        assert ledger.balance_of(MINT, buyer) == 0
        assert rail.balance_of(buyer) == 10**15 - ONE_BASE + result.base_out

        stored = controller.get_curve(MINT)
        assert stored.total_sold == 0
        assert stored.virtual_asset_reserve == curve_math.INITIAL_VIRTUAL_ASSET_RESERVE
        assert stored.real_base_accrued == ONE_BASE - result.base_out
        assert stored.status == CurveStatus.ACTIVE

        sold = events.of_type(TokenSold)
        assert len(sold) == 1
        assert sold[0].base_out == result.base_out

    def test_sell_quote_matches_execution(self, controller, registry, curve, buyer):
        bought = controller.buy(registry, MINT, buyer, ONE_BASE, 0)
        quote = controller.quote_sell(MINT, bought.asset_out // 2)
        result = controller.sell(registry, MINT, buyer, bought.asset_out // 2, quote.amount_out)
        assert result.base_out == quote.amount_out

    @pytest.mark.parametrize("amount", [0, -1])
    def test_non_positive_sell(self, controller, registry, curve, buyer, amount):
        with pytest.raises(InvalidAmount):
            controller.sell(registry, MINT, buyer, amount, 0)

    def test_sell_more_than_sold(self, controller, registry, curve, buyer):
        bought = controller.buy(registry, MINT, buyer, ONE_BASE, 0)
        with pytest.raises(InvalidAmount):
            controller.sell(registry, MINT, buyer, bought.asset_out + 1, 0)

    def test_sell_more_than_held(self, controller, registry, curve, buyer, accounts):
        other = b'O' * 20
        accounts.deposit(other, 10 * ONE_BASE)
        controller.buy(registry, MINT, buyer, ONE_BASE, 0)
        held = controller.buy(registry, MINT, other, ONE_BASE, 0).asset_out
        with pytest.raises(InvalidAmount):
            controller.sell(registry, MINT, other, held + 1, 0)

    def test_sell_slippage(self, controller, registry, curve, buyer):
        bought = controller.buy(registry, MINT, buyer, ONE_BASE, 0)
        with pytest.raises(SlippageExceeded):
            controller.sell(registry, MINT, buyer, bought.asset_out, ONE_BASE)

    def test_payout_bounded_by_accrued(self, controller, registry, curve, buyer, store):
        """A curve whose accrued base was drained cannot pay sellers."""
        bought = controller.buy(registry, MINT, buyer, ONE_BASE, 0)
        drained = controller.get_curve(MINT)
        drained.real_base_accrued = 0
        store.set_curve(drained)
        with pytest.raises(InsufficientLiquidity):
            controller.sell(registry, MINT, buyer, bought.asset_out, 0)

    def test_payout_failure_restores_tokens(self, store, accounts, ledger, clock, authority,
                                            events, creator, buyer):
        access = SignatureAccessControl(allowed_addresses=[authority['address']])
        rail = FailingPayoutRail(accounts)
        controller = CurveController(store, ledger, rail, access, clock=clock, events=events)
        registry = controller.initialize(
            authority['pub_key_pem'], sign(authority['priv_key'], initialize_payload(TREASURY)), TREASURY)
        controller.create_curve(registry, MINT, creator, registry.creation_fee)
        bought = controller.buy(registry, MINT, buyer, ONE_BASE, 0)
        before = controller.get_curve(MINT).to_dict()

        with pytest.raises(RuntimeError):
            controller.sell(registry, MINT, buyer, bought.asset_out, 0)

        assert ledger.balance_of(MINT, buyer) == bought.asset_out
        assert controller.get_curve(MINT).to_dict() == before
        assert events.of_type(TokenSold) == []


class TestComplete:

    def test_not_graduated(self, controller, registry, curve):
        with pytest.raises(NotCompleted):
            controller.complete(registry, MINT)

    def test_complete_over_threshold(self, controller, registry, curve, store, clock, events):
        """A record over the threshold that was never flipped can be completed."""
        over = controller.get_curve(MINT)
        over.virtual_base_reserve = curve_math.TARGET_VIRTUAL_MC
        store.set_curve(over)
        clock.advance(60)

        completed_at = controller.complete(registry, MINT)

        assert completed_at == START_TIME + 60
        stored = controller.get_curve(MINT)
        assert stored.status == CurveStatus.COMPLETED
        assert stored.completed_at == completed_at
        assert len(events.of_type(CurveCompleted)) == 1

    def test_complete_is_not_repeatable(self, controller, registry, curve, buyer, clock):
        controller.buy(registry, MINT, buyer, GRADUATING_BUY, 0)
        first = controller.get_curve(MINT).completed_at
        clock.advance(10)
        for _ in range(3):
            with pytest.raises(AlreadyCompleted):
                controller.complete(registry, MINT)
        assert controller.get_curve(MINT).completed_at == first

    def test_unknown_mint(self, controller, registry):
        with pytest.raises(CurveNotFound):
            controller.complete(registry, b'?' * 32)


class TestReadApi:

    def test_curve_stats(self, controller, registry, curve, buyer):
        stats = controller.curve_stats(MINT)
        assert stats['status'] == 'active'
        assert stats['graduation_progress_bps'] == 0
        assert stats['mint'] == MINT.hex()

        controller.buy(registry, MINT, buyer, GRADUATING_BUY, 0)
        stats = controller.curve_stats(MINT)
        assert stats['status'] == 'completed'
        assert stats['graduation_progress_bps'] == 10_000


class TestJournal:

    def test_clean_rollback_reraises(self):
        undone = []
        with pytest.raises(ValueError):
            with _Journal("op") as journal:
                journal.record("first", lambda: undone.append("first"))
                journal.record("second", lambda: undone.append("second"))
                raise ValueError("boom")
        assert undone == ["second", "first"]

    def test_failed_undo_still_runs_the_rest(self):
        undone = []

        def broken():
            raise RuntimeError("cannot undo")

        with pytest.raises(RollbackFailed) as excinfo:
            with _Journal("op") as journal:
                journal.record("first", lambda: undone.append("first"))
                journal.record("second", broken)
                raise ValueError("boom")

        assert undone == ["first"]
        assert isinstance(excinfo.value.__cause__, ValueError)
        assert [(d, str(e)) for d, e in excinfo.value.failures] == [("second", "cannot undo")]

    def test_success_runs_no_undo(self):
        undone = []
        with _Journal("op") as journal:
            journal.record("first", lambda: undone.append("first"))
        assert undone == []


class TestLocking:

    def test_unknown_mints_allocate_no_locks(self, controller, registry, curve, buyer):
        for i in range(500):
            unknown = i.to_bytes(32, 'big')
            with pytest.raises(CurveNotFound):
                controller.buy(registry, unknown, buyer, ONE_BASE, 0)
            with pytest.raises(CurveNotFound):
                controller.sell(registry, unknown, buyer, 1, 0)
            with pytest.raises(CurveNotFound):
                controller.complete(registry, unknown)

        controller.buy(registry, MINT, buyer, ONE_BASE, 0)
        assert list(controller._curve_locks) == [MINT]

    def test_failed_create_allocates_no_lock(self, controller, registry, creator):
        with pytest.raises(InsufficientCreationFee):
            controller.create_curve(registry, b'N' * 32, creator, 0)
        assert controller._curve_locks == {}


class TestFromConfig:

    def test_wires_database_and_monitoring(self, tmp_path, authority, clock):
        config = Config.default()
        config.database.path = str(tmp_path / "db")
        config.monitoring.enabled = True
        config.monitoring.port = 0
        access = SignatureAccessControl(allowed_addresses=[authority['address']])

        controller = CurveController.from_config(config, access, clock=clock)
        try:
            assert controller.config == config.curve
            assert controller.monitor.thread.is_alive()
            controller.rail.accounts.deposit(b'C' * 20, 10**12)
            registry = controller.initialize(
                authority['pub_key_pem'], sign(authority['priv_key'], initialize_payload(TREASURY)),
                TREASURY)
            controller.create_curve(registry, MINT, b'C' * 20, registry.creation_fee)
            ops = controller.monitor.registry.get_sample_value(
                'curve_operations_total', {'kind': 'create', 'status': 'ok'})
            assert ops == 1.0
        finally:
            controller.close()
        assert controller.monitor.server is None

        # state persisted at the configured path
        plain = Config.default()
        plain.database.path = config.database.path
        reopened = CurveController.from_config(plain, access, clock=clock)
        try:
            assert reopened.monitor is None
            assert [c.mint for c in reopened.list_curves()] == [MINT]
        finally:
            reopened.close()

    def test_curve_settings_from_config(self, tmp_path, authority):
        config = Config.default()
        config.database.path = str(tmp_path / "db")
        config.curve.min_base_amount = 5
        access = SignatureAccessControl(allowed_addresses=[authority['address']])
        controller = CurveController.from_config(config, access)
        try:
            assert controller.config.min_base_amount == 5
            assert controller.monitor is None
        finally:
            controller.close()
