"""
DB-backed account balances behind the TokenLedger and PaymentRail interfaces.

Each account is stored under ACCOUNT:<address> as
    {'balances': {'base': int}, 'tokens': {<mint hex>: int}}
"""
import logging
import threading

import msgpack

from pumpcurve.curve_math import check_u64
from pumpcurve.db import DB
from pumpcurve.errors import InsufficientFunds, InvalidAmount
from pumpcurve.interfaces import PaymentRail, TokenLedger

logger = logging.getLogger(__name__)

ACCOUNT_PREFIX = b"ACCOUNT:"


class AccountStore:
    """
    Account records with serialized read-modify-write.

    One lock covers every account, so a transfer's debit and credit land in
    the same batch and concurrent callers never lose an update.
    """

    def __init__(self, db: DB):
        self.db = db
        self._lock = threading.RLock()

    @staticmethod
    def _key(address: bytes) -> bytes:
        return ACCOUNT_PREFIX + address

    def get_account(self, address: bytes) -> dict:
        raw = self.db.get(self._key(address))
        if raw is None:
            return {'balances': {'base': 0}, 'tokens': {}}
        return msgpack.unpackb(raw, raw=False)

    def _put_accounts(self, accounts: dict):
        with self.db.write_batch() as batch:
            for address, account in accounts.items():
                batch.put(self._key(address), msgpack.packb(account, use_bin_type=True))

    def base_balance(self, address: bytes) -> int:
        return self.get_account(address)['balances']['base']

    def token_balance(self, mint: bytes, address: bytes) -> int:
        return self.get_account(address)['tokens'].get(mint.hex(), 0)

    def deposit(self, address: bytes, amount: int):
        """Credit base currency from outside the system."""
        if amount <= 0:
            raise InvalidAmount()
        with self._lock:
            account = self.get_account(address)
            account['balances']['base'] = check_u64(account['balances']['base'] + amount, "balance")
            self._put_accounts({address: account})

    def move_base(self, from_address: bytes, to_address: bytes, amount: int):
        if amount < 0:
            raise InvalidAmount()
        with self._lock:
            sender = self.get_account(from_address)
            if sender['balances']['base'] < amount:
                raise InsufficientFunds(
                    f"Account {from_address.hex()} holds {sender['balances']['base']}, needs {amount}"
                )
            if from_address == to_address:
                return
            recipient = self.get_account(to_address)
            sender['balances']['base'] -= amount
            recipient['balances']['base'] = check_u64(recipient['balances']['base'] + amount, "balance")
            self._put_accounts({from_address: sender, to_address: recipient})

    def adjust_tokens(self, mint: bytes, address: bytes, delta: int):
        with self._lock:
            account = self.get_account(address)
            key = mint.hex()
            new_balance = account['tokens'].get(key, 0) + delta
            if new_balance < 0:
                raise InvalidAmount(
                    f"Account {address.hex()} holds {account['tokens'].get(key, 0)} tokens, needs {-delta}"
                )
            account['tokens'][key] = check_u64(new_balance, "token balance")
            self._put_accounts({address: account})


class StoreTokenLedger(TokenLedger):
    def __init__(self, accounts: AccountStore):
        self.accounts = accounts

    def mint(self, mint: bytes, amount: int, to_account: bytes) -> None:
        if amount <= 0:
            raise InvalidAmount()
        self.accounts.adjust_tokens(mint, to_account, amount)

    def burn(self, mint: bytes, amount: int, from_account: bytes) -> None:
        if amount <= 0:
            raise InvalidAmount()
        self.accounts.adjust_tokens(mint, from_account, -amount)

    def balance_of(self, mint: bytes, account: bytes) -> int:
        return self.accounts.token_balance(mint, account)


class StorePaymentRail(PaymentRail):
    def __init__(self, accounts: AccountStore):
        self.accounts = accounts

    def transfer(self, from_account: bytes, to_account: bytes, amount: int) -> None:
        self.accounts.move_base(from_account, to_account, amount)
        logger.debug(f"Transfer {amount}: {from_account.hex()[:8]} -> {to_account.hex()[:8]}")

    def balance_of(self, account: bytes) -> int:
        return self.accounts.base_balance(account)
