from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, selectinload

import ledger
from budget import take_within_budget
from database import unit_of_work
from errors import BulkLoadFailed, InvalidArgument, NotFound, StorageFailure
from models import MAX_AMOUNT_CENTS, Account, Transaction, TransactionType, User
from schemas import AccountIn, TransactionIn, TransactionUpdateIn, UserIn

logger = logging.getLogger(__name__)


DEFAULT_USERS = [
    ("Valentin Montagne", "contact@vm-it-consulting.com"),
    ("Amélie Dal", "amelie.dal@gmail.com"),
]
DEFAULT_ACCOUNT_NAME = "Compte courant"
DEFAULT_ACCOUNT_OPENING_CENTS = 200_000
# Fake amounts are whole units, stored in cents.
FAKE_AMOUNT_MAX_UNITS = 999


def _coerce_type(value: object) -> TransactionType:
    try:
        return TransactionType(value)
    except ValueError as exc:
        raise InvalidArgument(f"Unknown transaction type: {value!r}") from exc


def _check_amount(amount_cents: int) -> None:
    if amount_cents is None or amount_cents < 0:
        raise InvalidArgument("Amount must be zero or positive")
    if amount_cents > MAX_AMOUNT_CENTS:
        raise InvalidArgument(f"Amount must not exceed {MAX_AMOUNT_CENTS} cents")


def _check_opening(initial_amount_cents: int) -> None:
    if abs(initial_amount_cents) > MAX_AMOUNT_CENTS:
        raise InvalidArgument(
            f"Opening amount must stay within {MAX_AMOUNT_CENTS} cents either way"
        )


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, data: UserIn) -> User:
        """Stage a user in the current session transaction without committing."""
        user = User(name=data.name.strip(), email=data.email.strip(), account_count=0)
        self.session.add(user)
        self.session.flush()
        return user

    def create(self, data: UserIn) -> User:
        with unit_of_work(self.session, "create_user"):
            user = self.add(data)
        logger.info(f"user_created: user_id={user.id}")
        return user

    def get(self, user_id: int) -> User:
        stmt = (
            select(User).options(selectinload(User.accounts)).where(User.id == user_id)
        )
        user = self.session.scalar(stmt)
        if not user:
            raise NotFound(f"User {user_id} not found")
        return user

    def list_all(self) -> list[User]:
        return list(self.session.scalars(select(User).order_by(User.id)).all())


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def add(self, data: AccountIn) -> Account:
        """Stage an account and bump its owner's count without committing."""
        _check_opening(data.initial_amount_cents)
        user = self.session.scalar(
            select(User).where(User.id == data.user_id).with_for_update()
        )
        if not user:
            raise NotFound(f"User {data.user_id} not found")
        account = Account(
            name=data.name.strip(),
            opening_balance_cents=data.initial_amount_cents,
            balance_cents=data.initial_amount_cents,
            transaction_count=0,
            user_id=user.id,
        )
        self.session.add(account)
        self.session.flush()
        self.session.execute(
            update(User)
            .where(User.id == user.id)
            .values(account_count=User.account_count + 1)
        )
        return account

    def create(self, data: AccountIn) -> Account:
        with unit_of_work(self.session, "create_account"):
            account = self.add(data)
        logger.info(
            f"account_created: account_id={account.id} user_id={account.user_id} "
            f"opening={account.opening_balance_cents}"
        )
        return account

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise NotFound(f"Account {account_id} not found")
        return account

    def list_all(self) -> list[Account]:
        return list(self.session.scalars(select(Account).order_by(Account.id)).all())

    def list_for_user(self, user_id: int) -> list[Account]:
        if not self.session.get(User, user_id):
            raise NotFound(f"User {user_id} not found")
        stmt = select(Account).where(Account.user_id == user_id).order_by(Account.id)
        return list(self.session.scalars(stmt).all())


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, data: TransactionIn) -> Transaction:
        _check_amount(data.amount_cents)
        txn_type = _coerce_type(data.type)
        with unit_of_work(self.session, "create_transaction"):
            ledger.lock_account(self.session, data.account_id)
            txn = Transaction(
                name=data.name,
                amount_cents=data.amount_cents,
                type=txn_type,
                account_id=data.account_id,
            )
            self.session.add(txn)
            self.session.flush()
            ledger.apply_insert(self.session, txn)
        logger.info(
            f"transaction_created: transaction_id={txn.id} account_id={txn.account_id} "
            f"type={txn.type.value} amount={txn.amount_cents}"
        )
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise NotFound(f"Transaction {transaction_id} not found")
        return txn

    def list_for_account(self, account_id: int) -> list[Transaction]:
        if not self.session.get(Account, account_id):
            raise NotFound(f"Account {account_id} not found")
        stmt = (
            select(Transaction)
            .where(Transaction.account_id == account_id)
            .order_by(Transaction.created_at.asc(), Transaction.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def list_all(self, limit: int = 100, offset: int = 0) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .order_by(Transaction.created_at.asc(), Transaction.id.asc())
            .offset(offset)
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def update(self, transaction_id: int, data: TransactionUpdateIn) -> Transaction:
        new_type = _coerce_type(data.type) if data.type is not None else None
        if data.amount_cents is not None:
            _check_amount(data.amount_cents)
        with unit_of_work(self.session, "update_transaction"):
            txn = self.get(transaction_id)
            ledger.lock_account(self.session, txn.account_id)
            old_amount = txn.amount_cents
            old_type = txn.type

            if data.name is not None:
                txn.name = data.name
            if data.amount_cents is not None:
                txn.amount_cents = data.amount_cents
            if new_type is not None:
                txn.type = new_type
            self.session.flush()

            if (txn.amount_cents, txn.type) != (old_amount, old_type):
                ledger.apply_amend(
                    self.session,
                    txn.account_id,
                    old_amount,
                    old_type,
                    txn.amount_cents,
                    txn.type,
                )
        logger.info(
            f"transaction_amended: transaction_id={txn.id} "
            f"old={old_type.value}:{old_amount} new={txn.type.value}:{txn.amount_cents}"
        )
        return txn

    def delete(self, transaction_id: int) -> None:
        with unit_of_work(self.session, "delete_transaction"):
            txn = self.get(transaction_id)
            account_id = txn.account_id
            ledger.lock_account(self.session, account_id)
            ledger.apply_remove(self.session, txn)
            self.session.delete(txn)
            self.session.flush()
        logger.info(
            f"transaction_removed: transaction_id={transaction_id} "
            f"account_id={account_id}"
        )

    def within_budget(self, account_id: int, budget_cents: int) -> list[Transaction]:
        # The full ordered list is materialized before the walk starts.
        transactions = self.list_for_account(account_id)
        return take_within_budget(transactions, budget_cents)


@dataclass(frozen=True)
class BulkLoadResult:
    account_id: int
    requested: int
    inserted: int
    balance_delta_cents: int


class FixtureService:
    def __init__(self, session: Session, rng: Optional[random.Random] = None) -> None:
        self.session = session
        self.rng = rng or random.Random()

    def generate_transactions(self, account_id: int, count: int) -> BulkLoadResult:
        """Insert ``count`` random transactions on one account as one atomic batch.

        Either every row and its balance effect is committed, or nothing is.
        """
        if count <= 0:
            raise InvalidArgument("Transaction count must be positive")

        staged: list[Transaction] = []
        try:
            with unit_of_work(self.session, "generate_transactions"):
                ledger.lock_account(self.session, account_id)
                for i in range(count):
                    amount_units = self.rng.randint(0, FAKE_AMOUNT_MAX_UNITS)
                    staged.append(
                        Transaction(
                            name=f"Fake Transaction {i + 1}",
                            amount_cents=amount_units * 100,
                            type=self.rng.choice(
                                [TransactionType.credit, TransactionType.debit]
                            ),
                            account_id=account_id,
                        )
                    )
                self.session.add_all(staged)
                self.session.flush()
                delta = ledger.apply_batch(self.session, account_id, staged)
        except StorageFailure as exc:
            raise BulkLoadFailed(
                f"Batch of {count} transactions rolled back, 0 inserted: {exc}",
                requested=count,
                inserted=0,
            ) from exc

        logger.info(
            f"fixtures_generated: account_id={account_id} count={count} delta={delta}"
        )
        return BulkLoadResult(
            account_id=account_id,
            requested=count,
            inserted=count,
            balance_delta_cents=delta,
        )

    def seed_defaults(self) -> Optional[Account]:
        """Create the default users and their first account on an empty store."""
        existing = self.session.execute(select(func.count(User.id))).scalar_one()
        if existing:
            logger.info(f"seed_defaults: skipped users_present={existing}")
            return None

        users = UserService(self.session)
        with unit_of_work(self.session, "seed_defaults"):
            created = [
                users.add(UserIn(name=name, email=email))
                for name, email in DEFAULT_USERS
            ]
            account = AccountService(self.session).add(
                AccountIn(
                    name=DEFAULT_ACCOUNT_NAME,
                    initial_amount_cents=DEFAULT_ACCOUNT_OPENING_CENTS,
                    user_id=created[0].id,
                )
            )
        logger.info(f"seed_defaults: users={len(created)} account_id={account.id}")
        return account


@dataclass(frozen=True)
class AccountAudit:
    account_id: int
    expected_balance_cents: int
    actual_balance_cents: int
    expected_transaction_count: int
    actual_transaction_count: int

    @property
    def is_consistent(self) -> bool:
        return (
            self.expected_balance_cents == self.actual_balance_cents
            and self.expected_transaction_count == self.actual_transaction_count
        )


@dataclass(frozen=True)
class UserAudit:
    user_id: int
    expected_account_count: int
    actual_account_count: int

    @property
    def is_consistent(self) -> bool:
        return self.expected_account_count == self.actual_account_count


class LedgerAuditService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def check_account(self, account_id: int) -> AccountAudit:
        account = AccountService(self.session).get(account_id)
        self.session.refresh(account)
        expected_balance, expected_count = ledger.expected_state(
            self.session, account_id
        )
        audit = AccountAudit(
            account_id=account_id,
            expected_balance_cents=expected_balance,
            actual_balance_cents=account.balance_cents,
            expected_transaction_count=expected_count,
            actual_transaction_count=account.transaction_count,
        )
        if not audit.is_consistent:
            logger.warning(f"ledger_drift: {audit}")
        return audit

    def check_user(self, user_id: int) -> UserAudit:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFound(f"User {user_id} not found")
        self.session.refresh(user)
        expected = self.session.execute(
            select(func.count(Account.id)).where(Account.user_id == user_id)
        ).scalar_one()
        return UserAudit(
            user_id=user_id,
            expected_account_count=int(expected or 0),
            actual_account_count=user.account_count,
        )

    def repair_account(self, account_id: int) -> AccountAudit:
        with unit_of_work(self.session, "repair_account"):
            ledger.rebuild_account(self.session, account_id)
        return self.check_account(account_id)
