"""Balance maintenance for accounts.

Every change to the ``transactions`` table has to be mirrored on the owning
account's ``balance_cents`` and ``transaction_count``. The functions below are
the only code allowed to touch those two columns; ``TransactionService`` and
``FixtureService`` call them exactly once per mutation, inside the same session
transaction as the log write. No database trigger updates these columns.
"""

from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from errors import InvalidArgument, NotFound
from models import MAX_BALANCE_CENTS, Account, Transaction, TransactionType

logger = logging.getLogger(__name__)


def signed_amount(amount_cents: int, txn_type: TransactionType) -> int:
    if txn_type == TransactionType.credit:
        return amount_cents
    if txn_type == TransactionType.debit:
        return -amount_cents
    raise ValueError(f"Unknown transaction type: {txn_type!r}")


def lock_account(session: Session, account_id: int) -> Account:
    """Load the account row, taking a row lock on backends that support it."""
    account = session.scalar(
        select(Account)
        .where(Account.id == account_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if account is None:
        raise NotFound(f"Account {account_id} not found")
    return account


def _shift(
    session: Session, account_id: int, balance_delta: int, count_delta: int
) -> None:
    account = session.get(Account, account_id)
    if account is None:
        raise NotFound(f"Account {account_id} not found")
    if abs(account.balance_cents + balance_delta) > MAX_BALANCE_CENTS:
        raise InvalidArgument(
            f"Balance of account {account_id} would leave the storable range"
        )
    result = session.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(
            balance_cents=Account.balance_cents + balance_delta,
            transaction_count=Account.transaction_count + count_delta,
        )
    )
    if result.rowcount != 1:
        raise NotFound(f"Account {account_id} not found")
    logger.debug(
        f"ledger_shift: account_id={account_id} "
        f"balance_delta={balance_delta} count_delta={count_delta}"
    )


def apply_insert(session: Session, txn: Transaction) -> None:
    _shift(session, txn.account_id, signed_amount(txn.amount_cents, txn.type), 1)


def apply_amend(
    session: Session,
    account_id: int,
    old_amount_cents: int,
    old_type: TransactionType,
    new_amount_cents: int,
    new_type: TransactionType,
) -> None:
    # Reverse the old effect and apply the new one as a single delta.
    delta = -signed_amount(old_amount_cents, old_type) + signed_amount(
        new_amount_cents, new_type
    )
    _shift(session, account_id, delta, 0)


def apply_remove(session: Session, txn: Transaction) -> None:
    _shift(session, txn.account_id, -signed_amount(txn.amount_cents, txn.type), -1)


def apply_batch(session: Session, account_id: int, txns: Iterable[Transaction]) -> int:
    """Apply many inserts on one account with a single update; returns the delta."""
    delta = 0
    count = 0
    for txn in txns:
        if txn.account_id != account_id:
            raise ValueError(
                f"Transaction for account {txn.account_id} in batch for {account_id}"
            )
        delta += signed_amount(txn.amount_cents, txn.type)
        count += 1
    if count:
        _shift(session, account_id, delta, count)
    return delta


def expected_state(session: Session, account_id: int) -> tuple[int, int]:
    """Recompute (balance_cents, transaction_count) for an account from its log."""
    account = session.get(Account, account_id)
    if account is None:
        raise NotFound(f"Account {account_id} not found")
    rows = session.execute(
        select(Transaction.amount_cents, Transaction.type).where(
            Transaction.account_id == account_id
        )
    ).all()
    balance = account.opening_balance_cents + sum(
        signed_amount(amount, txn_type) for amount, txn_type in rows
    )
    return balance, len(rows)


def rebuild_account(session: Session, account_id: int) -> tuple[int, int]:
    """Overwrite an account's aggregate with the values derived from its log."""
    lock_account(session, account_id)
    balance, count = expected_state(session, account_id)
    session.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(balance_cents=balance, transaction_count=count)
    )
    logger.info(
        f"ledger_rebuild: account_id={account_id} balance={balance} count={count}"
    )
    return balance, count
