import random

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

import ledger
from errors import InvalidArgument, NotFound, StorageFailure
from models import (
    MAX_AMOUNT_CENTS,
    MAX_BALANCE_CENTS,
    Account,
    Transaction,
    TransactionType,
)
from schemas import AccountIn, TransactionIn, TransactionUpdateIn, UserIn
from services import (
    AccountService,
    LedgerAuditService,
    TransactionService,
    UserService,
)


def make_account(session, opening_cents: int = 0):
    user = UserService(session).create(UserIn(name="Ada", email="ada@example.com"))
    return AccountService(session).create(
        AccountIn(name="Checking", initial_amount_cents=opening_cents, user_id=user.id)
    )


def add_txn(session, account_id: int, amount: int, txn_type: TransactionType):
    return TransactionService(session).create(
        TransactionIn(
            name="Payment", amount_cents=amount, type=txn_type, account_id=account_id
        )
    )


def test_signed_amount() -> None:
    assert ledger.signed_amount(500, TransactionType.credit) == 500
    assert ledger.signed_amount(500, TransactionType.debit) == -500
    assert ledger.signed_amount(0, TransactionType.debit) == 0


def test_opening_balance_then_debit(session) -> None:
    account = make_account(session, opening_cents=2000)
    assert account.balance_cents == 2000
    assert account.transaction_count == 0

    add_txn(session, account.id, 500, TransactionType.debit)

    account = AccountService(session).get(account.id)
    assert account.balance_cents == 1500
    assert account.transaction_count == 1


def test_amend_debit_to_credit_reverses_then_applies(session) -> None:
    account = make_account(session, opening_cents=1050)
    txn = add_txn(session, account.id, 50, TransactionType.debit)
    assert AccountService(session).get(account.id).balance_cents == 1000

    TransactionService(session).update(
        txn.id, TransactionUpdateIn(type=TransactionType.credit)
    )

    account = AccountService(session).get(account.id)
    assert account.balance_cents == 1100
    assert account.transaction_count == 1


def test_amend_amount_and_type_together(session) -> None:
    account = make_account(session, opening_cents=0)
    txn = add_txn(session, account.id, 300, TransactionType.credit)

    TransactionService(session).update(
        txn.id, TransactionUpdateIn(amount_cents=120, type=TransactionType.debit)
    )

    assert AccountService(session).get(account.id).balance_cents == -120


def test_rename_does_not_touch_balance(session) -> None:
    account = make_account(session, opening_cents=100)
    txn = add_txn(session, account.id, 40, TransactionType.credit)

    updated = TransactionService(session).update(
        txn.id, TransactionUpdateIn(name="Groceries")
    )

    assert updated.name == "Groceries"
    account = AccountService(session).get(account.id)
    assert account.balance_cents == 140
    assert account.transaction_count == 1


def test_remove_credit(session) -> None:
    account = make_account(session, opening_cents=0)
    add_txn(session, account.id, 400, TransactionType.credit)
    add_txn(session, account.id, 100, TransactionType.debit)
    doomed = add_txn(session, account.id, 300, TransactionType.credit)
    add_txn(session, account.id, 700, TransactionType.credit)
    account = AccountService(session).get(account.id)
    assert account.balance_cents == 1300
    assert account.transaction_count == 4

    TransactionService(session).delete(doomed.id)

    account = AccountService(session).get(account.id)
    assert account.balance_cents == 1000
    assert account.transaction_count == 3
    with pytest.raises(NotFound):
        TransactionService(session).get(doomed.id)


def test_each_mutation_applies_exactly_once(session) -> None:
    account = make_account(session, opening_cents=0)
    service = TransactionService(session)

    txn = add_txn(session, account.id, 250, TransactionType.credit)
    assert AccountService(session).get(account.id).balance_cents == 250

    service.update(txn.id, TransactionUpdateIn(amount_cents=300))
    assert AccountService(session).get(account.id).balance_cents == 300

    service.delete(txn.id)
    account = AccountService(session).get(account.id)
    assert account.balance_cents == 0
    assert account.transaction_count == 0


def test_invariants_hold_after_random_sequence(session) -> None:
    rng = random.Random(7)
    account = make_account(session, opening_cents=5_000)
    service = TransactionService(session)
    live: list[int] = []

    for _ in range(120):
        action = rng.choice(["insert", "insert", "amend", "remove"])
        if action == "insert" or not live:
            txn = add_txn(
                session,
                account.id,
                rng.randint(0, 900),
                rng.choice(list(TransactionType)),
            )
            live.append(txn.id)
        elif action == "amend":
            service.update(
                rng.choice(live),
                TransactionUpdateIn(
                    amount_cents=rng.randint(0, 900),
                    type=rng.choice(list(TransactionType)),
                ),
            )
        else:
            victim = live.pop(rng.randrange(len(live)))
            service.delete(victim)

    audit = LedgerAuditService(session).check_account(account.id)
    assert audit.is_consistent
    assert audit.actual_transaction_count == len(live)

    rows = session.scalars(
        select(Transaction).where(Transaction.account_id == account.id)
    ).all()
    expected = 5_000 + sum(
        ledger.signed_amount(t.amount_cents, t.type) for t in rows
    )
    assert AccountService(session).get(account.id).balance_cents == expected


def test_negative_amount_is_rejected(session) -> None:
    account = make_account(session)
    data = TransactionIn.model_construct(
        name="Bad", amount_cents=-1, type=TransactionType.credit, account_id=account.id
    )
    with pytest.raises(InvalidArgument):
        TransactionService(session).create(data)


def test_unknown_type_is_rejected(session) -> None:
    account = make_account(session)
    data = TransactionIn.model_construct(
        name="Bad", amount_cents=10, type="refund", account_id=account.id
    )
    with pytest.raises(InvalidArgument):
        TransactionService(session).create(data)


def test_transaction_on_missing_account(session) -> None:
    with pytest.raises(NotFound):
        add_txn(session, 999, 10, TransactionType.credit)
    assert session.scalar(select(func.count(Transaction.id))) == 0


def test_failed_balance_update_leaves_no_log_entry(session, monkeypatch) -> None:
    account = make_account(session, opening_cents=100)

    def broken_insert(_session, _txn):
        raise OperationalError("UPDATE accounts", {}, Exception("disk I/O error"))

    monkeypatch.setattr(ledger, "apply_insert", broken_insert)
    with pytest.raises(StorageFailure):
        add_txn(session, account.id, 40, TransactionType.credit)

    assert session.scalar(select(func.count(Transaction.id))) == 0
    account = AccountService(session).get(account.id)
    assert account.balance_cents == 100
    assert account.transaction_count == 0


def test_audit_detects_and_repairs_drift(session) -> None:
    account = make_account(session, opening_cents=1_000)
    add_txn(session, account.id, 250, TransactionType.debit)

    session.execute(
        update(Account).where(Account.id == account.id).values(balance_cents=0)
    )
    session.commit()

    audits = LedgerAuditService(session)
    drift = audits.check_account(account.id)
    assert not drift.is_consistent
    assert drift.expected_balance_cents == 750

    repaired = audits.repair_account(account.id)
    assert repaired.is_consistent
    assert repaired.actual_balance_cents == 750


def test_oversized_amount_is_rejected_and_session_stays_usable(session) -> None:
    account = make_account(session, opening_cents=100)
    data = TransactionIn.model_construct(
        name="Huge",
        amount_cents=10**19,
        type=TransactionType.credit,
        account_id=account.id,
    )
    with pytest.raises(InvalidArgument):
        TransactionService(session).create(data)

    add_txn(session, account.id, MAX_AMOUNT_CENTS, TransactionType.credit)
    account = AccountService(session).get(account.id)
    assert account.balance_cents == 100 + MAX_AMOUNT_CENTS
    assert account.transaction_count == 1


def test_oversized_opening_amount_is_rejected(session) -> None:
    user = UserService(session).create(UserIn(name="Cy", email="cy@example.com"))
    data = AccountIn.model_construct(
        name="Vault", initial_amount_cents=-(10**19), user_id=user.id
    )
    with pytest.raises(InvalidArgument):
        AccountService(session).create(data)

    assert session.scalar(select(func.count(Account.id))) == 0
    account = AccountService(session).create(
        AccountIn(name="Vault", initial_amount_cents=5, user_id=user.id)
    )
    assert account.balance_cents == 5


def test_balance_cannot_leave_the_integer_range(session) -> None:
    account = make_account(session)
    session.execute(
        update(Account)
        .where(Account.id == account.id)
        .values(balance_cents=MAX_BALANCE_CENTS - 10)
    )
    session.commit()

    with pytest.raises(InvalidArgument):
        add_txn(session, account.id, 100, TransactionType.credit)

    assert session.scalar(select(func.count(Transaction.id))) == 0
    account = AccountService(session).get(account.id)
    assert account.balance_cents == MAX_BALANCE_CENTS - 10
    assert account.transaction_count == 0

    add_txn(session, account.id, 100, TransactionType.debit)
    assert AccountService(session).get(account.id).balance_cents == (
        MAX_BALANCE_CENTS - 110
    )
