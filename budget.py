from typing import Iterable, Protocol, Sequence, TypeVar


class HasAmount(Protocol):
    amount_cents: int


T = TypeVar("T", bound=HasAmount)


def take_within_budget(transactions: Iterable[T], budget_cents: int) -> list[T]:
    """Return the longest prefix whose cumulative amount stays within the budget.

    The walk uses each transaction's magnitude regardless of credit/debit, and
    stops at the first entry that would push the running total over the
    budget; nothing after it is considered.
    """
    selected: list[T] = []
    running_total = 0
    for txn in transactions:
        if running_total + txn.amount_cents > budget_cents:
            break
        running_total += txn.amount_cents
        selected.append(txn)
    return selected


def total_amount(transactions: Sequence[HasAmount]) -> int:
    return sum(txn.amount_cents for txn in transactions)
