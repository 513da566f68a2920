from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from models import Transaction
from money import format_currency


NO_PERIOD_LABEL = "-"


@dataclass(frozen=True)
class WindowCut:
    # index of the last transaction at which the running balance was >= 0
    cut_index: Optional[int]
    initial_carry_cents: int
    current_balance_cents: int


@dataclass(frozen=True)
class ReconciliationRow:
    transaction: Transaction
    adjusted_cents: int
    consumed_cents: int
    note: Optional[str] = None


@dataclass(frozen=True)
class CarryAllocation:
    rows: list[ReconciliationRow]
    total_outstanding_cents: int
    remaining_carry_cents: int
    consumed_cents: int
    period_label: str


def find_window_cut(history: Sequence[Transaction]) -> WindowCut:
    """Locate the most recent point where the account was square.

    ``history`` must be ordered oldest first with ties broken by id.
    """
    balance = 0
    cut_index: Optional[int] = None
    carry = 0
    for idx, txn in enumerate(history):
        balance += txn.amount_cents
        if balance >= 0:
            cut_index = idx
            carry = balance
    return WindowCut(
        cut_index=cut_index, initial_carry_cents=carry, current_balance_cents=balance
    )


def resolve_window(history: Sequence[Transaction]) -> tuple[list[Transaction], WindowCut]:
    cut = find_window_cut(history)
    start = 0 if cut.cut_index is None else cut.cut_index + 1
    return list(history[start:]), cut


def partial_note(consumed_cents: int, original_cents: int) -> str:
    return (
        f"partial: {format_currency(consumed_cents)} "
        f"of {format_currency(abs(original_cents))}"
    )


def period_label(rows: Sequence[ReconciliationRow]) -> str:
    if not rows:
        return NO_PERIOD_LABEL
    first = rows[0].transaction.date
    last = rows[-1].transaction.date
    return f"{first.strftime('%d.%m.%Y')} - {last.strftime('%d.%m.%Y')}"


def allocate_carry(
    window: Sequence[Transaction], initial_carry_cents: int
) -> CarryAllocation:
    """Offset outstanding expenses in ``window`` (oldest first) with carry.

    Credits replenish the carry and produce no row. Each debit consumes as
    much carry as it can; fully covered debits are dropped, partially covered
    ones keep the uncovered remainder and a note.
    """
    if initial_carry_cents < 0:
        raise ValueError("Initial carry must not be negative")

    carry = initial_carry_cents
    consumed_total = 0
    rows: list[ReconciliationRow] = []
    for txn in window:
        amount = txn.amount_cents
        if amount > 0:
            carry += amount
            continue
        if amount == 0:
            continue

        need = -amount
        consumed = min(carry, need)
        adjusted = amount + consumed
        carry -= consumed
        consumed_total += consumed
        if adjusted == 0:
            continue
        note = partial_note(consumed, amount) if consumed > 0 else None
        rows.append(
            ReconciliationRow(
                transaction=txn,
                adjusted_cents=adjusted,
                consumed_cents=consumed,
                note=note,
            )
        )

    return CarryAllocation(
        rows=rows,
        total_outstanding_cents=sum(row.adjusted_cents for row in rows),
        remaining_carry_cents=carry,
        consumed_cents=consumed_total,
        period_label=period_label(rows),
    )
