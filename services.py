from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import date
from typing import Optional, Sequence

from sqlalchemy import and_, case, func, or_, select, true, update
from sqlalchemy.orm import Session, joinedload

from rapidfuzz.distance import Levenshtein

from config import get_settings
from csv_utils import parse_amount, reimbursement_rows, transaction_rows, write_csv
from database import fold, fold_text, store_errors
from filters import FilterSpec, SignClass, SortDirection, SortKey
from models import (
    INIT_CATEGORY,
    RESERVED_CATEGORIES,
    Account,
    AccountKind,
    Category,
    Transaction,
)
from query_plan import (
    Clause,
    DateFrom,
    DateTo,
    EqualsAccount,
    OrderKey,
    PageWindow,
    SignMatch,
    TextMatch,
    plan_query,
)
from reconcile import CarryAllocation, allocate_carry, resolve_window
from schemas import (
    AccountIn,
    AccountUpdate,
    CategoryIn,
    TransactionEntryIn,
    TransactionIn,
    TransactionUpdate,
)


logger = logging.getLogger(__name__)


class ValidationError(ValueError):
    pass


class DomainError(ValueError):
    pass


class AccountNotFound(DomainError):
    pass


class NotReimbursable(DomainError):
    pass


class AccountInUse(DomainError):
    pass


class CategoryNotFound(DomainError):
    pass


class TransactionNotFound(DomainError):
    pass


INIT_CATEGORY_LABEL = "Init"
TRANSFER_CATEGORY_LABEL = "Transfer"
SUGGEST_MAX_DISTANCE = 2


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    clean = value.strip()
    return clean or None


def _ledger_join(stmt):
    return stmt.select_from(Transaction).join(
        Account, Account.id == Transaction.account_id
    ).outerjoin(Category, Category.id == Transaction.category_id)


def _folded(column):
    return fold(func.coalesce(column, ""))


def clause_expression(clause: Clause):
    if isinstance(clause, EqualsAccount):
        return Transaction.account_id == clause.account_id
    if isinstance(clause, DateFrom):
        return Transaction.date >= clause.on
    if isinstance(clause, DateTo):
        return Transaction.date <= clause.on
    if isinstance(clause, SignMatch):
        if clause.sign == SignClass.income:
            return Transaction.amount_cents > 0
        if clause.sign == SignClass.expense:
            return Transaction.amount_cents < 0
        return true()
    if isinstance(clause, TextMatch):
        return or_(
            _folded(Transaction.note).contains(clause.needle, autoescape=True),
            _folded(Category.name).contains(clause.needle, autoescape=True),
        )
    raise TypeError(f"Unsupported predicate clause: {clause!r}")


def predicate_expressions(predicate: Sequence[Clause]) -> list:
    return [clause_expression(clause) for clause in predicate]


_SORT_COLUMNS = {
    SortKey.date: Transaction.date,
    SortKey.category: _folded(Category.name),
    SortKey.description: _folded(Transaction.note),
    SortKey.amount: Transaction.amount_cents,
    SortKey.account: fold(Account.name),
    SortKey.id: Transaction.id,
}


def order_expressions(ordering: Sequence[OrderKey]) -> list:
    exprs = []
    for key in ordering:
        column = _SORT_COLUMNS[key.key]
        if key.direction == SortDirection.desc:
            exprs.append(column.desc())
        else:
            exprs.append(column.asc())
    return exprs


@dataclass(frozen=True)
class LedgerSums:
    sum_income: int = 0
    sum_expense: int = 0
    sum_income_std: int = 0
    sum_expense_std: int = 0
    sum_income_reimb: int = 0
    sum_expense_reimb: int = 0
    sum_init: int = 0

    @property
    def saldo(self) -> int:
        return self.sum_init + self.sum_income + self.sum_expense

    def as_dict(self) -> dict[str, int]:
        data = asdict(self)
        data["saldo"] = self.saldo
        return data


@dataclass(frozen=True)
class SearchResult:
    items: list[dict[str, object]]
    total: int
    offset: int
    limit: int
    sums: LedgerSums


@dataclass(frozen=True)
class ReimbursementWindow:
    account_id: int
    account_name: str
    current_balance_cents: int
    initial_carry_cents: int
    window: list[Transaction]


@dataclass(frozen=True)
class ReimbursementReport:
    account_id: int
    account_name: str
    current_balance_cents: int
    initial_carry_cents: int
    allocation: CarryAllocation

    @property
    def rows(self):
        return self.allocation.rows

    @property
    def total_outstanding_cents(self) -> int:
        return self.allocation.total_outstanding_cents

    @property
    def period_label(self) -> str:
        return self.allocation.period_label


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Category]:
        stmt = select(Category).order_by(fold(Category.name), Category.id)
        return self.session.scalars(stmt).all()

    def find(self, name: str) -> Optional[Category]:
        return self.session.scalar(
            select(Category).where(fold(Category.name) == fold_text(name.strip()))
        )

    def get_or_create(self, name: str) -> Category:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Category name cannot be empty")

        existing = self.find(clean_name)
        if existing:
            return existing

        category = Category(name=clean_name)
        self.session.add(category)
        with store_errors("category_create"):
            self.session.flush()
        return category

    def create(self, data: CategoryIn) -> Category:
        clean_name = data.name.strip()
        if not clean_name:
            raise ValidationError("Category name cannot be empty")
        if self.find(clean_name):
            raise ValidationError("Category with this name already exists")
        category = Category(name=clean_name)
        self.session.add(category)
        with store_errors("category_create"):
            self.session.commit()
            self.session.refresh(category)
        return category

    def rename(self, category_id: int, name: str) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise CategoryNotFound("Category not found")
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Category name cannot be empty")
        clash = self.session.scalar(
            select(Category).where(
                fold(Category.name) == fold_text(clean_name),
                Category.id != category_id,
            )
        )
        if clash:
            raise ValidationError("Category with this name already exists")
        category.name = clean_name
        with store_errors("category_rename"):
            self.session.commit()
        return category

    def delete(self, category_id: int) -> None:
        category = self.session.get(Category, category_id)
        if not category:
            raise CategoryNotFound("Category not found")
        with store_errors("category_delete"):
            self.session.execute(
                update(Transaction)
                .where(Transaction.category_id == category_id)
                .values(category_id=None)
            )
            self.session.delete(category)
            self.session.commit()

    def suggest(self, query: Optional[str], limit: int = 8) -> list[str]:
        """Category names for autocomplete: substring hits first, then fuzzy ones."""
        names = [c.name for c in self.list_all()]
        needle = fold_text((query or "").strip())
        if not needle:
            return names[:limit]

        direct = [n for n in names if needle in fold_text(n)]
        direct.sort(key=lambda n: (not fold_text(n).startswith(needle), fold_text(n)))
        if len(direct) >= limit:
            return direct[:limit]

        # typo tolerance: close names by edit distance, nearest first
        seen = {fold_text(n) for n in direct}
        near: list[tuple[int, str]] = []
        for name in names:
            folded = fold_text(name)
            if folded in seen:
                continue
            dist = int(Levenshtein.distance(needle, folded))
            if dist <= SUGGEST_MAX_DISTANCE:
                near.append((dist, name))
        near.sort(key=lambda item: (item[0], fold_text(item[1])))
        return (direct + [name for _, name in near])[:limit]


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Account]:
        stmt = select(Account).order_by(fold(Account.name), Account.id)
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise AccountNotFound(f"Account {account_id} not found")
        return account

    def create(self, data: AccountIn) -> Account:
        name = data.name.strip()
        if not name:
            raise ValidationError("Account name cannot be empty")
        account = Account(
            name=name, color=_clean_text(data.color), kind=data.kind
        )
        self.session.add(account)
        with store_errors("account_create"):
            self.session.flush()

        if data.initial_balance_cents:
            init = CategoryService(self.session).get_or_create(INIT_CATEGORY_LABEL)
            self.session.add(
                Transaction(
                    account_id=account.id,
                    date=data.opened_on or date.today(),
                    category_id=init.id,
                    note="Initial balance",
                    amount_cents=data.initial_balance_cents,
                )
            )
        with store_errors("account_create"):
            self.session.commit()
            self.session.refresh(account)
        logger.info(
            f"account_created: id={account.id} kind={account.kind.value} "
            f"initial_balance={data.initial_balance_cents}"
        )
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        account = self.get(account_id)
        fields = data.model_fields_set
        if "name" in fields and data.name is not None:
            name = data.name.strip()
            if not name:
                raise ValidationError("Account name cannot be empty")
            account.name = name
        if "color" in fields:
            account.color = _clean_text(data.color)
        if "kind" in fields and data.kind is not None:
            account.kind = data.kind
        with store_errors("account_update"):
            self.session.commit()
            self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        used = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.account_id == account_id
                )
            ).scalar_one()
            or 0
        )
        if used:
            raise AccountInUse(
                f"Account '{account.name}' still has {used} transactions"
            )
        with store_errors("account_delete"):
            self.session.delete(account)
            self.session.commit()


class TransactionService:
    def __init__(self, session: Session, page_size: Optional[int] = None) -> None:
        self.session = session
        self.page_size = (
            get_settings().page_size if page_size is None else max(page_size, 0)
        )

    def _category_id(self, name: Optional[str]) -> Optional[int]:
        clean = _clean_text(name)
        if clean is None:
            return None
        return CategoryService(self.session).get_or_create(clean).id

    def _require_account(self, account_id: Optional[int], label: str = "Account") -> Account:
        if account_id is None:
            raise ValidationError(f"{label} is required")
        account = self.session.get(Account, account_id)
        if not account:
            raise AccountNotFound(f"{label} {account_id} not found")
        return account

    def create(self, data: TransactionIn) -> Transaction:
        self._require_account(data.account_id)
        txn = Transaction(
            account_id=data.account_id,
            date=data.date,
            category_id=self._category_id(data.category),
            note=_clean_text(data.note),
            amount_cents=data.amount_cents,
        )
        self.session.add(txn)
        with store_errors("transaction_create"):
            self.session.commit()
            self.session.refresh(txn)
        return txn

    def create_entry(self, data: TransactionEntryIn) -> list[Transaction]:
        """Book one user entry.

        Income and expense land on ``account_id`` with the sign implied by the
        type, and are mirrored onto ``reimbursable_account_id`` when given.
        Transfers book a debit on the source and a credit on the target, both
        in the Transfer category.
        """
        if data.amount_cents is not None:
            amount = abs(data.amount_cents)
        elif data.amount is not None:
            try:
                amount = abs(parse_amount(data.amount, allow_negative=True))
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
        else:
            raise ValidationError("Amount is required")
        if amount == 0:
            raise ValidationError("Enter a non-zero amount")
        note = _clean_text(data.note)

        legs: list[tuple[int, int, Optional[str], Optional[str]]] = []
        if data.type == "transfer":
            source = self._require_account(data.source_account_id, "Source account")
            target = self._require_account(data.target_account_id, "Target account")
            if source.id == target.id:
                raise ValidationError("Source and target account must differ")
            desc = (f"{note} " if note else "") + f"[{source.name} -> {target.name}]"
            legs.append((source.id, -amount, TRANSFER_CATEGORY_LABEL, desc))
            legs.append((target.id, amount, TRANSFER_CATEGORY_LABEL, desc))
        else:
            account = self._require_account(data.account_id)
            category = _clean_text(data.category)
            if category is None:
                raise ValidationError("Category is required")
            signed = amount if data.type == "income" else -amount
            legs.append((account.id, signed, category, note))
            if (
                data.reimbursable_account_id is not None
                and data.reimbursable_account_id != account.id
            ):
                mirror = self._require_account(
                    data.reimbursable_account_id, "Reimbursable account"
                )
                if mirror.kind != AccountKind.reimbursable:
                    raise NotReimbursable(
                        f"Account '{mirror.name}' is not reimbursable"
                    )
                legs.append((mirror.id, signed, category, note))

        created: list[Transaction] = []
        for account_id, signed_amount, category, description in legs:
            txn = Transaction(
                account_id=account_id,
                date=data.date,
                category_id=self._category_id(category),
                note=description,
                amount_cents=signed_amount,
            )
            self.session.add(txn)
            created.append(txn)
        with store_errors("entry_create"):
            self.session.commit()
            for txn in created:
                self.session.refresh(txn)
        logger.info(f"entry_booked: type={data.type} legs={len(created)}")
        return created

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.account), joinedload(Transaction.category))
            .where(Transaction.id == transaction_id)
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        fields = data.model_fields_set
        if "account_id" in fields:
            txn.account_id = self._require_account(data.account_id).id
        if "date" in fields:
            if data.date is None:
                raise ValidationError("Date cannot be empty")
            txn.date = data.date
        if "amount_cents" in fields:
            if data.amount_cents is None:
                raise ValidationError("Amount cannot be empty")
            txn.amount_cents = data.amount_cents
        if "category" in fields:
            txn.category_id = self._category_id(data.category)
        if "note" in fields:
            txn.note = _clean_text(data.note)
        with store_errors("transaction_update"):
            self.session.commit()
            self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        with store_errors("transaction_delete"):
            self.session.delete(txn)
            self.session.commit()

    def recent(self, limit: int = 10) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.account), joinedload(Transaction.category))
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(max(limit, 0))
        )
        return self.session.scalars(stmt).all()

    def _item_select(self):
        return _ledger_join(
            select(
                Transaction.id,
                Transaction.account_id,
                Account.name.label("account_name"),
                Account.color.label("account_color"),
                Transaction.date,
                Category.name.label("category"),
                Transaction.note,
                Transaction.amount_cents,
            )
        )

    def count(self, predicate: Sequence[Clause]) -> int:
        stmt = _ledger_join(select(func.count(Transaction.id))).where(
            *predicate_expressions(predicate)
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def find(
        self,
        predicate: Sequence[Clause],
        ordering: Sequence[OrderKey],
        window: Optional[PageWindow] = None,
    ) -> list[dict[str, object]]:
        stmt = (
            self._item_select()
            .where(*predicate_expressions(predicate))
            .order_by(*order_expressions(ordering))
        )
        if window is not None:
            stmt = stmt.limit(window.limit).offset(window.offset)
        return [dict(row._mapping) for row in self.session.execute(stmt)]

    def search(self, spec: FilterSpec) -> SearchResult:
        """Page of matching transactions plus total and sums over all matches.

        Count, page and sums run in the same session transaction, so on the
        ledger engine they read one snapshot.
        """
        plan = plan_query(spec, self.page_size)
        with store_errors("search"):
            total = self.count(plan.predicate)
            window = plan.window(total)
            items = self.find(plan.predicate, plan.ordering, window)
            sums = MetricsService(self.session).sums(plan.predicate)
        logger.debug(
            f"search: total={total} offset={window.offset} limit={window.limit} "
            f"requested_offset={plan.requested_offset}"
        )
        return SearchResult(
            items=items,
            total=total,
            offset=window.offset,
            limit=window.limit,
            sums=sums,
        )

    def all_matching(self, spec: FilterSpec) -> list[dict[str, object]]:
        plan = plan_query(spec, self.page_size)
        with store_errors("export"):
            return self.find(plan.predicate, plan.ordering)


class MetricsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def sums(self, predicate: Sequence[Clause]) -> LedgerSums:
        category = fold(Category.name)
        counted = or_(Category.id.is_(None), category.notin_(RESERVED_CATEGORIES))
        income = and_(counted, Transaction.amount_cents > 0)
        expense = and_(counted, Transaction.amount_cents < 0)
        standard = Account.kind == AccountKind.standard
        reimbursable = Account.kind == AccountKind.reimbursable
        is_init = and_(Category.id.is_not(None), category == INIT_CATEGORY)

        def total(condition, label: str):
            return func.coalesce(
                func.sum(case((condition, Transaction.amount_cents), else_=0)), 0
            ).label(label)

        stmt = _ledger_join(
            select(
                total(income, "sum_income"),
                total(expense, "sum_expense"),
                total(and_(income, standard), "sum_income_std"),
                total(and_(expense, standard), "sum_expense_std"),
                total(and_(income, reimbursable), "sum_income_reimb"),
                total(and_(expense, reimbursable), "sum_expense_reimb"),
                total(is_init, "sum_init"),
            )
        ).where(*predicate_expressions(predicate))
        row = self.session.execute(stmt).one()
        return LedgerSums(**{key: int(value or 0) for key, value in row._mapping.items()})

    def aggregate(self, spec: FilterSpec) -> LedgerSums:
        plan = plan_query(spec)
        with store_errors("aggregate"):
            return self.sums(plan.predicate)

    def account_balances(self) -> list[dict[str, object]]:
        stmt = (
            select(
                Account,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("balance"),
            )
            .outerjoin(Transaction, Transaction.account_id == Account.id)
            .group_by(Account.id)
            .order_by(fold(Account.name), Account.id)
        )
        with store_errors("account_balances"):
            rows = self.session.execute(stmt).all()
        return [
            {"account": row[0], "balance_cents": int(row.balance or 0)} for row in rows
        ]

    def overview(self) -> dict[str, int]:
        """Net worth counts reimbursable balances as receivables (inverted)."""
        net_worth = 0
        to_be_reimbursed = 0
        for entry in self.account_balances():
            account: Account = entry["account"]
            balance = int(entry["balance_cents"])
            if account.kind == AccountKind.reimbursable:
                net_worth -= balance
                if balance < 0:
                    to_be_reimbursed += -balance
            else:
                net_worth += balance
        return {
            "net_worth_cents": net_worth,
            "to_be_reimbursed_cents": to_be_reimbursed,
        }


class ReimbursementService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _reimbursable_account(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise AccountNotFound(f"Account {account_id} not found")
        if account.kind != AccountKind.reimbursable:
            raise NotReimbursable(f"Account '{account.name}' is not reimbursable")
        return account

    def history(self, account_id: int) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.account_id == account_id)
            .order_by(Transaction.date.asc(), Transaction.id.asc())
        )
        return self.session.scalars(stmt).all()

    def resolve_window(self, account_id: int) -> ReimbursementWindow:
        with store_errors("reimbursement_window"):
            account = self._reimbursable_account(account_id)
            history = self.history(account.id)
        window, cut = resolve_window(history)
        return ReimbursementWindow(
            account_id=account.id,
            account_name=account.name,
            current_balance_cents=cut.current_balance_cents,
            initial_carry_cents=cut.initial_carry_cents,
            window=window,
        )

    def report(self, account_id: Optional[int]) -> ReimbursementReport:
        if account_id is None:
            raise ValidationError("A reimbursable account is required")
        resolved = self.resolve_window(account_id)
        allocation = allocate_carry(resolved.window, resolved.initial_carry_cents)
        logger.info(
            f"reimbursement_report: account_id={account_id} "
            f"window={len(resolved.window)} rows={len(allocation.rows)} "
            f"outstanding={allocation.total_outstanding_cents}"
        )
        return ReimbursementReport(
            account_id=resolved.account_id,
            account_name=resolved.account_name,
            current_balance_cents=resolved.current_balance_cents,
            initial_carry_cents=resolved.initial_carry_cents,
            allocation=allocation,
        )


class CSVService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def export_search(
        self, spec: FilterSpec, columns: Optional[Sequence[str]] = None
    ) -> str:
        items = TransactionService(self.session).all_matching(spec)
        return write_csv(transaction_rows(items, columns))

    def export_reimbursement(self, account_id: Optional[int]) -> str:
        report = ReimbursementService(self.session).report(account_id)
        return write_csv(reimbursement_rows(report))
