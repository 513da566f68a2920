from datetime import date

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from filters import build_filter_spec
from models import Account, AccountKind
from schemas import TransactionIn
from services import LedgerSums, TransactionService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_accounts(session):
    checking = Account(name="Checking", kind=AccountKind.standard, color="#112233")
    work = Account(name="Work expenses", kind=AccountKind.reimbursable)
    session.add_all([checking, work])
    session.commit()
    return checking, work


def add(txns, account, day, cents, category=None, note=None, month=1):
    return txns.create(
        TransactionIn(
            account_id=account.id,
            date=date(2024, month, day),
            amount_cents=cents,
            category=category,
            note=note,
        )
    )


def test_search_returns_page_total_and_sums() -> None:
    session = make_session()
    checking, work = make_accounts(session)
    txns = TransactionService(session, page_size=15)
    add(txns, checking, 3, 250_000, "Salary", "January pay")
    add(txns, checking, 5, -4_500, "Groceries", "Market")
    add(txns, work, 6, -12_000, "Travel", "Train to Berlin")

    result = txns.search(build_filter_spec())

    assert result.total == 3
    assert result.offset == 0
    assert result.limit == 15
    assert [item["note"] for item in result.items] == [
        "January pay",
        "Market",
        "Train to Berlin",
    ]
    first = result.items[0]
    assert first["account_name"] == "Checking"
    assert first["account_color"] == "#112233"
    assert first["category"] == "Salary"
    assert result.sums == LedgerSums(
        sum_income=250_000,
        sum_expense=-16_500,
        sum_income_std=250_000,
        sum_expense_std=-4_500,
        sum_income_reimb=0,
        sum_expense_reimb=-12_000,
        sum_init=0,
    )
    assert result.sums.saldo == 233_500


def test_transfer_category_is_listed_but_not_summed() -> None:
    session = make_session()
    checking, _ = make_accounts(session)
    txns = TransactionService(session)
    add(txns, checking, 2, -5_000, "TRANSFER", "to savings")
    add(txns, checking, 3, -1_000, "Food", "lunch")

    result = txns.search(build_filter_spec())

    assert result.total == 2
    assert {item["note"] for item in result.items} == {"to savings", "lunch"}
    assert result.sums.sum_expense == -1_000
    assert result.sums.sum_income == 0


def test_zero_amount_is_listed_and_counted_but_not_summed() -> None:
    session = make_session()
    checking, _ = make_accounts(session)
    txns = TransactionService(session)
    add(txns, checking, 2, 0, "Food", "voucher")

    result = txns.search(build_filter_spec())

    assert result.total == 1
    assert result.items[0]["amount_cents"] == 0
    assert result.sums.as_dict() == {**LedgerSums().as_dict(), "saldo": 0}


def test_sums_cover_the_whole_filtered_set_regardless_of_page() -> None:
    session = make_session()
    checking, _ = make_accounts(session)
    txns = TransactionService(session)
    for day in range(1, 8):
        add(txns, checking, day, -100 * day, "Food")

    full = txns.search(build_filter_spec())
    first_page = txns.search(build_filter_spec(limit=2))
    last_page = txns.search(build_filter_spec(limit=2, offset=-1))

    assert len(first_page.items) == 2
    assert len(last_page.items) == 1
    assert last_page.offset == 6
    assert full.sums == first_page.sums == last_page.sums
    assert full.sums.sum_expense == -2_800


def test_equal_dates_are_ordered_by_id_in_sort_direction() -> None:
    session = make_session()
    checking, _ = make_accounts(session)
    txns = TransactionService(session)
    ids = [add(txns, checking, 10, -100, "Food").id for _ in range(4)]

    asc = txns.search(build_filter_spec())
    desc = txns.search(build_filter_spec(sort_dir="desc"))

    assert [item["id"] for item in asc.items] == ids
    assert [item["id"] for item in desc.items] == list(reversed(ids))


def test_sort_by_account_and_amount() -> None:
    session = make_session()
    checking, work = make_accounts(session)
    txns = TransactionService(session)
    a = add(txns, work, 1, -300)
    b = add(txns, checking, 2, -100)
    c = add(txns, checking, 3, -200)

    by_account = txns.search(build_filter_spec(sort_by="account"))
    by_amount = txns.search(build_filter_spec(sort_by="amount", sort_dir="desc"))

    assert [item["id"] for item in by_account.items] == [b.id, c.id, a.id]
    assert [item["id"] for item in by_amount.items] == [b.id, c.id, a.id]


def test_text_match_covers_note_and_category_case_insensitively() -> None:
    session = make_session()
    checking, _ = make_accounts(session)
    txns = TransactionService(session)
    add(txns, checking, 1, -500, "Coffee", "morning")
    add(txns, checking, 2, -700, "Food", "coffee beans")
    add(txns, checking, 3, -900, "Food", "bread")
    add(txns, checking, 4, -100, None, None)

    result = txns.search(build_filter_spec(query="  COFFEE "))

    assert result.total == 2
    assert [item["note"] for item in result.items] == ["morning", "coffee beans"]


def test_text_match_folds_non_ascii_case() -> None:
    session = make_session()
    checking, _ = make_accounts(session)
    txns = TransactionService(session)
    add(txns, checking, 1, -80_000, "Wohnen", "Überweisung Miete")
    add(txns, checking, 2, -4_000, "Ärzte", "Praxis")
    add(txns, checking, 3, -900, "Food", "bread")

    assert txns.search(build_filter_spec(query="überweisung")).total == 1
    assert txns.search(build_filter_spec(query="ÜBERWEISUNG")).total == 1
    result = txns.search(build_filter_spec(query="ärzte"))
    assert result.total == 1
    assert result.items[0]["note"] == "Praxis"
    assert result.sums.sum_expense == -4_000


def test_text_match_treats_wildcards_literally() -> None:
    session = make_session()
    checking, _ = make_accounts(session)
    txns = TransactionService(session)
    add(txns, checking, 1, 500, "Refund", "100% back")
    add(txns, checking, 2, 700, "Refund", "partial back")
    add(txns, checking, 3, 900, "Refund", "under_score")

    assert txns.search(build_filter_spec(query="%")).total == 1
    assert txns.search(build_filter_spec(query="_")).total == 1


def test_sign_account_and_date_filters_combine() -> None:
    session = make_session()
    checking, work = make_accounts(session)
    txns = TransactionService(session)
    add(txns, checking, 5, 1_000, "Gift")
    add(txns, checking, 10, -2_000, "Food")
    add(txns, checking, 20, -3_000, "Food")
    add(txns, work, 10, -4_000, "Travel")

    spec = build_filter_spec(
        account_id=checking.id,
        tx_type="expense",
        date_from="2024-01-06",
        date_to="2024-01-15",
    )
    result = txns.search(spec)

    assert result.total == 1
    assert result.items[0]["amount_cents"] == -2_000
    assert result.sums.sum_expense == -2_000


def test_stale_offset_snaps_to_last_page() -> None:
    session = make_session()
    checking, _ = make_accounts(session)
    txns = TransactionService(session)
    for day in range(1, 24):
        add(txns, checking, day, -day)

    for offset in (-1, 999, 23):
        result = txns.search(build_filter_spec(limit=10, offset=offset))
        assert result.total == 23
        assert result.offset == 20
        assert len(result.items) == 3


def test_zero_limit_returns_no_items_but_full_totals() -> None:
    session = make_session()
    checking, _ = make_accounts(session)
    txns = TransactionService(session)
    add(txns, checking, 1, -100, "Food")
    add(txns, checking, 2, -200, "Food")

    result = txns.search(build_filter_spec(limit=0))

    assert result.items == []
    assert result.total == 2
    assert result.offset == 0
    assert result.sums.sum_expense == -300


def test_search_is_idempotent() -> None:
    session = make_session()
    checking, work = make_accounts(session)
    txns = TransactionService(session)
    add(txns, checking, 1, 100, "Gift", "a")
    add(txns, work, 1, -200, "Travel", "b")
    add(txns, checking, 2, -300, "Food", "c")

    spec = build_filter_spec(sort_by="category", sort_dir="desc", limit=2)
    assert txns.search(spec) == txns.search(spec)


def test_empty_ledger_search() -> None:
    session = make_session()
    result = TransactionService(session).search(build_filter_spec(offset=-1))
    assert result.items == []
    assert result.total == 0
    assert result.offset == 0
    assert result.sums.saldo == 0
