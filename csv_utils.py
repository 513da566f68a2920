import csv
import re
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Iterable, Iterator, Optional, Sequence

from money import plain_amount


TRANSACTION_COLUMNS: dict[str, str] = {
    "date": "Date",
    "account": "Account",
    "category": "Category",
    "description": "Description",
    "amount": "Amount",
}
DEFAULT_TRANSACTION_COLUMNS = ["date", "account", "category", "description", "amount"]

REIMBURSEMENT_COLUMNS = ["Date", "Category", "Description", "Amount", "Coverage"]


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_amount(value: str, *, allow_negative: bool = False) -> int:
    """Parse EU or US decimal input ("5,23", "1.234,56", "1,234.56") into cents."""
    clean = value.strip().replace("€", "").replace("$", "")
    clean = clean.replace(" ", "").replace("\u00a0", "")
    has_comma = "," in clean
    has_dot = "." in clean
    if has_comma and has_dot:
        if clean.rfind(",") > clean.rfind("."):
            clean = clean.replace(".", "").replace(",", ".")
        else:
            clean = clean.replace(",", "")
    elif has_comma:
        clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    cents = int((amount * 100).quantize(Decimal("1")))
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def transaction_rows(
    items: Iterable[dict[str, object]], columns: Optional[Sequence[str]] = None
) -> Iterator[list[str]]:
    """Yield the header and one row per denormalized transaction item.

    Unknown column names produce empty cells, like an unmapped spreadsheet column.
    """
    cols = list(columns) if columns else DEFAULT_TRANSACTION_COLUMNS
    yield [TRANSACTION_COLUMNS.get(name, name) for name in cols]
    for item in items:
        row: list[str] = []
        for name in cols:
            if name == "date":
                row.append(item["date"].isoformat())
            elif name == "account":
                row.append(sanitize_csv_value(str(item["account_name"] or "")))
            elif name == "category":
                row.append(sanitize_csv_value(str(item["category"] or "")))
            elif name == "description":
                row.append(sanitize_csv_value(str(item["note"] or "")))
            elif name == "amount":
                row.append(plain_amount(int(item["amount_cents"])))
            else:
                row.append("")
        yield row


def reimbursement_rows(report) -> Iterator[list[str]]:
    yield list(REIMBURSEMENT_COLUMNS)
    for row in report.allocation.rows:
        txn = row.transaction
        yield [
            txn.date.isoformat(),
            sanitize_csv_value(txn.category.name if txn.category else ""),
            sanitize_csv_value(txn.note or ""),
            plain_amount(row.adjusted_cents),
            sanitize_csv_value(row.note or ""),
        ]
    yield ["", "", "Total outstanding", plain_amount(report.total_outstanding_cents), ""]


def write_csv(rows: Iterable[Sequence[str]]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    for row in rows:
        writer.writerow(row)
    return output.getvalue()
