import csv
import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from io import StringIO
from typing import Sequence

from errors import LedgerValidationError
from models import EXTERNAL_ID_MAX_LENGTH, MAX_CENTS, TransactionType
from schemas import ColumnMapping, ImportRow

DEFAULT_DESCRIPTION = "No description"
_AMOUNT_NOISE = re.compile(r"[^\d.,-]")


def read_csv(content: str) -> tuple[list[str], list[dict[str, str]]]:
    """Return headers and rows of a bank export, sniffing the delimiter."""
    content = content.lstrip("\ufeff")
    if not content.strip():
        raise LedgerValidationError("CSV file is empty")
    sample = "\n".join(content.splitlines()[:10])
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=",;\t")
        delimiter = dialect.delimiter
    except csv.Error:
        delimiter = ","
    reader = csv.DictReader(StringIO(content), delimiter=delimiter)
    headers = [h.strip() for h in (reader.fieldnames or []) if h is not None]
    rows: list[dict[str, str]] = []
    for raw in reader:
        rows.append(
            {
                (key or "").strip(): (value or "").strip()
                for key, value in raw.items()
                if key is not None and isinstance(value, str)
            }
        )
    return headers, rows


def parse_amount(value: str) -> int:
    """Parse a signed amount into cents.

    ``1.234,56`` and ``1234,56`` are read with ``,`` as the decimal mark;
    anything else is a plain decimal.
    """
    clean = _AMOUNT_NOISE.sub("", value or "")
    if "," in clean and "." in clean:
        clean = clean.replace(".", "").replace(",", ".")
    elif "," in clean:
        clean = clean.replace(",", ".")
    if not clean or clean.count(".") > 1:
        raise ValueError(f"Invalid amount: {value!r}")
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if abs(cents) > MAX_CENTS:
        raise ValueError(f"Amount out of range: {value!r}")
    return cents


def parse_date(value: str) -> date:
    value = (value or "").strip()
    for fmt in ("%Y-%m-%d", "%d/%m/%Y"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date: {value!r}")


def _check_mapping(headers: Sequence[str], mapping: ColumnMapping) -> None:
    wanted = [mapping.date, mapping.description, mapping.amount]
    if mapping.external_id:
        wanted.append(mapping.external_id)
    missing = [name for name in wanted if name not in headers]
    if missing:
        raise LedgerValidationError(f"Unknown columns in mapping: {', '.join(missing)}")


def extract_rows(
    headers: Sequence[str],
    rows: Sequence[dict[str, str]],
    mapping: ColumnMapping,
) -> tuple[list[ImportRow], list[str]]:
    _check_mapping(headers, mapping)
    extracted: list[ImportRow] = []
    errors: list[str] = []
    for idx, raw in enumerate(rows, start=1):
        try:
            txn_date = parse_date(raw.get(mapping.date, ""))
            amount = parse_amount(raw.get(mapping.amount, ""))
        except ValueError as exc:
            errors.append(f"Row {idx}: {exc}")
            continue
        external_id = (
            (raw.get(mapping.external_id) or "").strip() if mapping.external_id else ""
        )
        if len(external_id) > EXTERNAL_ID_MAX_LENGTH:
            errors.append(
                f"Row {idx}: External id longer than "
                f"{EXTERNAL_ID_MAX_LENGTH} characters"
            )
            continue
        description = (raw.get(mapping.description) or "").strip()
        extracted.append(
            ImportRow(
                row_number=idx,
                date=txn_date,
                description=description[:200] or DEFAULT_DESCRIPTION,
                amount_cents=abs(amount),
                type=TransactionType.expense if amount < 0 else TransactionType.income,
                external_id=external_id or None,
            )
        )
    return extracted, errors
