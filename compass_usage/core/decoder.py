"""
Usage CSV decoding.

Turns the portal's usage export into ``UsageRecord`` rows. Decoding is
strict: the first malformed row fails the whole payload.
"""

import csv
import io
import re
from datetime import datetime
from typing import List, Sequence

from .errors import FormatError
from ..storage.models import UsageRecord

# Jan-30-2018 06:08 PM
USAGE_RECORD_LAYOUT = "%b-%d-%Y %I:%M %p"

USAGE_RECORD_FIELDS = 11

_AMOUNT_RE = re.compile(r"[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")


def parse_amount(amount: str) -> float:
    """Parse a currency field such as ``$12.50``.

    Every ``$`` is removed first; an empty result is ``0.0``.

    Raises:
        FormatError: If the remainder is not a decimal number
    """
    value = amount.replace("$", "")
    if value == "":
        return 0.0
    if not _AMOUNT_RE.fullmatch(value):
        raise FormatError(f"invalid amount {amount!r}")
    return float(value)


def parse_timestamp(text: str) -> datetime:
    """Parse the export's ``Mon-DD-YYYY HH:MM AM/PM`` timestamp."""
    try:
        return datetime.strptime(text, USAGE_RECORD_LAYOUT)
    except ValueError:
        raise FormatError(f"invalid timestamp {text!r}, expected e.g. 'Jan-30-2018 06:08 PM'")


def _parse_row(row: Sequence[str], line_num: int) -> UsageRecord:
    if len(row) < USAGE_RECORD_FIELDS:
        raise FormatError(
            f"line {line_num}: expected {USAGE_RECORD_FIELDS} fields, got {len(row)}"
        )
    try:
        date_time = parse_timestamp(row[0])
        amount = parse_amount(row[4])
    except FormatError as e:
        raise FormatError(f"line {line_num}: {e}") from e

    return UsageRecord(
        date_time=date_time,
        transaction=row[1],
        product=row[2],
        line_item=row[3],
        amount=amount,
        balance_details=row[5],
        order_date=row[6],
        payment=row[7],
        order_number=row[8],
        auth_code=row[9],
        total=row[10],
    )


def decode_usage(raw: bytes) -> List[UsageRecord]:
    """Decode a usage CSV export into records.

    The first row is a header and is dropped without inspection. Blank lines
    are ignored. Records keep the row order of the export.

    Args:
        raw: Response body of the usage export

    Returns:
        Decoded records, possibly empty

    Raises:
        FormatError: If the payload or any data row is malformed
    """
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise FormatError(f"usage export is not valid UTF-8: {e}") from e

    reader = csv.reader(io.StringIO(text, newline=""), strict=True)
    records = []
    header = True
    try:
        for row in reader:
            if not row:
                continue
            if header:
                header = False
                continue
            records.append(_parse_row(row, reader.line_num))
    except csv.Error as e:
        raise FormatError(f"line {reader.line_num}: {e}") from e
    return records
