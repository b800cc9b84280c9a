#!/usr/bin/env python3
"""Parse MT940 bank statement messages into statements and transactions.

The parser is deliberately permissive about structure: blocks without a readable
opening balance or without any tag 61/86 pair are dropped silently, turnovers with
an unreadable valuta date or amount are skipped, and a missing booking date falls
back to the statement date. Only a turnover line without a C/D/RC/RD mark stops
parsing with a ParseError.

Field reference: https://www.kontopruef.de/mt940s.shtml
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple


log = logging.getLogger(__name__)

# Two-digit years are always read as 20YY.
CENTURY = 2000
MONEY_Q = Decimal("0.01")

# Source lines of the structured remittance field are 27 characters wide.
REMITTANCE_LINE_WIDTH = 27
UNSTRUCTURED_TAG = "SVWZ"

CD_CREDIT = "credit"
CD_DEBIT = "debit"
CD_CREDIT_CANCELLATION = "credit_cancellation"
CD_DEBIT_CANCELLATION = "debit_cancellation"

CREDIT_DEBIT_MARKS = {
    "C": CD_CREDIT,
    "D": CD_DEBIT,
    "RC": CD_CREDIT_CANCELLATION,
    "RD": CD_DEBIT_CANCELLATION,
}

# Banks divide lines with either CRLF or "@@".
LINE_DIVIDER = r"(?:@@|\r\n)"

STATEMENT_SPLIT_RE = re.compile(LINE_DIVIDER + r":20:.*?" + LINE_DIVIDER)
FIELD_SPLIT_RE = re.compile(LINE_DIVIDER + r":")
LINE_DIVIDER_RE = re.compile(LINE_DIVIDER)
MULTI_SPACE_RE = re.compile(r"  +")
START_BALANCE_TAG_RE = re.compile(r"^60[FM]$")
# 1605110509D198,02NMSCNONREF -> valuta 160511, booking 0509, mark D, amount 198,02
TURNOVER_RE = re.compile(r"^\d{6}(\d{4})?(C|D|RC|RD)[A-Z]?([^N]+)N")
SUBFIELD_RE = re.compile(r"\?[\r\n]*(\d{2})([^?]+)")
YYMMDD_RE = re.compile(r"\d{6}")
MONTH_DAY_RE = re.compile(r"\d{4}")


class ParseError(RuntimeError):
    pass


@dataclass(frozen=True)
class Field:
    tag: str
    value: str

    @property
    def raw(self) -> str:
        return f":{self.tag}:{self.value}"


@dataclass(frozen=True)
class StartBalance:
    amount: Decimal
    credit_debit: str
    date: date
    currency: str


@dataclass(frozen=True)
class Description:
    booking_code: str
    booking_text: str
    structured: Dict[str, str]
    primanoten_nr: str
    description_1: str
    bank_code: str
    account_number: str
    name: str
    text_key_addition: str
    description_2: str
    lines: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Transaction:
    raw_turnover: str
    raw_description: str
    credit_debit: str
    amount: Decimal
    transaction_code: str
    booking_date: Optional[date]
    valuta_date: date
    description: Description


@dataclass(frozen=True)
class Statement:
    date: date
    start_balance: StartBalance
    transactions: List[Transaction] = field(default_factory=list)


def parse_yymmdd(raw: str, context: str) -> Optional[date]:
    if not YYMMDD_RE.fullmatch(raw):
        log.debug("Unreadable YYMMDD date %r in %r", raw, context)
        return None
    try:
        return date(CENTURY + int(raw[:2]), int(raw[2:4]), int(raw[4:6]))
    except ValueError:
        log.debug("Impossible calendar date %r in %r", raw, context)
        return None


def parse_amount(raw: str, context: str) -> Optional[Decimal]:
    token = raw.strip().replace(",", ".")
    try:
        amount = Decimal(token)
    except InvalidOperation:
        amount = None
    if amount is None or not amount.is_finite():
        log.debug("Unreadable amount %r in %r", raw, context)
        return None
    return amount


def money_to_json(amount: Decimal) -> str:
    # Pad to cents ("100," -> "100.00"); three-decimal currencies keep all digits.
    if amount.as_tuple().exponent > MONEY_Q.as_tuple().exponent:
        amount = amount.quantize(MONEY_Q, rounding=ROUND_HALF_UP)
    return format(amount, "f")


def split_fields(block: str) -> List[Field]:
    fields: List[Field] = []
    for part in FIELD_SPLIT_RE.split(block):
        # Only the first part of a block keeps its leading colon.
        if part.startswith(":"):
            part = part[1:]
        tag, sep, value = part.partition(":")
        if not sep:
            tag, value = "", part
        fields.append(Field(tag=tag, value=value))
    return fields


def segment(raw: str) -> List[List[Field]]:
    """Split a raw message into statement blocks, each a list of tagged fields.

    The ``:20:`` reference line that opens each statement is consumed by the split.
    Text in front of the first ``:20:`` forms a block of its own.
    """
    return [split_fields(block) for block in STATEMENT_SPLIT_RE.split(raw)]


def decode_credit_debit(mark: Optional[str], context: str) -> str:
    cd = CREDIT_DEBIT_MARKS.get(mark or "")
    if cd is None:
        raise ParseError(f"c/d/rc/rd mark not found in: {context!r}")
    return cd


def determine_booking_date(
    valuta_date: date, month_day: Optional[str], fallback_date: Optional[date]
) -> Optional[date]:
    """Pick the booking year closest to the valuta date.

    Tag 61 only carries MMDD for the booking date, and it may lie in the year before
    or after the valuta date. Candidates are tried in ascending year order, so on a
    tie the earlier year wins.
    """
    if month_day is None or not MONTH_DAY_RE.fullmatch(month_day):
        log.debug("No booking date in turnover, using statement date %s", fallback_date)
        return fallback_date

    month, day = int(month_day[:2]), int(month_day[2:])
    best: Optional[date] = None
    best_diff: Optional[int] = None
    for year in range(valuta_date.year - 1, valuta_date.year + 2):
        try:
            candidate = date(year, month, day)
        except ValueError:
            continue
        diff = abs((candidate - valuta_date).days)
        if diff == 0:
            return candidate
        if best_diff is None or diff < best_diff:
            best_diff = diff
            best = candidate

    if best is None:
        log.debug("Booking date %r impossible around %s, using statement date", month_day, valuta_date)
        return fallback_date
    return best


def extract_structured_remittance(lines: List[str]) -> Dict[str, str]:
    """Split remittance lines into ``TAG+value`` segments (EREF, MREF, SVWZ, ...).

    Text that does not start with a tag is returned as a single SVWZ entry.
    """
    if not lines or len(lines[0]) < 5 or lines[0][4] != "+":
        return {UNSTRUCTURED_TAG: "".join(lines)}

    structured: Dict[str, str] = {}
    current = lines[0][:4]
    for line in lines:
        if len(line) >= 5 and line[4] == "+":
            if current in structured:
                structured[current] = structured[current].strip()
            current = line[:4]
            structured[current] = line[5:]
        else:
            structured[current] += line
        if len(line) < REMITTANCE_LINE_WIDTH:
            # Short line: trailing spaces were stripped, keep one as a word break.
            structured[current] += " "
    structured[current] = structured[current].strip()
    return structured


def parse_description(value: str) -> Description:
    booking_code = value[:3]

    text = LINE_DIVIDER_RE.sub("", value)
    text = MULTI_SPACE_RE.sub(" ", text)
    text = text.replace("? ", "?")

    positions: Dict[int, str] = {}
    lines: List[str] = []
    description_1: List[str] = []
    description_2: List[str] = []
    for m in SUBFIELD_RE.finditer(text):
        index = int(m.group(1))
        content = m.group(2)
        if 20 <= index <= 29 or 60 <= index <= 63:
            if index <= 29:
                description_1.append(content)
            else:
                description_2.append(content)
            content = content.strip()
            if content:
                lines.append(content)
        else:
            positions[index] = content

    def slot(*indexes: int) -> str:
        return "".join(positions.get(i) or "" for i in indexes).strip()

    return Description(
        booking_code=booking_code,
        booking_text=slot(0),
        structured=extract_structured_remittance(lines),
        primanoten_nr=slot(10),
        description_1="".join(description_1).strip(),
        bank_code=slot(30),
        account_number=slot(31),
        name=slot(32, 33),
        text_key_addition=slot(34),
        description_2="".join(description_2),
        lines=lines,
    )


def parse_start_balance(value: str) -> Optional[StartBalance]:
    """Decode ``C160401EUR1234,56`` (mark, YYMMDD, currency, amount).

    Returns None when the date or amount cannot be read, so the block counts as
    having no opening balance.
    """
    amount = parse_amount(value[10:], value)
    balance_date = parse_yymmdd(value[1:7], value)
    if amount is None or balance_date is None:
        return None
    return StartBalance(
        amount=amount,
        credit_debit=CD_CREDIT if value[:1] == "C" else CD_DEBIT,
        date=balance_date,
        currency=value[7:10],
    )


def parse_transaction(
    turnover: Field, description: Field, fallback_date: Optional[date]
) -> Optional[Transaction]:
    m = TURNOVER_RE.match(turnover.value)
    credit_debit = decode_credit_debit(m.group(2) if m else None, turnover.value)

    valuta_date = parse_yymmdd(turnover.value[:6], turnover.value)
    amount = parse_amount(m.group(3), turnover.value)
    if valuta_date is None or amount is None:
        return None
    return Transaction(
        raw_turnover=turnover.raw,
        raw_description=description.raw,
        credit_debit=credit_debit,
        amount=amount,
        transaction_code=description.value[:3],
        booking_date=determine_booking_date(valuta_date, m.group(1), fallback_date),
        valuta_date=valuta_date,
        description=parse_description(description.value),
    )


def build_statement(
    fields: List[Field], fallback_date: Optional[date] = None
) -> Tuple[Optional[Statement], Optional[date]]:
    """Build one statement from a block's fields.

    Returns the statement (None when the block has no opening balance or no
    transactions) and the statement date to carry into the next block.
    """
    start_balance: Optional[StartBalance] = None
    transactions: List[Transaction] = []

    for idx, fld in enumerate(fields):
        if START_BALANCE_TAG_RE.match(fld.tag):
            start_balance = parse_start_balance(fld.value)
            if start_balance is None:
                log.debug("Unreadable opening balance: %r", fld.raw)
                continue
            fallback_date = start_balance.date
        elif fld.tag == "61":
            following = fields[idx + 1] if idx + 1 < len(fields) else None
            if following is None or following.tag != "86":
                log.debug("Skipping turnover without :86: description: %r", fld.raw)
                continue
            tx = parse_transaction(fld, following, fallback_date)
            if tx is None:
                log.debug("Skipping unreadable turnover: %r", fld.raw)
                continue
            transactions.append(tx)

    if start_balance is None or not transactions:
        # Earmarked transaction blocks come without an opening balance.
        log.debug(
            "Dropping block (start balance: %s, transactions: %d)",
            start_balance is not None,
            len(transactions),
        )
        return None, fallback_date

    return Statement(date=start_balance.date, start_balance=start_balance, transactions=transactions), fallback_date


def parse(raw: str) -> List[Statement]:
    statements: List[Statement] = []
    fallback_date: Optional[date] = None
    for fields in segment(raw):
        statement, fallback_date = build_statement(fields, fallback_date)
        if statement is not None:
            statements.append(statement)
    log.debug("Parsed %d statement(s)", len(statements))
    return statements


def description_to_json(description: Description) -> dict:
    return {
        "booking_code": description.booking_code,
        "booking_text": description.booking_text,
        "description": dict(description.structured),
        "primanoten_nr": description.primanoten_nr,
        "description_1": description.description_1,
        "bank_code": description.bank_code,
        "account_number": description.account_number,
        "name": description.name,
        "text_key_addition": description.text_key_addition,
        "description_2": description.description_2,
        "desc_lines": list(description.lines),
    }


def transaction_to_json(tx: Transaction) -> dict:
    return {
        "turnover_raw": tx.raw_turnover,
        "multi_purpose_raw": tx.raw_description,
        "credit_debit": tx.credit_debit,
        "amount": money_to_json(tx.amount),
        "transaction_code": tx.transaction_code,
        "booking_date": tx.booking_date.isoformat() if tx.booking_date is not None else None,
        "valuta_date": tx.valuta_date.isoformat(),
        "description": description_to_json(tx.description),
    }


def statement_to_json(statement: Statement) -> dict:
    return {
        "date": statement.date.isoformat(),
        "start_balance": {
            "amount": money_to_json(statement.start_balance.amount),
            "credit_debit": statement.start_balance.credit_debit,
            "currency": statement.start_balance.currency,
        },
        "transactions": [transaction_to_json(tx) for tx in statement.transactions],
    }


def statements_to_json(statements: List[Statement]) -> List[dict]:
    return [statement_to_json(st) for st in statements]
