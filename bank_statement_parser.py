#!/usr/bin/env python3
"""Parse bank statement text into validated statement records.

The grammar is strict (fast-fail): section anchors must be present, every
token must match its lexical shape, each section's declared total must equal
the sum of its transactions and the closing balance must equal the opening
balance plus all transactions and interest. Any mismatch stops the parse;
there is no partial result.

Amounts are integer minor units (cents) throughout.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import date
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from pdf_text import extract_text
from statement_formats import (
    AccountField,
    AmountField,
    Category,
    FormatSpec,
    HeaderField,
    PeriodField,
    PeriodStyle,
    Presence,
    RecordLayout,
    SectionSpec,
    SignPolicy,
    SkipTo,
    TotalMode,
    get_format,
)


logger = logging.getLogger(__name__)

MONTHS = {
    "JAN": 1,
    "FEB": 2,
    "MAR": 3,
    "APR": 4,
    "MAY": 5,
    "JUN": 6,
    "JUL": 7,
    "AUG": 8,
    "SEP": 9,
    "OCT": 10,
    "NOV": 11,
    "DEC": 12,
}
MONTH_NAMES = {
    "JANUARY": 1,
    "FEBRUARY": 2,
    "MARCH": 3,
    "APRIL": 4,
    "MAY": 5,
    "JUNE": 6,
    "JULY": 7,
    "AUGUST": 8,
    "SEPTEMBER": 9,
    "OCTOBER": 10,
    "NOVEMBER": 11,
    "DECEMBER": 12,
}

AMOUNT_PATTERN = r"(?P<sign>[-+])?\$?(?P<whole>\d+(?:,\d+)*)?\.(?P<cents>\d{2})(?!\d)"
AMOUNT_RE = re.compile(AMOUNT_PATTERN)
# Amount closing the first line of an indented record.
LINE_AMOUNT_RE = re.compile(r"\s*" + AMOUNT_PATTERN + r"[ \t]*(?:\n|\Z)")
MONTH_DAY_RE = re.compile(r"(\d+)/(\d+)")
MONTH_DAY_YEAR_RE = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{2})(?!\d)")
MONTH_WORD_DAY_RE = re.compile(r"([A-Za-z]+)\s+(\d+)")
YEAR_SUFFIX_RE = re.compile(r"\s*,?\s*(\d{4})(?!\d)")
ACCOUNT_DIGITS_RE = re.compile(r"\d[\d \t]*")
NEXT_DATE_PATTERN = r"\d+/\d+/\d+"

EXCERPT_WIDTH = 60


def excerpt(text: str, width: int = EXCERPT_WIDTH) -> str:
    if len(text) <= width:
        return repr(text)
    return repr(text[:width]) + "..."


class ParseError(RuntimeError):
    """Base parse failure.

    ``parser`` names the sub-parser that failed, ``remaining`` is the
    unparsed input at that point and ``section`` is filled in when the
    failure happened inside a transaction section.
    """

    kind = "parse"

    def __init__(
        self,
        message: str,
        *,
        parser: str,
        remaining: str = "",
        section: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.parser = parser
        self.remaining = remaining
        self.section = section

    def __str__(self) -> str:
        where = f" in section {self.section!r}" if self.section else ""
        return f"{self.message}{where} [{self.parser}] at {excerpt(self.remaining)}"


class AnchorNotFoundError(ParseError):
    kind = "anchor_not_found"


class LexicalError(ParseError):
    kind = "lexical"


class InvalidDateError(ParseError):
    kind = "invalid_date"


class TotalsMismatchError(ParseError):
    kind = "totals_mismatch"

    def __init__(self, message: str, *, declared: int, computed: int, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.declared = declared
        self.computed = computed


@dataclass(frozen=True)
class Transaction:
    category: Category
    date: date
    description: str
    amount: int
    posting_date: Optional[date] = None
    reference_number: Optional[str] = None
    account_suffix: Optional[str] = None


@dataclass(frozen=True)
class StatementDocument:
    format_name: str
    account_number: str
    start_date: date
    end_date: date
    start_balance: int
    end_balance: int
    transactions: Tuple[Transaction, ...]
    total_interest: int = 0

    @property
    def account_suffix(self) -> str:
        return self.account_number[-4:]


@dataclass(frozen=True)
class SectionResult:
    name: str
    category: Category
    transactions: Tuple[Transaction, ...]
    declared_total: int

    @property
    def computed_total(self) -> int:
        return sum(tx.amount for tx in self.transactions)


@dataclass(frozen=True)
class ParseContext:
    start_date: date
    account_suffix: str


@dataclass
class StatementHeader:
    account_number: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    amounts: Dict[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Lexical primitives: each takes the remaining text and returns (value, rest).
# ---------------------------------------------------------------------------


def expect_ws(text: str, parser: str) -> str:
    stripped = text.lstrip()
    if len(stripped) == len(text):
        raise LexicalError("Expected whitespace", parser=parser, remaining=text)
    return stripped


def expect_literal(text: str, literal: str, parser: str) -> str:
    if not text.startswith(literal):
        raise LexicalError(f"Expected {literal!r}", parser=parser, remaining=text)
    return text[len(literal):]


def to_date(year: int, month: int, day: int, remaining: str = "") -> date:
    try:
        return date(year, month, day)
    except ValueError as exc:
        raise InvalidDateError(
            f"Invalid calendar date {year:04d}-{month:02d}-{day:02d}",
            parser="calendar_date",
            remaining=remaining,
        ) from exc


def month_from_word(word: str) -> Optional[int]:
    upper = word.upper()
    return MONTH_NAMES.get(upper) or MONTHS.get(upper)


def parse_month_day(text: str) -> Tuple[Tuple[int, int], str]:
    m = MONTH_DAY_RE.match(text)
    if not m:
        raise LexicalError("Expected month/day", parser="month_day", remaining=text)
    return (int(m.group(1)), int(m.group(2))), text[m.end():]


def parse_month_word_day(text: str) -> Tuple[Tuple[int, int], str]:
    m = MONTH_WORD_DAY_RE.match(text)
    if not m:
        raise LexicalError("Expected month name and day", parser="month_word_day", remaining=text)
    month = month_from_word(m.group(1))
    if month is None:
        raise LexicalError(f"Unknown month {m.group(1)!r}", parser="month_word_day", remaining=text)
    return (month, int(m.group(2))), text[m.end():]


def parse_month_word_day_year(text: str) -> Tuple[date, str]:
    (month, day), rest = parse_month_word_day(text)
    m = YEAR_SUFFIX_RE.match(rest)
    if not m:
        raise LexicalError("Expected year", parser="month_word_day_year", remaining=rest)
    return to_date(int(m.group(1)), month, day, text), rest[m.end():]


def parse_month_day_year(text: str) -> Tuple[date, str]:
    """Parse ``M/D/YY``. Two-digit years always mean 20YY."""
    m = MONTH_DAY_YEAR_RE.match(text)
    if not m:
        raise LexicalError("Expected month/day/year", parser="month_day_year", remaining=text)
    month, day, year = (int(g) for g in m.groups())
    return to_date(2000 + year, month, day, text), text[m.end():]


def amount_from_match(m: re.Match) -> int:
    whole = int(m.group("whole").replace(",", "")) if m.group("whole") else 0
    value = whole * 100 + int(m.group("cents"))
    return -value if m.group("sign") == "-" else value


def parse_currency_amount(text: str) -> Tuple[int, str]:
    m = AMOUNT_RE.match(text)
    if not m:
        raise LexicalError("Expected currency amount", parser="currency_amount", remaining=text)
    return amount_from_match(m), text[m.end():]


def format_minor_units(value: int) -> str:
    sign = "-" if value < 0 else ""
    whole, cents = divmod(abs(value), 100)
    return f"{sign}${whole:,}.{cents:02d}"


def infer_year(month: int, day: int, reference: date, remaining: str = "") -> date:
    """Resolve a year-less month/day against the statement start date.

    Months earlier than the reference month belong to the following year,
    so a Dec 28 - Jan 27 cycle puts January dates in the new year.
    """
    year = reference.year + 1 if month < reference.month else reference.year
    return to_date(year, month, day, remaining)


def advance_past(text: str, anchor: str) -> str:
    idx = text.find(anchor)
    if idx < 0:
        raise AnchorNotFoundError(f"Anchor {anchor!r} not found", parser="advance_past", remaining=text)
    return text[idx + len(anchor):]


def apply_sign(amount: int, policy: SignPolicy) -> int:
    if policy is SignPolicy.POSITIVE:
        return abs(amount)
    if policy is SignPolicy.NEGATIVE:
        return -abs(amount)
    return amount


def orient_records(transactions: List[Transaction], policy: SignPolicy) -> List[Transaction]:
    """Apply a section's sign policy to its records as a group.

    All records flip together when their printed net has the wrong sign, so
    a reversal printed inside a fee section keeps the opposite sign.
    """
    net = sum(tx.amount for tx in transactions)
    if apply_sign(net, policy) == net:
        return transactions
    return [replace(tx, amount=-tx.amount) for tx in transactions]


# ---------------------------------------------------------------------------
# Transaction records
# ---------------------------------------------------------------------------


@lru_cache(maxsize=None)
def reference_anchor_re(account_suffix: str) -> re.Pattern:
    return re.compile(r"\s+(\d+)\s+(" + re.escape(account_suffix) + r")(?!\d)")


@lru_cache(maxsize=None)
def lookahead_amount_re(footer: str) -> re.Pattern:
    return re.compile(
        r"\s*" + AMOUNT_PATTERN + r"(?=\s*(?:" + NEXT_DATE_PATTERN + "|" + re.escape(footer) + "))"
    )


def is_indented_record_start(text: str, indent: str) -> bool:
    return text.startswith(indent) and MONTH_DAY_RE.match(text, len(indent)) is not None


def parse_reference_record(
    text: str, section: SectionSpec, context: ParseContext
) -> Optional[Tuple[Transaction, str]]:
    if not MONTH_DAY_RE.match(text):
        return None
    (month, day), rest = parse_month_day(text)
    tx_date = infer_year(month, day, context.start_date, text)
    rest = expect_ws(rest, "reference_record")
    (month, day), rest = parse_month_day(rest)
    posting_date = infer_year(month, day, context.start_date, rest)
    rest = expect_ws(rest, "reference_record")

    # The description runs up to the first "<reference> <account suffix>" pair.
    m = reference_anchor_re(context.account_suffix).search(rest)
    if not m:
        raise LexicalError(
            f"Reference number followed by account suffix {context.account_suffix!r} not found",
            parser="reference_record",
            remaining=rest,
        )
    description = rest[: m.start()]
    reference_number, account_suffix = m.group(1), m.group(2)
    rest = expect_ws(rest[m.end():], "reference_record")
    amount, rest = parse_currency_amount(rest)
    rest = expect_literal(rest, section.record.terminator, "reference_record")
    tx = Transaction(
        category=section.category,
        date=tx_date,
        posting_date=posting_date,
        description=description,
        reference_number=reference_number,
        account_suffix=account_suffix,
        amount=amount,
    )
    return tx, rest


def parse_lookahead_record(
    text: str, section: SectionSpec, context: ParseContext
) -> Optional[Tuple[Transaction, str]]:
    if not MONTH_DAY_YEAR_RE.match(text):
        return None
    tx_date, rest = parse_month_day_year(text)
    rest = expect_ws(rest, "lookahead_record")

    # First amount that is followed by the next record's date or the footer.
    m = lookahead_amount_re(section.footer).search(rest)
    if not m:
        raise LexicalError(
            f"No amount followed by a date or {section.footer!r}",
            parser="lookahead_record",
            remaining=rest,
        )
    description = rest[: m.start()]
    amount = amount_from_match(m)
    rest = expect_ws(rest[m.end():], "lookahead_record")
    tx = Transaction(
        category=section.category,
        date=tx_date,
        description=description,
        amount=amount,
    )
    return tx, rest


def parse_indented_record(
    text: str, section: SectionSpec, context: ParseContext
) -> Optional[Tuple[Transaction, str]]:
    indent = section.record.indent
    if not is_indented_record_start(text, indent):
        return None
    (month, day), rest = parse_month_day(text[len(indent):])
    tx_date = infer_year(month, day, context.start_date, text)
    rest = expect_ws(rest, "indented_record")

    m = LINE_AMOUNT_RE.search(rest)
    if not m:
        raise LexicalError("Expected amount at end of line", parser="indented_record", remaining=rest)
    lines = [rest[: m.start()]]
    amount = amount_from_match(m)
    rest = rest[m.end():]

    # Continuation lines run until a blank line or the next record.
    while rest and not is_indented_record_start(rest, indent):
        line, _sep, after = rest.partition("\n")
        if not line.strip():
            break
        lines.append(line.strip())
        rest = after

    tx = Transaction(
        category=section.category,
        date=tx_date,
        description="\n".join(lines),
        amount=amount,
    )
    return tx, rest


RECORD_PARSERS = {
    RecordLayout.REFERENCE: parse_reference_record,
    RecordLayout.AMOUNT_LOOKAHEAD: parse_lookahead_record,
    RecordLayout.INDENTED: parse_indented_record,
}


def parse_record(
    text: str, section: SectionSpec, context: ParseContext
) -> Optional[Tuple[Transaction, str]]:
    """Parse one transaction at the start of ``text``.

    Amounts are as printed; the section applies its sign policy. Returns
    None when the text does not start with a record of this layout.
    Once a record start has matched, malformed content raises.
    """
    return RECORD_PARSERS[section.record.layout](text, section, context)


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


def section_header_re(section: SectionSpec) -> re.Pattern:
    return re.compile(re.escape(section.header) + r"\s*" + re.escape(section.column_heading or ""))


def section_present(text: str, section: SectionSpec) -> bool:
    if section.presence is Presence.IMMEDIATE:
        return text.lstrip().startswith(section.header)
    if section.column_heading:
        return section_header_re(section).search(text) is not None
    return section.header in text


def locate_section(text: str, section: SectionSpec) -> str:
    if not section.column_heading:
        return advance_past(text, section.header)
    m = section_header_re(section).search(text)
    if not m:
        raise AnchorNotFoundError(
            f"Section header {section.header!r} with columns {section.column_heading!r} not found",
            parser="section_header",
            remaining=text,
        )
    return text[m.end():].lstrip()


def parse_declared_total(
    text: str, section: SectionSpec, summary: Dict[str, int]
) -> Tuple[int, str]:
    total = section.total
    if total.mode is TotalMode.SUMMARY:
        return summary[total.field], text
    if total.mode is TotalMode.FOOTER:
        rest = expect_literal(text.lstrip(), section.footer, "section_footer")
    else:
        rest = advance_past(text, total.anchor)
    amount, rest = parse_currency_amount(rest.lstrip())
    if total.terminator:
        rest = expect_literal(rest, total.terminator, "section_total")
    return amount, rest


def parse_section(
    text: str,
    section: SectionSpec,
    context: ParseContext,
    summary: Optional[Dict[str, int]] = None,
) -> Tuple[SectionResult, str]:
    """Parse one transaction section and check it against its declared total."""
    try:
        rest = locate_section(text, section)
        transactions: List[Transaction] = []
        while True:
            parsed = parse_record(rest, section, context)
            if parsed is None:
                break
            tx, rest = parsed
            transactions.append(tx)

        if len(transactions) < section.min_records:
            raise LexicalError(
                f"Expected at least {section.min_records} transaction(s), found {len(transactions)}",
                parser="parse_section",
                remaining=rest,
            )

        declared, rest = parse_declared_total(rest, section, summary or {})
        declared = apply_sign(declared, section.sign)
        result = SectionResult(
            name=section.name,
            category=section.category,
            transactions=tuple(orient_records(transactions, section.sign)),
            declared_total=declared,
        )
        if result.computed_total != declared:
            raise TotalsMismatchError(
                f"Section total mismatch: transactions={format_minor_units(result.computed_total)} "
                f"declared={format_minor_units(declared)}",
                declared=declared,
                computed=result.computed_total,
                parser="section_total",
                remaining=rest,
            )
    except ParseError as exc:
        if exc.section is None:
            exc.section = section.name
        raise

    logger.debug(
        "Section %r: %d transaction(s), total %s",
        section.name,
        len(result.transactions),
        format_minor_units(declared),
    )
    return result, rest


# ---------------------------------------------------------------------------
# Statement header fields
# ---------------------------------------------------------------------------


def parse_account_number(text: str) -> Tuple[str, str]:
    m = ACCOUNT_DIGITS_RE.match(text.lstrip())
    if not m:
        raise LexicalError("Expected account number", parser="account_number", remaining=text)
    digits = re.sub(r"\D", "", m.group(0))
    return digits, text.lstrip()[m.end():]


def expect_separator(text: str, separator: str) -> str:
    m = re.match(r"\s*" + re.escape(separator) + r"\s*", text)
    if not m:
        raise LexicalError(f"Expected {separator!r}", parser="period_separator", remaining=text)
    return text[m.end():]


def parse_period(text: str, period: PeriodField) -> Tuple[Tuple[date, date], str]:
    if period.anchor:
        text = advance_past(text, period.anchor)
    rest = text.lstrip()

    if period.style is PeriodStyle.MONTH_WORD_RANGE:
        (start_month, start_day), rest = parse_month_word_day(rest)
        rest = expect_separator(rest, period.separator)
        (end_month, end_day), rest = parse_month_word_day(rest)
        m = YEAR_SUFFIX_RE.match(rest)
        if not m:
            raise LexicalError("Expected statement year", parser="statement_period", remaining=rest)
        end_year = int(m.group(1))
        # The printed year is the closing year; a December start belongs to the year before.
        start_year = end_year - 1 if start_month > end_month else end_year
        start = to_date(start_year, start_month, start_day, text)
        end = to_date(end_year, end_month, end_day, text)
        rest = rest[m.end():]
    elif period.style is PeriodStyle.MONTH_WORD_YEAR_RANGE:
        start, rest = parse_month_word_day_year(rest)
        rest = expect_separator(rest, period.separator)
        end, rest = parse_month_word_day_year(rest)
    else:
        start, rest = parse_month_day_year(rest)
        rest = expect_separator(rest, period.separator)
        end, rest = parse_month_day_year(rest)

    if end < start:
        raise InvalidDateError(
            f"Statement period ends before it starts: {start.isoformat()} - {end.isoformat()}",
            parser="statement_period",
            remaining=text,
        )
    return (start, end), rest


def parse_amount_field(text: str, amount_field: AmountField) -> Tuple[int, str]:
    rest = advance_past(text, amount_field.anchor).lstrip()
    if amount_field.dated:
        _, rest = parse_month_word_day_year(rest)
        rest = rest.lstrip()
    return parse_currency_amount(rest)


def parse_fields(text: str, fields: Sequence[HeaderField], header: StatementHeader) -> str:
    rest = text
    for item in fields:
        if isinstance(item, SkipTo):
            rest = advance_past(rest, item.anchor)
        elif isinstance(item, AccountField):
            rest = advance_past(rest, item.anchor)
            header.account_number, rest = parse_account_number(rest)
        elif isinstance(item, PeriodField):
            (header.start_date, header.end_date), rest = parse_period(rest, item)
        elif isinstance(item, AmountField):
            header.amounts[item.name], rest = parse_amount_field(rest, item)
        else:
            raise TypeError(f"Unsupported header field {item!r}")
    return rest


# ---------------------------------------------------------------------------
# Statement
# ---------------------------------------------------------------------------


def validate_statement(statement: StatementDocument) -> None:
    transactions_total = sum(tx.amount for tx in statement.transactions)
    expected = statement.end_balance - statement.start_balance
    if expected != transactions_total + statement.total_interest:
        raise TotalsMismatchError(
            f"Statement balance mismatch: end-start={format_minor_units(expected)} "
            f"transactions={format_minor_units(transactions_total)} "
            f"interest={format_minor_units(statement.total_interest)}",
            declared=expected,
            computed=transactions_total + statement.total_interest,
            parser="statement_balance",
        )


def parse_statement_text(text: str, spec: Union[FormatSpec, str]) -> StatementDocument:
    if isinstance(spec, str):
        spec = get_format(spec)

    header = StatementHeader()
    rest = parse_fields(text, spec.header, header)
    context = ParseContext(start_date=header.start_date, account_suffix=header.account_number[-4:])

    transactions: List[Transaction] = []
    for section in spec.sections:
        if section.optional and not section_present(rest, section):
            if section.total.mode is TotalMode.SUMMARY:
                declared = apply_sign(header.amounts[section.total.field], section.sign)
                if declared != 0:
                    raise TotalsMismatchError(
                        f"Section missing but summary declares {format_minor_units(declared)}",
                        declared=declared,
                        computed=0,
                        parser="section_total",
                        remaining=rest,
                        section=section.name,
                    )
            logger.debug("Optional section %r not present", section.name)
            continue
        result, rest = parse_section(rest, section, context, header.amounts)
        transactions.extend(result.transactions)

    parse_fields(rest, spec.trailer, header)

    statement = StatementDocument(
        format_name=spec.name,
        account_number=header.account_number,
        start_date=header.start_date,
        end_date=header.end_date,
        start_balance=header.amounts["start_balance"],
        end_balance=header.amounts["end_balance"],
        transactions=tuple(transactions),
        total_interest=header.amounts.get("interest", 0),
    )
    validate_statement(statement)
    logger.info(
        "Parsed %s statement for account ending %s: %s to %s, %d transaction(s)",
        spec.name,
        statement.account_suffix,
        statement.start_date.isoformat(),
        statement.end_date.isoformat(),
        len(statement.transactions),
    )
    return statement


def parse_statement_pdf(
    pdf_path: Union[str, Path],
    format_name: str,
    backend: str = "pypdf",
    layout: Optional[bool] = None,
) -> StatementDocument:
    """Extract text from ``pdf_path`` and parse it with the named format.

    ``layout`` defaults to the format's preferred extraction mode.
    """
    spec = get_format(format_name)
    text = extract_text(pdf_path, layout=spec.layout if layout is None else layout, backend=backend)
    return parse_statement_text(text, spec)


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------


def transaction_to_json(tx: Transaction) -> dict:
    return {
        "category": tx.category.value,
        "date": tx.date.isoformat(),
        "posting_date": tx.posting_date.isoformat() if tx.posting_date is not None else None,
        "description": tx.description,
        "reference_number": tx.reference_number,
        "account_suffix": tx.account_suffix,
        "amount": tx.amount,
    }


def statement_to_json(statement: StatementDocument) -> dict:
    counts: Dict[str, int] = {}
    for tx in statement.transactions:
        counts[tx.category.value] = counts.get(tx.category.value, 0) + 1

    return {
        "format": statement.format_name,
        "account_number": statement.account_number,
        "start_date": statement.start_date.isoformat(),
        "end_date": statement.end_date.isoformat(),
        "start_balance": statement.start_balance,
        "end_balance": statement.end_balance,
        "total_interest": statement.total_interest,
        "formatted": {
            "start_balance": format_minor_units(statement.start_balance),
            "end_balance": format_minor_units(statement.end_balance),
            "total_interest": format_minor_units(statement.total_interest),
        },
        "transaction_counts": counts,
        "transactions": [transaction_to_json(tx) for tx in statement.transactions],
    }
