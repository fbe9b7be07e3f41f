"""Statement format tables.

Each supported statement template is described here as data: the literal
anchors that delimit its header fields and transaction sections, the record
layout used inside each section, where each section's declared total lives
and the sign policy applied to its amounts. The grammar engine in
``bank_statement_parser`` interprets these tables; adding a template revision
should only need a new or edited table.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union


class Category(str, Enum):
    CREDIT = "credit"
    PURCHASE = "purchase"
    FEE = "fee"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class SignPolicy(str, Enum):
    # Applied to a section's net, not per record: a reversal printed in a fee
    # section keeps the opposite sign.
    AS_PRINTED = "as_printed"
    POSITIVE = "positive"
    NEGATIVE = "negative"


class RecordLayout(str, Enum):
    # M/D M/D description <ref> <acct suffix> amount, blank-line terminated
    REFERENCE = "reference"
    # M/D/YY description amount, amount followed by a date or the footer
    AMOUNT_LOOKAHEAD = "amount_lookahead"
    # indented M/D description amount, then continuation lines
    INDENTED = "indented"


class TotalMode(str, Enum):
    SEARCH = "search"
    FOOTER = "footer"
    SUMMARY = "summary"


class Presence(str, Enum):
    IMMEDIATE = "immediate"
    ANYWHERE = "anywhere"


class PeriodStyle(str, Enum):
    MONTH_WORD_RANGE = "month_word_range"  # Jan 1 - Jan 31, 2024
    MONTH_WORD_YEAR_RANGE = "month_word_year_range"  # January 1, 2024 to January 31, 2024
    NUMERIC_RANGE = "numeric_range"  # 12/28/23 - 01/27/24


@dataclass(frozen=True)
class SkipTo:
    anchor: str


@dataclass(frozen=True)
class AccountField:
    anchor: str


@dataclass(frozen=True)
class PeriodField:
    style: PeriodStyle
    separator: str
    anchor: str = ""


@dataclass(frozen=True)
class AmountField:
    """A labelled amount, e.g. ``Previous Balance $100.00``.

    ``dated`` amounts carry a ``Month D, YYYY`` date between the label and
    the amount (``Beginning balance on January 1, 2024 $1,000.00``).
    """

    name: str
    anchor: str
    dated: bool = False


HeaderField = Union[SkipTo, AccountField, PeriodField, AmountField]


@dataclass(frozen=True)
class RecordSpec:
    layout: RecordLayout
    terminator: str = ""
    indent: str = ""


@dataclass(frozen=True)
class TotalSpec:
    mode: TotalMode
    anchor: str = ""
    terminator: str = ""
    field: str = ""


@dataclass(frozen=True)
class SectionSpec:
    name: str
    header: str
    category: Category
    record: RecordSpec
    total: TotalSpec
    column_heading: Optional[str] = None
    footer: Optional[str] = None
    optional: bool = False
    presence: Presence = Presence.IMMEDIATE
    min_records: int = 0
    sign: SignPolicy = SignPolicy.AS_PRINTED

    def __post_init__(self) -> None:
        if self.record.layout is RecordLayout.AMOUNT_LOOKAHEAD and not self.footer:
            raise ValueError(f"Section {self.name!r}: amount lookahead records need a footer")
        if self.total.mode is TotalMode.FOOTER and not self.footer:
            raise ValueError(f"Section {self.name!r}: footer total without a footer")
        if self.total.mode is TotalMode.SEARCH and not self.total.anchor:
            raise ValueError(f"Section {self.name!r}: search total without an anchor")
        if self.total.mode is TotalMode.SUMMARY and not self.total.field:
            raise ValueError(f"Section {self.name!r}: summary total without a field name")


@dataclass(frozen=True)
class FormatSpec:
    name: str
    description: str
    layout: bool
    header: Tuple[HeaderField, ...]
    sections: Tuple[SectionSpec, ...]
    trailer: Tuple[AmountField, ...] = ()

    def __post_init__(self) -> None:
        kinds = [type(item) for item in self.header]
        if kinds.count(AccountField) != 1 or kinds.count(PeriodField) != 1:
            raise ValueError(f"Format {self.name!r} needs exactly one account and one period field")
        header_amounts = {item.name for item in self.header if isinstance(item, AmountField)}
        all_amounts = header_amounts | {item.name for item in self.trailer}
        missing = {"start_balance", "end_balance"} - all_amounts
        if missing:
            raise ValueError(f"Format {self.name!r} is missing amount fields: {sorted(missing)}")
        for section in self.sections:
            # Summary totals are compared while sections are parsed, so they
            # must be read before the first section.
            if section.total.mode is TotalMode.SUMMARY and section.total.field not in header_amounts:
                raise ValueError(
                    f"Format {self.name!r}: section {section.name!r} refers to unknown "
                    f"summary field {section.total.field!r}"
                )


BLANK_LINE = "\n\n"

_BOFA_CREDIT_RECORD = RecordSpec(layout=RecordLayout.REFERENCE, terminator=BLANK_LINE)
_BOFA_CREDIT_TOTAL = TotalSpec(mode=TotalMode.SEARCH, anchor="FOR THIS PERIOD", terminator=BLANK_LINE)

BOFA_CREDIT = FormatSpec(
    name="bofa_credit",
    description="Bank of America credit card statement (plain text extraction)",
    layout=False,
    header=(
        AccountField(anchor="Account# "),
        PeriodField(style=PeriodStyle.MONTH_WORD_RANGE, separator="-"),
        AmountField(name="start_balance", anchor="Previous Balance "),
        AmountField(name="end_balance", anchor="New Balance Total "),
    ),
    sections=(
        SectionSpec(
            name="Payments and Other Credits",
            header="Payments and Other Credits" + BLANK_LINE,
            category=Category.CREDIT,
            record=_BOFA_CREDIT_RECORD,
            total=_BOFA_CREDIT_TOTAL,
            min_records=1,
        ),
        SectionSpec(
            name="Purchases and Adjustments",
            header="Purchases and Adjustments" + BLANK_LINE,
            category=Category.PURCHASE,
            record=_BOFA_CREDIT_RECORD,
            total=_BOFA_CREDIT_TOTAL,
            min_records=1,
        ),
        SectionSpec(
            name="Fees",
            header="Fees" + BLANK_LINE,
            category=Category.FEE,
            record=_BOFA_CREDIT_RECORD,
            total=_BOFA_CREDIT_TOTAL,
            optional=True,
            presence=Presence.IMMEDIATE,
            min_records=1,
            sign=SignPolicy.POSITIVE,
        ),
    ),
    trailer=(AmountField(name="interest", anchor="TOTAL INTEREST CHARGED FOR THIS PERIOD"),),
)

_BOFA_DEBIT_RECORD = RecordSpec(layout=RecordLayout.AMOUNT_LOOKAHEAD)
_FOOTER_TOTAL = TotalSpec(mode=TotalMode.FOOTER)
_BOFA_DEBIT_COLUMNS = "Date Description Amount"

BOFA_DEBIT = FormatSpec(
    name="bofa_debit",
    description="Bank of America checking account statement (plain text extraction)",
    layout=False,
    header=(
        AccountField(anchor="Account # "),
        PeriodField(style=PeriodStyle.MONTH_WORD_YEAR_RANGE, separator="to", anchor="!"),
        AmountField(name="start_balance", anchor="Beginning balance on ", dated=True),
        AmountField(name="end_balance", anchor="Ending balance on ", dated=True),
    ),
    sections=(
        SectionSpec(
            name="Deposits and other additions",
            header="Deposits and other additions",
            column_heading=_BOFA_DEBIT_COLUMNS,
            footer="Total deposits and other additions",
            category=Category.DEPOSIT,
            record=_BOFA_DEBIT_RECORD,
            total=_FOOTER_TOTAL,
        ),
        SectionSpec(
            name="Withdrawals and other subtractions",
            header="Withdrawals and other subtractions",
            column_heading=_BOFA_DEBIT_COLUMNS,
            footer="Total withdrawals and other subtractions",
            category=Category.WITHDRAWAL,
            record=_BOFA_DEBIT_RECORD,
            total=_FOOTER_TOTAL,
        ),
        SectionSpec(
            name="Service fees",
            header="Service fees",
            column_heading=_BOFA_DEBIT_COLUMNS,
            footer="Total service fees",
            category=Category.FEE,
            record=_BOFA_DEBIT_RECORD,
            total=_FOOTER_TOTAL,
            optional=True,
            presence=Presence.ANYWHERE,
            sign=SignPolicy.NEGATIVE,
        ),
    ),
)

_CHASE_RECORD = RecordSpec(layout=RecordLayout.INDENTED, indent="  ")

CHASE_CREDIT = FormatSpec(
    name="chase_credit",
    description="Chase credit card statement (layout-preserving text extraction)",
    layout=True,
    header=(
        SkipTo(anchor="ACCOUNT SUMMARY"),
        AccountField(anchor="Account Number: "),
        AmountField(name="start_balance", anchor="Previous Balance"),
        AmountField(name="credits_total", anchor="Payment, Credits"),
        AmountField(name="purchases_total", anchor="Purchases"),
        AmountField(name="fees_total", anchor="Fees Charged"),
        AmountField(name="interest", anchor="Interest Charged"),
        AmountField(name="end_balance", anchor="New Balance"),
        PeriodField(style=PeriodStyle.NUMERIC_RANGE, separator="-", anchor="Opening/Closing Date"),
        SkipTo(anchor="ACCOUNT ACTIVITY"),
    ),
    sections=(
        SectionSpec(
            name="PAYMENTS AND OTHER CREDITS",
            header="PAYMENTS AND OTHER CREDITS" + BLANK_LINE,
            category=Category.CREDIT,
            record=_CHASE_RECORD,
            total=TotalSpec(mode=TotalMode.SUMMARY, field="credits_total"),
        ),
        SectionSpec(
            name="PURCHASE",
            header="PURCHASE" + BLANK_LINE,
            category=Category.PURCHASE,
            record=_CHASE_RECORD,
            total=TotalSpec(mode=TotalMode.SUMMARY, field="purchases_total"),
        ),
        SectionSpec(
            name="FEES CHARGED",
            header="FEES CHARGED" + BLANK_LINE,
            category=Category.FEE,
            record=_CHASE_RECORD,
            total=TotalSpec(mode=TotalMode.SUMMARY, field="fees_total"),
            optional=True,
            presence=Presence.ANYWHERE,
            sign=SignPolicy.POSITIVE,
        ),
    ),
)


FORMATS: Dict[str, FormatSpec] = {spec.name: spec for spec in (BOFA_CREDIT, BOFA_DEBIT, CHASE_CREDIT)}


def available_formats() -> List[str]:
    return sorted(FORMATS)


def get_format(name: str) -> FormatSpec:
    try:
        return FORMATS[name]
    except KeyError:
        raise ValueError(
            f"Unknown statement format {name!r}; expected one of {', '.join(available_formats())}"
        ) from None
