import dataclasses
from datetime import date

import pytest

from bank_statement_parser import (
    AnchorNotFoundError,
    InvalidDateError,
    LexicalError,
    StatementDocument,
    TotalsMismatchError,
    parse_statement_text,
    statement_to_json,
    validate_statement,
)
from statement_formats import (
    AccountField,
    AmountField,
    BOFA_CREDIT,
    Category,
    FormatSpec,
    available_formats,
    get_format,
)
from statement_texts import (
    SERVICE_FEES_BLOCK,
    bofa_credit_billed_text,
    bofa_credit_text,
    bofa_debit_text,
    chase_credit_text,
)


def amounts_by_category(statement):
    out = {}
    for tx in statement.transactions:
        out.setdefault(tx.category, []).append(tx.amount)
    return out


def test_bofa_credit_statement():
    statement = parse_statement_text(bofa_credit_text(), "bofa_credit")
    assert statement.format_name == "bofa_credit"
    assert statement.account_number == "1234567890123456"
    assert statement.account_suffix == "3456"
    assert statement.start_date == date(2024, 1, 1)
    assert statement.end_date == date(2024, 1, 31)
    assert statement.start_balance == 10000
    assert statement.end_balance == 5000
    assert statement.total_interest == 0

    credits = [tx for tx in statement.transactions if tx.category is Category.CREDIT]
    assert len(credits) == 1
    assert credits[0].amount == 15000
    assert credits[0].description == "PAYMENT - THANK YOU"
    assert credits[0].reference_number == "83920"
    assert credits[0].date == date(2024, 1, 5)
    assert credits[0].posting_date == date(2024, 1, 6)
    assert amounts_by_category(statement)[Category.PURCHASE] == [-20000]


def test_bofa_credit_section_total_mismatch():
    with pytest.raises(TotalsMismatchError) as excinfo:
        parse_statement_text(bofa_credit_text(credits_total="$140.00"), "bofa_credit")
    err = excinfo.value
    assert err.section == "Payments and Other Credits"
    assert err.declared == 14000
    assert err.computed == 15000


def test_bofa_credit_fees_and_interest():
    text = bofa_credit_text(
        fees=(("01/15 01/15", "LATE FEE", "77001", "35.00"),),
        fees_total="$35.00",
        interest="$12.34",
        new="$97.34",
    )
    statement = parse_statement_text(text, BOFA_CREDIT)
    assert amounts_by_category(statement)[Category.FEE] == [3500]
    assert statement.total_interest == 1234


def test_bofa_credit_signs_as_billed():
    statement = parse_statement_text(bofa_credit_billed_text(), "bofa_credit")
    assert amounts_by_category(statement) == {
        Category.CREDIT: [-15000],
        Category.PURCHASE: [20000, -2500],
        Category.FEE: [3500],
    }
    assert statement.total_interest == 120
    assert statement.end_balance == 16120


def test_bofa_credit_december_to_january_cycle():
    text = bofa_credit_text(
        period="Dec 28 - Jan 27, 2024",
        credits=(("12/30 12/31", "PAYMENT - THANK YOU", "83920", "150.00"),),
    )
    statement = parse_statement_text(text, "bofa_credit")
    assert statement.start_date == date(2023, 12, 28)
    assert statement.end_date == date(2024, 1, 27)
    dates = [tx.date for tx in statement.transactions]
    assert dates == [date(2023, 12, 30), date(2024, 1, 10)]


def test_bofa_credit_missing_account_anchor():
    text = bofa_credit_text().replace("Account# ", "Acct ")
    with pytest.raises(AnchorNotFoundError):
        parse_statement_text(text, "bofa_credit")


def test_bofa_credit_invalid_transaction_date():
    text = bofa_credit_text(credits=(("02/30 02/30", "PAYMENT", "83920", "150.00"),))
    with pytest.raises(InvalidDateError):
        parse_statement_text(text, "bofa_credit")


def test_bofa_credit_malformed_amount():
    text = bofa_credit_text(credits=(("01/05 01/06", "PAYMENT", "83920", "150"),))
    with pytest.raises(LexicalError) as excinfo:
        parse_statement_text(text, "bofa_credit")
    assert excinfo.value.section == "Payments and Other Credits"


@pytest.mark.parametrize("purchase, total", [("-201.00", "-$201.00"), ("-199.99", "-$199.99")])
def test_statement_balance_must_reconcile(purchase, total):
    text = bofa_credit_text(
        purchases=(("01/10 01/11", "GROCERY STORE #12", "55102", purchase),),
        purchases_total=total,
    )
    with pytest.raises(TotalsMismatchError) as excinfo:
        parse_statement_text(text, "bofa_credit")
    assert excinfo.value.parser == "statement_balance"
    assert excinfo.value.section is None


def test_bofa_debit_statement():
    statement = parse_statement_text(bofa_debit_text(), "bofa_debit")
    assert statement.account_number == "000011112222"
    assert statement.start_date == date(2024, 1, 1)
    assert statement.end_date == date(2024, 1, 31)
    assert statement.start_balance == 100000
    assert statement.end_balance == 215450

    by_category = amounts_by_category(statement)
    assert by_category[Category.DEPOSIT] == [250000]
    assert by_category[Category.WITHDRAWAL] == [-4550, -130000]
    assert Category.FEE not in by_category

    transfer = statement.transactions[2]
    assert transfer.date == date(2024, 1, 20)
    assert transfer.description == "ONLINE TRANSFER TO SAV\nCONF# 12345"


def test_bofa_debit_service_fees():
    text = bofa_debit_text(service_fees=SERVICE_FEES_BLOCK, ending="$2,142.50")
    statement = parse_statement_text(text, "bofa_debit")
    assert amounts_by_category(statement)[Category.FEE] == [-1200]


def test_bofa_debit_ending_balance_mismatch():
    with pytest.raises(TotalsMismatchError) as excinfo:
        parse_statement_text(bofa_debit_text(ending="$2,154.51"), "bofa_debit")
    assert excinfo.value.parser == "statement_balance"
    assert excinfo.value.declared == 115451
    assert excinfo.value.computed == 115450


def test_bofa_debit_withdrawal_total_mismatch():
    with pytest.raises(TotalsMismatchError) as excinfo:
        parse_statement_text(bofa_debit_text(withdrawal="-1,300.01"), "bofa_debit")
    assert excinfo.value.section == "Withdrawals and other subtractions"


def test_chase_credit_statement():
    statement = parse_statement_text(chase_credit_text(), "chase_credit")
    assert statement.account_number == "4266841200007788"
    assert statement.start_date == date(2023, 12, 28)
    assert statement.end_date == date(2024, 1, 27)
    assert statement.start_balance == 100000
    assert statement.end_balance == 116234

    dates = [tx.date for tx in statement.transactions]
    assert dates == [date(2024, 1, 5), date(2023, 12, 30), date(2024, 1, 12)]
    assert amounts_by_category(statement) == {
        Category.CREDIT: [-15000],
        Category.PURCHASE: [1234, 30000],
    }
    assert statement.transactions[2].description == (
        "LUFTHANSA FRANKFURT\nEURO\n277.78 X 1.08 (EXCHG RATE)"
    )


def test_chase_credit_fees_section():
    text = chase_credit_text(
        fees_charged="$39.00",
        new="$1,201.34",
        fee_rows="  01/27     LATE FEE                                  39.00\n",
    )
    statement = parse_statement_text(text, "chase_credit")
    assert amounts_by_category(statement)[Category.FEE] == [3900]


def test_chase_credit_summary_declares_missing_fees():
    text = chase_credit_text(fees_charged="$39.00", new="$1,201.34")
    with pytest.raises(TotalsMismatchError) as excinfo:
        parse_statement_text(text, "chase_credit")
    assert excinfo.value.section == "FEES CHARGED"
    assert excinfo.value.declared == 3900
    assert excinfo.value.computed == 0


def test_statement_is_immutable():
    statement = parse_statement_text(chase_credit_text(), "chase_credit")
    with pytest.raises(dataclasses.FrozenInstanceError):
        statement.end_balance = 0


def test_validate_statement_counts_interest():
    statement = StatementDocument(
        format_name="bofa_credit",
        account_number="1234",
        start_date=date(2024, 1, 1),
        end_date=date(2024, 1, 31),
        start_balance=0,
        end_balance=500,
        transactions=(),
        total_interest=500,
    )
    validate_statement(statement)
    with pytest.raises(TotalsMismatchError):
        validate_statement(dataclasses.replace(statement, total_interest=0))


def test_statement_json():
    data = statement_to_json(parse_statement_text(bofa_credit_text(), "bofa_credit"))
    assert data["format"] == "bofa_credit"
    assert data["start_date"] == "2024-01-01"
    assert data["end_balance"] == 5000
    assert data["formatted"]["start_balance"] == "$100.00"
    assert data["transaction_counts"] == {"credit": 1, "purchase": 1}
    assert data["transactions"][0] == {
        "category": "credit",
        "date": "2024-01-05",
        "posting_date": "2024-01-06",
        "description": "PAYMENT - THANK YOU",
        "reference_number": "83920",
        "account_suffix": "3456",
        "amount": 15000,
    }


def test_format_registry():
    assert available_formats() == ["bofa_credit", "bofa_debit", "chase_credit"]
    assert get_format("chase_credit").layout is True
    with pytest.raises(ValueError):
        get_format("hsbc")


def test_format_needs_period_field():
    with pytest.raises(ValueError):
        FormatSpec(
            name="broken",
            description="no period",
            layout=False,
            header=(
                AccountField(anchor="Account "),
                AmountField(name="start_balance", anchor="Start "),
                AmountField(name="end_balance", anchor="End "),
            ),
            sections=(),
        )
