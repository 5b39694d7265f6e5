from __future__ import annotations

from decimal import Decimal
from io import BytesIO

import pandas as pd
import pytest

from ncu_portal.admin.bulk_import import (
    ImportFileError,
    ImportParseError,
    ImportResult,
    check_upload,
    decode_upload,
    error_report_csv,
    error_report_excel,
    parse_csv_data,
    template_csv,
    validate_row,
)


def test_valid_rows_are_all_included() -> None:
    text = (
        "full_name,email,initial_balance,role,status\n"
        "Awa Jallow,awa@example.com,100,regular,active\n"
        "Lamin Ceesay,lamin@example.com,0,admin,inactive\n"
        "Fatou Sowe,fatou@example.com,25.75,,\n"
    )
    rows = parse_csv_data(text)

    assert len(rows) == 3
    assert all(r.is_valid and r.include for r in rows)
    assert [r.row_id for r in rows] == [0, 1, 2]
    assert rows[2].data == {
        "full_name": "Fatou Sowe",
        "email": "fatou@example.com",
        "initial_balance": Decimal("25.75"),
        "role": "regular",
        "status": "active",
    }


def test_example_payload_flags_bad_format_and_duplicate() -> None:
    rows = parse_csv_data("Full Name,Email,Balance\nA,a@x.com,100\nB,bad-email,50\nA2,a@x.com,10")

    assert rows[0].is_valid
    assert rows[1].errors == ["Invalid email format"]
    assert rows[2].errors == ["Duplicate email in import file"]
    assert [r.include for r in rows] == [True, False, False]


def test_duplicates_are_case_insensitive_and_flag_every_repeat() -> None:
    rows = parse_csv_data(
        "name,email\nOne,Same@Example.com\nTwo,same@example.com\nThree,SAME@example.COM\n"
    )

    assert rows[0].is_valid
    assert not rows[1].is_valid and not rows[2].is_valid
    assert rows[2].errors == ["Duplicate email in import file"]


def test_known_users_flagged_on_first_occurrence() -> None:
    rows = parse_csv_data("name,email\nOld Member,Existing@Example.com\n", ["existing@example.com"])

    assert rows[0].errors == ["Email already exists in the system"]
    assert rows[0].include is False


def test_missing_name_and_email_are_both_reported() -> None:
    rows = parse_csv_data("name,email,balance\n,,5\n")

    assert rows[0].errors == ["Name is required", "Email is required"]


def test_every_failed_check_is_listed_in_order() -> None:
    rows = parse_csv_data("name,email,balance,role,status\n,nope,-3,boss,gone\n")

    assert rows[0].errors == [
        "Name is required",
        "Invalid email format",
        "Balance must be a positive number",
        "Role must be 'regular' or 'admin'",
        "Status must be 'active' or 'inactive'",
    ]


@pytest.mark.parametrize("balance", ["abc", "-0.01", "NaN", "Infinity"])
def test_bad_balances_rejected(balance) -> None:
    rows = parse_csv_data(f"name,email,balance\nA,a@x.com,{balance}\n")

    assert rows[0].errors == ["Balance must be a positive number"]
    assert rows[0].data["initial_balance"] == Decimal("0")


def test_role_and_status_are_case_insensitive() -> None:
    rows = parse_csv_data("name,email,role,status\nA,a@x.com,Admin,INACTIVE\n")

    assert rows[0].is_valid
    assert rows[0].data["role"] == "admin"
    assert rows[0].data["status"] == "inactive"


def test_columns_located_by_header_text_not_position() -> None:
    rows = parse_csv_data(
        "Account Status, Email Address ,Opening Balance,Member Name\r\n"
        "inactive,m@x.com,12.5,Musa\r\n"
    )

    assert rows[0].is_valid
    assert rows[0].data["full_name"] == "Musa"
    assert rows[0].data["email"] == "m@x.com"
    assert rows[0].data["initial_balance"] == Decimal("12.5")
    assert rows[0].data["status"] == "inactive"


def test_short_rows_fall_back_to_defaults() -> None:
    rows = parse_csv_data("name,email,balance,role\nA,a@x.com\n")

    assert rows[0].is_valid
    assert rows[0].data["initial_balance"] == Decimal("0")
    assert rows[0].data["role"] == "regular"


@pytest.mark.parametrize("text", ["", "name,email", "name,email\n\n   \n"])
def test_payload_without_data_rows_is_a_parse_error(text) -> None:
    with pytest.raises(ImportParseError):
        parse_csv_data(text)


def test_validate_row_records_first_email() -> None:
    seen = set()
    record, errors = validate_row("A", "a@x.com", "", "", "", seen, set())

    assert errors == []
    assert seen == {"a@x.com"}
    assert record["role"] == "regular"
    assert record["status"] == "active"


def test_check_upload_rejects_extension_and_size() -> None:
    with pytest.raises(ImportFileError) as exc:
        check_upload("members.pdf", 10, 1024, ("csv", "xlsx"))
    assert exc.value.field == "file"
    assert "Invalid file format" in str(exc.value)

    with pytest.raises(ImportFileError, match="too large"):
        check_upload("members.csv", 6 * 1024 * 1024, 5 * 1024 * 1024, ("csv", "xlsx"))

    check_upload("Members.CSV", 10, 1024, ("csv", "xlsx"))


def test_decode_csv_strips_bom() -> None:
    assert decode_upload("m.csv", b"\xef\xbb\xbfname,email\n") == "name,email\n"


def test_decode_rejects_non_utf8_csv() -> None:
    with pytest.raises(ImportParseError):
        decode_upload("m.csv", b"\xff\xfe\x00n")


def test_xlsx_upload_is_converted_to_csv_rows() -> None:
    buf = BytesIO()
    pd.DataFrame(
        [["Awa", "awa@example.com", 100], ["Lamin", "lamin@example.com", None]],
        columns=["Full Name", "Email", "Balance"],
    ).to_excel(buf, index=False, engine="openpyxl")

    rows = parse_csv_data(decode_upload("members.xlsx", buf.getvalue()))

    assert [r.data["email"] for r in rows] == ["awa@example.com", "lamin@example.com"]
    assert all(r.is_valid for r in rows)
    assert rows[1].data["initial_balance"] == Decimal("0")


def test_garbage_xlsx_is_a_parse_error() -> None:
    with pytest.raises(ImportParseError):
        decode_upload("members.xlsx", b"definitely not a workbook")


def test_error_report_csv_lists_failures() -> None:
    result = ImportResult(success=1, failed=2, failed_records=[
        {"email": "a@x.com", "reason": "Server or network error"},
        {"email": "b@x.com", "reason": "Duplicate, already registered"},
    ])

    assert error_report_csv(result) == (
        "Row,Email,Error\n"
        "1,a@x.com,Server or network error\n"
        '2,b@x.com,"Duplicate, already registered"\n'
    )


def test_error_report_excel_is_readable() -> None:
    result = ImportResult(failed=1, failed_records=[{"email": "a@x.com", "reason": "boom"}])
    df = pd.read_excel(BytesIO(error_report_excel(result)), engine="openpyxl")

    assert list(df.columns) == ["Row", "Email", "Error"]
    assert df.iloc[0]["Email"] == "a@x.com"


def test_template_parses_cleanly() -> None:
    rows = parse_csv_data(template_csv())

    assert len(rows) == 2
    assert all(r.is_valid for r in rows)
