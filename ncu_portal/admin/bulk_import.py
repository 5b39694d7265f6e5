"""
Bulk member import: parsing, per-row validation and the import session.

An import session walks through four states::

    INPUT --parse--> PREVIEW --proceed--> CONFIRMATION --confirm--> SUBMITTING --> COMPLETED
             PREVIEW --cancel--> INPUT     CONFIRMATION --back--> PREVIEW
                                           COMPLETED --retry_failed--> PREVIEW

Rows are validated exactly once, when the text is parsed. After that the only
thing that changes on a row is whether the administrator wants it included.
"""
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from io import BytesIO, StringIO
from typing import Dict, Iterable, List, Optional, Set

import pandas as pd

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
ROLES = ("regular", "admin")
STATUSES = ("active", "inactive")
NETWORK_ERROR_REASON = "Server or network error"
DEFAULT_SOURCE_LABEL = "Manual Import"
KNOWN_EMAILS_CACHE_KEY = "known_user_emails"
TEMPLATE_HEADER = ["full_name", "email", "initial_balance", "role", "status"]
TEMPLATE_ROWS = [
    ["Awa Jallow", "awa.jallow@example.com", "1500.00", "regular", "active"],
    ["Lamin Ceesay", "lamin.ceesay@example.com", "0", "admin", "active"],
]


class ImportParseError(ValueError):
    """The payload as a whole is unusable (too few lines, unreadable file)."""


class ImportFileError(ValueError):
    """The uploaded file was rejected before any parsing."""

    def __init__(self, message, field="file"):
        super().__init__(message)
        self.field = field


class ImportStateError(RuntimeError):
    """An operation was attempted in a state that does not allow it."""


class ImportState(str, Enum):
    INPUT = "input"
    PREVIEW = "preview"
    CONFIRMATION = "confirmation"
    SUBMITTING = "submitting"
    COMPLETED = "completed"


@dataclass
class ImportRow:
    row_id: int
    data: Dict
    is_valid: bool
    errors: List[str]
    include: bool

    def to_dict(self):
        data = dict(self.data)
        data["initial_balance"] = str(data["initial_balance"])
        return {
            "row_id": self.row_id,
            "data": data,
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "include": self.include,
        }


@dataclass
class ImportResult:
    success: int = 0
    failed: int = 0
    failed_records: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self):
        return {
            "success": self.success,
            "failed": self.failed,
            "failed_records": [dict(r) for r in self.failed_records],
        }


# --- uploads ----------------------------------------------------------

def file_extension(filename):
    return os.path.splitext(filename or "")[1].lstrip(".").lower()


def check_upload(filename, size, max_bytes, allowed_extensions):
    if file_extension(filename) not in allowed_extensions:
        allowed = ", ".join(ext.upper() for ext in allowed_extensions)
        raise ImportFileError(f"Invalid file format. Please upload a {allowed} file.")
    if size > max_bytes:
        raise ImportFileError(f"File is too large. Maximum size is {max_bytes // (1024 * 1024)}MB.")


def decode_upload(filename, content):
    """Turn uploaded bytes into CSV text."""
    ext = file_extension(filename)
    if ext == "csv":
        try:
            return content.decode("utf-8-sig")
        except UnicodeDecodeError:
            raise ImportParseError("Unable to read file: CSV files must be UTF-8 encoded")
    if ext == "xlsx":
        try:
            df = pd.read_excel(BytesIO(content), dtype=str, engine="openpyxl")
        except Exception as e:
            raise ImportParseError(f"Unable to read spreadsheet: {e}")
        return df.fillna("").to_csv(index=False)
    raise ImportParseError(f"Unsupported file type: .{ext}")


# --- parsing and validation -------------------------------------------

def _parse_balance(raw):
    try:
        value = Decimal(raw)
    except InvalidOperation:
        return None
    if not value.is_finite() or value < 0:
        return None
    return value


def validate_row(full_name, email, balance, role, status, seen_emails: Set[str], known_emails: Set[str]):
    """Check one parsed row.

    ``seen_emails`` carries the lower-cased emails already accepted from earlier
    rows of the same payload and is updated in place; ``known_emails`` is the
    lower-cased snapshot of existing users. Returns ``(record, errors)``.
    """
    errors = []

    if not full_name:
        errors.append("Name is required")

    if not email:
        errors.append("Email is required")
    elif not EMAIL_RE.match(email):
        errors.append("Invalid email format")
    else:
        key = email.lower()
        if key in seen_emails:
            errors.append("Duplicate email in import file")
        else:
            seen_emails.add(key)
        if key in known_emails:
            errors.append("Email already exists in the system")

    initial_balance = Decimal("0")
    if balance:
        parsed = _parse_balance(balance)
        if parsed is None:
            errors.append("Balance must be a positive number")
        else:
            initial_balance = parsed

    if role and role not in ROLES:
        errors.append("Role must be 'regular' or 'admin'")

    if status and status not in STATUSES:
        errors.append("Status must be 'active' or 'inactive'")

    record = {
        "full_name": full_name,
        "email": email,
        "initial_balance": initial_balance,
        "role": role or "regular",
        "status": status or "active",
    }
    return record, errors


def _column(headers, needle):
    for idx, header in enumerate(headers):
        if needle in header:
            return idx
    return -1


def parse_csv_data(csv_text, known_emails: Iterable[str] = ()) -> List[ImportRow]:
    lines = [line for line in (csv_text or "").split("\n") if line.strip()]
    if len(lines) < 2:
        raise ImportParseError("CSV must have a header row and at least one data row")

    headers = [h.strip().lower() for h in lines[0].split(",")]
    name_idx = _column(headers, "name")
    email_idx = _column(headers, "email")
    balance_idx = _column(headers, "balance")
    role_idx = _column(headers, "role")
    status_idx = _column(headers, "status")

    existing = {e.lower() for e in known_emails if e}
    seen = set()

    def cell(values, idx):
        if 0 <= idx < len(values):
            return values[idx]
        return ""

    rows = []
    for row_id, line in enumerate(lines[1:]):
        values = [v.strip() for v in line.split(",")]
        record, errors = validate_row(
            full_name=cell(values, name_idx),
            email=cell(values, email_idx),
            balance=cell(values, balance_idx),
            role=cell(values, role_idx).lower(),
            status=cell(values, status_idx).lower(),
            seen_emails=seen,
            known_emails=existing,
        )
        rows.append(ImportRow(
            row_id=row_id,
            data=record,
            is_valid=not errors,
            errors=errors,
            include=not errors,
        ))
    return rows


# --- reports ----------------------------------------------------------

def _failed_frame(result):
    return pd.DataFrame(
        [
            {"Row": idx, "Email": r["email"], "Error": r["reason"]}
            for idx, r in enumerate(result.failed_records, start=1)
        ],
        columns=["Row", "Email", "Error"],
    )


def error_report_csv(result):
    buf = StringIO()
    _failed_frame(result).to_csv(buf, index=False, lineterminator="\n")
    return buf.getvalue()


def error_report_excel(result):
    output = BytesIO()
    with pd.ExcelWriter(output, engine="openpyxl") as writer:
        _failed_frame(result).to_excel(writer, index=False, sheet_name="Import Errors")
    output.seek(0)
    return output.read()


def template_csv():
    buf = StringIO()
    pd.DataFrame(TEMPLATE_ROWS, columns=TEMPLATE_HEADER).to_csv(buf, index=False, lineterminator="\n")
    return buf.getvalue()


# --- session ----------------------------------------------------------

class ImportSession:
    def __init__(self, known_emails: Iterable[str] = ()):
        self.known_emails = list(known_emails)
        self.state = ImportState.INPUT
        self.rows: List[ImportRow] = []
        self.source_label = DEFAULT_SOURCE_LABEL
        self.send_welcome_emails = True
        self.result: Optional[ImportResult] = None
        self._submit_lock = threading.Lock()

    def _require(self, *states):
        if self.state not in states:
            expected = " or ".join(s.value for s in states)
            raise ImportStateError(f"Import is {self.state.value}; expected {expected}")

    def parse(self, csv_text, source_label=None):
        self._require(ImportState.INPUT)
        self.rows = parse_csv_data(csv_text, self.known_emails)
        self.source_label = source_label or DEFAULT_SOURCE_LABEL
        self.result = None
        self.state = ImportState.PREVIEW
        logger.info(
            "Parsed import %r: %d row(s), %d valid",
            self.source_label, len(self.rows), sum(1 for r in self.rows if r.is_valid),
        )
        return self.rows

    def _row(self, row_id):
        for row in self.rows:
            if row.row_id == row_id:
                return row
        raise KeyError(row_id)

    def set_include(self, row_id, include):
        self._require(ImportState.PREVIEW)
        row = self._row(row_id)
        row.include = bool(include) and row.is_valid
        return row

    def toggle_row(self, row_id):
        self._require(ImportState.PREVIEW)
        row = self._row(row_id)
        return self.set_include(row_id, not row.include)

    def toggle_all(self):
        self._require(ImportState.PREVIEW)
        all_selected = all(row.include for row in self.rows if row.is_valid)
        for row in self.rows:
            row.include = (not all_selected) and row.is_valid

    def included_rows(self):
        return [row for row in self.rows if row.is_valid and row.include]

    def proceed(self):
        self._require(ImportState.PREVIEW)
        if not self.included_rows():
            raise ImportStateError("No valid users selected for import")
        self.state = ImportState.CONFIRMATION

    def cancel(self):
        self._require(ImportState.PREVIEW)
        self.rows = []
        self.state = ImportState.INPUT

    def back(self):
        self._require(ImportState.CONFIRMATION)
        self.state = ImportState.PREVIEW

    def confirm(self, gateway, actor_id, send_welcome_emails=None):
        with self._submit_lock:
            self._require(ImportState.CONFIRMATION)
            self.state = ImportState.SUBMITTING
        if send_welcome_emails is not None:
            self.send_welcome_emails = bool(send_welcome_emails)
        records = [dict(row.data) for row in self.included_rows()]
        payload = [dict(r, initial_balance=float(r["initial_balance"])) for r in records]

        try:
            outcome = gateway.bulk_create_users(
                payload, self.send_welcome_emails, self.source_label, actor_id
            )
        except Exception as e:
            logger.error("Bulk import of %d user(s) failed: %s", len(records), e)
            self.result = ImportResult(
                success=0,
                failed=len(records),
                failed_records=[{"email": r["email"], "reason": NETWORK_ERROR_REASON} for r in records],
            )
        else:
            self.result = ImportResult(
                success=outcome["success"],
                failed=outcome["failed"] + outcome["skipped"],
                failed_records=[
                    {"email": item["email"], "reason": item["reason"]}
                    for item in outcome["failed_list"]
                ],
            )
            logger.info(
                "Bulk import %r by %s: %d created, %d failed, %d skipped",
                self.source_label, actor_id, outcome["success"], outcome["failed"], outcome["skipped"],
            )
        self.state = ImportState.COMPLETED
        return self.result

    def retry_failed(self):
        self._require(ImportState.COMPLETED)
        failed = {r["email"].lower() for r in self.result.failed_records if r.get("email")}
        for row in self.rows:
            email = (row.data.get("email") or "").lower()
            row.include = row.is_valid and email in failed
        self.result = None
        self.state = ImportState.PREVIEW

    @property
    def progress(self):
        # Single request/response: no real progress signal exists while submitting.
        if self.state == ImportState.COMPLETED:
            return 100
        if self.state == ImportState.SUBMITTING:
            return None
        return 0

    def summary(self):
        return {
            "total": len(self.rows),
            "valid": sum(1 for r in self.rows if r.is_valid),
            "invalid": sum(1 for r in self.rows if not r.is_valid),
            "included": len(self.included_rows()),
        }

    def to_dict(self):
        return {
            "state": self.state.value,
            "source_label": self.source_label,
            "send_welcome_emails": self.send_welcome_emails,
            "progress": self.progress,
            "summary": self.summary(),
            "rows": [row.to_dict() for row in self.rows],
            "result": self.result.to_dict() if self.result else None,
        }


class ImportSessionStore:
    """One open import session per administrator."""

    def __init__(self):
        self._sessions = {}
        self._lock = threading.Lock()

    def get(self, owner_id):
        with self._lock:
            return self._sessions.get(owner_id)

    def open(self, owner_id, known_emails=()):
        session = ImportSession(known_emails)
        with self._lock:
            self._sessions[owner_id] = session
        return session

    def discard(self, owner_id):
        with self._lock:
            return self._sessions.pop(owner_id, None) is not None
