"""
Deterministic validation engine: the layer that does not trust the AI.

These validators run PURE CODE checks on the collaborator's extracted data.
They NEVER call a model. They NEVER touch the store. Same input, same output.

Four independent checks, each returning a CheckResult:
  - validate_dates                dates parse, fall in range, relate sensibly
  - validate_id_format            the ID number matches its document's format
  - validate_logical_consistency  names, caller metadata, per-type sanity
  - validate_data_consistency     placeholders, repeated chars, duplicate IDs

validate_all() runs every check and ANDs them into one ValidationOutcome.
Issues are advisory strings: the rule engine decides what they cost.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Mapping, Optional

from .date_parser import MAX_YEAR, MIN_YEAR, CalendarDateError, parse_date
from .models import CheckResult, ValidationOutcome, ValidationSummary

# ─── Constants ───────────────────────────────────────────────────────

_DAYS_PER_YEAR = 365.25

DATE_FIELDS: tuple[str, ...] = (
    "date_of_birth", "dob", "birth_date",
    "issue_date", "date_of_issue", "issued_on",
    "expiry_date", "date_of_expiry", "valid_until", "valid_till", "expiry",
    "exam_date", "date_of_exam", "examination_date",
    "date_of_passing", "passing_date", "year_of_passing",
    "registration_date", "date_of_registration",
    "statement_date", "bill_date",
)

ISSUE_GRACE = timedelta(days=30)
EXAM_GRACE = timedelta(days=365)
MAX_EXPIRY_YEARS = 50
MAX_AGE_YEARS = 150
MIN_AGE_AT_EXAM = 5

# Document types gated by a minimum holder age at issue.
MIN_AGE_AT_ISSUE: dict[str, int] = {
    "driving_license": 16,
    "voter_id": 18,
    "pan": 0,
}

PLACEHOLDER_VALUES: frozenset[str] = frozenset({
    "test", "sample", "dummy", "xxx", "n/a", "na", "null", "undefined", "todo", "tbd",
})

_NAME_FIELD_EXCLUDES = ("exam", "board", "school", "institution", "university")
_VALID_GENDERS = frozenset({"male", "female", "transgender", "m", "f", "t"})
_PASSPORT_TYPES = frozenset({"P", "D", "S", "O"})
_BALANCE_TOLERANCE = 1.0


@dataclass(frozen=True)
class IdFormat:
    """Canonical ID format for one document type."""

    fields: tuple[str, ...]
    pattern: re.Pattern[str]
    description: str
    strip: str = r"\s+"

    def is_valid(self, value: str) -> bool:
        cleaned = re.sub(self.strip, "", value).upper()
        return bool(self.pattern.fullmatch(cleaned))


ID_FORMATS: dict[str, IdFormat] = {
    "aadhaar": IdFormat(
        fields=("aadhaar_number", "aadhaar_no", "uid", "id_number"),
        # 12 digits; UIDAI never issues numbers starting with 0 or 1
        pattern=re.compile(r"[2-9]\d{11}"),
        description="12-digit numeric (XXXX XXXX XXXX), not starting with 0 or 1",
    ),
    "pan": IdFormat(
        fields=("pan_number", "pan_no", "pan", "id_number"),
        # 4th character is the holder-type code
        pattern=re.compile(r"[A-Z]{3}[ABCDEFGHJKLPT][A-Z]\d{4}[A-Z]"),
        description="10-char alphanumeric (ABCDE1234F)",
    ),
    "passport": IdFormat(
        fields=("passport_number", "passport_no", "id_number"),
        pattern=re.compile(r"[A-Z]\d{7}"),
        description="Letter followed by 7 digits (A1234567)",
    ),
    "driving_license": IdFormat(
        fields=("license_number", "dl_number", "dl_no", "id_number"),
        # state code + RTO code + 4-13 digit serial, 8-17 chars in total
        pattern=re.compile(r"[A-Z]{2}\d{2}\d{4,13}"),
        description="State code + RTO code + year + serial",
        strip=r"[\s-]+",
    ),
    "voter_id": IdFormat(
        fields=("voter_id", "epic_number", "epic_no", "id_number"),
        pattern=re.compile(r"[A-Z]{3}\d{7}"),
        description="3 letters followed by 7 digits (ABC1234567)",
    ),
}

ID_DOCUMENT_TYPES: frozenset[str] = frozenset(ID_FORMATS)


# ─── Orchestrator ────────────────────────────────────────────────────


def validate_all(
    document_type: str,
    extracted_data: Optional[Mapping[str, Any]],
    metadata: Optional[Mapping[str, Any]] = None,
    *,
    today: Optional[date] = None,
) -> ValidationOutcome:
    """Run ALL four checks and aggregate them."""
    if not extracted_data:
        return ValidationOutcome(
            passed=False,
            issues=["No extracted data to validate"],
            failed_checks=["no_data"],
        )

    today = today or date.today()
    checks: list[tuple[str, str, CheckResult]] = [
        ("dates", "dates_invalid", validate_dates(extracted_data, document_type, today=today)),
        ("id_format", "id_format_invalid", validate_id_format(document_type, extracted_data)),
        (
            "logical_checks",
            "logical_check_failed",
            validate_logical_consistency(document_type, extracted_data, metadata or {}),
        ),
        ("data_consistency", "data_inconsistent", validate_data_consistency(extracted_data)),
    ]

    issues: list[str] = []
    failed: list[str] = []
    results: dict[str, CheckResult] = {}
    for name, failure_code, result in checks:
        results[name] = result
        if not result.valid:
            issues.extend(result.issues)
            failed.append(failure_code)

    summary = ValidationSummary(
        dates_valid=results["dates"].valid,
        id_format_valid=results["id_format"].valid,
        logical_checks_passed=results["logical_checks"].valid,
        data_consistent=results["data_consistency"].valid,
        checks_passed=sum(1 for r in results.values() if r.valid),
        details="; ".join(issues) if issues else "All validation checks passed",
    )
    return ValidationOutcome(
        passed=not failed,
        issues=issues,
        results=results,
        failed_checks=failed,
        summary=summary,
    )


# ─── Date Validation ─────────────────────────────────────────────────


def validate_dates(
    extracted_data: Mapping[str, Any],
    document_type: str,
    *,
    today: Optional[date] = None,
) -> CheckResult:
    """Every date-named field must parse, be a real day, and sit in a sane range.

    Afterwards the parsed dates are cross-checked against each other
    (birth < issue < expiry, birth < exam, minimum ages).
    """
    today = today or date.today()
    issues: list[str] = []
    checked: dict[str, dict[str, Any]] = {}
    parsed: dict[str, date] = {}

    for key, value in extracted_data.items():
        if value is None or value == "" or not _is_date_field(key):
            continue

        try:
            when = parse_date(value)
        except CalendarDateError:
            issues.append(f"Invalid date for '{key}': \"{value}\" is not a real calendar date")
            checked[key] = {"valid": False, "value": value, "error": "Not a real calendar date"}
            continue
        except ValueError:
            when = _year_only(key, value, today)
            if when is None:
                issues.append(
                    f"Invalid date format for '{key}': \"{value}\" is not a recognizable date"
                )
                checked[key] = {"valid": False, "value": value, "error": "Unrecognizable date format"}
                continue

        if not MIN_YEAR <= when.year <= MAX_YEAR:
            issues.append(
                f"Invalid date for '{key}': \"{value}\" is outside {MIN_YEAR}-{MAX_YEAR}"
            )
            checked[key] = {"valid": False, "value": value, "error": "Year out of range"}
            continue

        range_issue = _check_date_range(key, when, today)
        if range_issue:
            issues.append(range_issue)
            checked[key] = {"valid": False, "value": value, "error": range_issue}
            continue

        checked[key] = {"valid": True, "value": value, "parsed": when.isoformat()}
        parsed[key] = when

    issues.extend(_cross_validate_dates(parsed, document_type))
    return CheckResult(valid=not issues, issues=issues, details={"checked_fields": checked})


def _is_date_field(key: str) -> bool:
    lowered = key.lower()
    squashed = _squash(lowered)
    if any(_squash(df) in squashed for df in DATE_FIELDS):
        return True
    return (
        "date" in lowered
        or "dob" in lowered
        or lowered.endswith("_on")
        or lowered.endswith("_at")
    )


def _year_only(key: str, value: Any, today: date) -> Optional[date]:
    """Accept '2015' or '2015-16' in year-named fields."""
    if "year" not in key.lower():
        return None
    m = re.match(r"^\s*(\d{4})", str(value))
    if not m:
        return None
    year = int(m.group(1))
    if MIN_YEAR <= year <= today.year + 5:
        return date(year, 1, 1)
    return None


def _years_between(start: date, end: date) -> float:
    return (end - start).days / _DAYS_PER_YEAR


def _check_date_range(field_name: str, when: date, today: date) -> Optional[str]:
    field = field_name.lower()

    if "birth" in field or "dob" in field:
        if when > today:
            return f"Date of birth '{field_name}' is in the future"
        if _years_between(when, today) > MAX_AGE_YEARS:
            return f"Date of birth '{field_name}' implies age over {MAX_AGE_YEARS} years"

    if "issue" in field or "registration" in field or "passing" in field:
        if when > today + ISSUE_GRACE:
            return f"Issue/registration date '{field_name}' is in the future"

    if "expir" in field or "valid" in field:
        if _years_between(today, when) > MAX_EXPIRY_YEARS:
            return f"Expiry date '{field_name}' is more than {MAX_EXPIRY_YEARS} years in the future"

    if "exam" in field:
        if when > today + EXAM_GRACE:
            return f"Exam date '{field_name}' is unreasonably far in the future"

    return None


def _first_key(keys: list[str], predicate) -> Optional[str]:
    return next((k for k in keys if predicate(k.lower())), None)


def _cross_validate_dates(parsed: dict[str, date], document_type: str) -> list[str]:
    issues: list[str] = []
    keys = list(parsed)

    dob_key = _first_key(keys, lambda k: "birth" in k or "dob" in k)
    issue_key = _first_key(keys, lambda k: "issue" in k and "expir" not in k)
    expiry_key = _first_key(keys, lambda k: "expir" in k or "valid" in k)
    passing_key = _first_key(keys, lambda k: "passing" in k)
    exam_key = _first_key(keys, lambda k: "exam" in k and "date" in k)

    if issue_key and expiry_key and parsed[issue_key] >= parsed[expiry_key]:
        issues.append(f"Issue date ({issue_key}) must be before expiry date ({expiry_key})")

    if dob_key and issue_key and parsed[dob_key] >= parsed[issue_key]:
        issues.append(f"Date of birth ({dob_key}) must be before issue date ({issue_key})")

    if dob_key and passing_key and parsed[dob_key] >= parsed[passing_key]:
        issues.append("Date of birth must be before date of passing")
    if dob_key and exam_key and parsed[dob_key] >= parsed[exam_key]:
        issues.append("Date of birth must be before exam date")

    exam_when_key = passing_key or exam_key
    if dob_key and exam_when_key:
        if _years_between(parsed[dob_key], parsed[exam_when_key]) < MIN_AGE_AT_EXAM:
            issues.append(
                f"Person appears to be under {MIN_AGE_AT_EXAM} years old at the time "
                f"of examination - suspicious"
            )

    min_age = MIN_AGE_AT_ISSUE.get(document_type)
    if dob_key and issue_key and min_age is not None:
        age_at_issue = _years_between(parsed[dob_key], parsed[issue_key])
        if age_at_issue < min_age:
            if min_age == 0:
                issues.append(f"{document_type} issue date is before date of birth")
            else:
                issues.append(
                    f"Person appears to be under {min_age} at {document_type} issue date"
                )

    return issues


# ─── ID Format Validation ────────────────────────────────────────────


def validate_id_format(document_type: str, extracted_data: Mapping[str, Any]) -> CheckResult:
    """Find the document's ID field and check it against the canonical format.

    Document types without a known format pass. On an ID-class document,
    failing to find any ID field at all is itself a failure.
    """
    fmt = ID_FORMATS.get(document_type)
    if fmt is None:
        return CheckResult(valid=True, details={"message": "No ID format rules for this document type"})

    found = _find_id_field(fmt.fields, extracted_data)
    if found is None:
        return CheckResult(
            valid=False,
            issues=[f"No ID number found in extracted data for {document_type}"],
        )

    key, value = found
    ok = fmt.is_valid(value)
    details = {
        "checked_fields": {
            key: {"value": value, "valid": ok, "expected_format": fmt.description}
        }
    }
    if ok:
        return CheckResult(valid=True, details=details)
    return CheckResult(
        valid=False,
        issues=[
            f"ID number '{value}' in field '{key}' does not match expected "
            f"{document_type} format ({fmt.description})"
        ],
        details=details,
    )


def _find_id_field(
    candidates: tuple[str, ...], extracted_data: Mapping[str, Any]
) -> Optional[tuple[str, str]]:
    for candidate in candidates:
        exact = extracted_data.get(candidate)
        if exact is not None and str(exact).strip():
            return candidate, str(exact).strip()
        wanted = _squash(candidate)
        for key, val in extracted_data.items():
            if val is not None and str(val).strip() and wanted in _squash(key.lower()):
                return key, str(val).strip()
    return None


# ─── Logical Consistency ─────────────────────────────────────────────


def validate_logical_consistency(
    document_type: str,
    extracted_data: Mapping[str, Any],
    metadata: Mapping[str, Any],
) -> CheckResult:
    """Names agree, caller metadata agrees, numbers make sense for the type."""
    sub_checks = {
        "name_consistency": _check_name_consistency(extracted_data),
        "metadata_match": _check_metadata_match(extracted_data, metadata),
        "type_specific": _check_doc_type_logic(document_type, extracted_data),
        "numeric_fields": _check_numeric_fields(extracted_data),
    }
    issues = [issue for check in sub_checks.values() for issue in check]
    return CheckResult(
        valid=not issues,
        issues=issues,
        details={name: {"valid": not found} for name, found in sub_checks.items()},
    )


def _check_name_consistency(extracted_data: Mapping[str, Any]) -> list[str]:
    names: dict[str, str] = {}
    for key, value in extracted_data.items():
        if not isinstance(value, str):
            continue
        lowered = key.lower()
        if "name" in lowered and not any(x in lowered for x in _NAME_FIELD_EXCLUDES):
            names[key] = value.strip()

    full = names.get("full_name") or names.get("name") or names.get("holder_name") or names.get("student_name")
    first = names.get("first_name")
    last = names.get("last_name") or names.get("surname")

    issues: list[str] = []
    if full and first and first.lower() not in full.lower():
        issues.append(f"Name inconsistency: first_name \"{first}\" not found within full name \"{full}\"")
    if full and last and last.lower() not in full.lower():
        issues.append(f"Name inconsistency: last_name \"{last}\" not found within full name \"{full}\"")
    return issues


def _check_metadata_match(
    extracted_data: Mapping[str, Any], metadata: Mapping[str, Any]
) -> list[str]:
    """Name fields need one shared word; everything else must match once normalised."""
    issues: list[str] = []
    for key, expected in metadata.items():
        if expected is None or expected == "":
            continue
        extracted = extracted_data.get(key)
        if extracted is None:
            continue

        want = str(expected).strip().lower()
        got = str(extracted).strip().lower()
        if "name" in key.lower():
            matches = bool(set(want.split()) & set(got.split()))
        else:
            matches = _normalize(want) == _normalize(got)

        if not matches:
            issues.append(
                f"Metadata mismatch: '{key}' - expected \"{expected}\", extracted \"{extracted}\""
            )
    return issues


def _check_doc_type_logic(document_type: str, data: Mapping[str, Any]) -> list[str]:
    issues: list[str] = []

    if document_type == "aadhaar":
        gender = data.get("gender") or data.get("sex")
        if gender and str(gender).lower() not in _VALID_GENDERS:
            issues.append(f"Invalid gender value on Aadhaar: \"{gender}\"")

    elif document_type == "passport":
        nationality = data.get("nationality") or data.get("country")
        if nationality and len(str(nationality).strip()) < 2:
            issues.append("Passport nationality field is too short")
        pass_type = data.get("passport_type") or data.get("type")
        if pass_type and str(pass_type).upper() not in _PASSPORT_TYPES:
            issues.append(
                f"Invalid passport type: \"{pass_type}\". Expected P (ordinary), "
                f"D (diplomatic), S (service), or O (official)"
            )

    elif document_type in ("marksheet_10", "marksheet_12"):
        percentage = _to_number(data.get("percentage"))
        if percentage is not None and not 0 <= percentage <= 100:
            issues.append(f"Percentage {percentage}% is outside valid range (0-100)")
        for roll_key in ("roll_number", "roll_no", "registration_number"):
            if roll_key in data and data[roll_key] is not None and not str(data[roll_key]).strip():
                issues.append("Roll/registration number is empty on marksheet")
                break

    elif document_type == "bank_statement":
        opening = _to_number(data.get("opening_balance"))
        closing = _to_number(data.get("closing_balance"))
        credits = _to_number(data.get("total_credit") or data.get("total_credits"))
        debits = _to_number(data.get("total_debit") or data.get("total_debits"))
        if None not in (opening, closing, credits, debits):
            expected = opening + credits - debits
            if abs(closing - expected) > _BALANCE_TOLERANCE:
                issues.append(
                    f"Bank statement balance mismatch: opening({opening}) + credits({credits}) "
                    f"- debits({debits}) = {expected:.2f}, but closing balance is {closing}"
                )

    return issues


def _check_numeric_fields(data: Mapping[str, Any]) -> list[str]:
    issues: list[str] = []
    for key, value in data.items():
        if value is None:
            continue
        lowered = key.lower()

        if "percent" in lowered:
            num = _to_number(value)
            if num is not None and not 0 <= num <= 100:
                issues.append(f"Invalid percentage in '{key}': {value} (must be 0-100)")

        if "gpa" in lowered:
            num = _to_number(value)
            if num is not None and not 0 <= num <= 10:
                issues.append(f"Suspicious GPA/CGPA in '{key}': {value} (expected 0-10)")

        if lowered == "age":
            num = _to_number(value)
            if num is not None and not 0 <= num <= MAX_AGE_YEARS:
                issues.append(f"Invalid age: {value}")

        if "pincode" in lowered or "pin_code" in lowered or "zip" in lowered:
            cleaned = re.sub(r"\s", "", str(value))
            if cleaned and not re.fullmatch(r"\d{6}", cleaned):
                issues.append(
                    f"Invalid PIN code format in '{key}': \"{value}\" (expected 6-digit number)"
                )
    return issues


# ─── Data Consistency ────────────────────────────────────────────────


def validate_data_consistency(extracted_data: Mapping[str, Any]) -> CheckResult:
    """Flag values that look fabricated rather than read off a real document."""
    issues: list[str] = []

    for key, value in extracted_data.items():
        if not isinstance(value, str):
            continue
        trimmed = value.strip()
        if not trimmed:
            continue

        if trimmed.lower() in PLACEHOLDER_VALUES and key.lower() not in ("remarks", "notes"):
            issues.append(f"Suspicious placeholder value in '{key}': \"{trimmed}\"")

        compact = re.sub(r"\s", "", trimmed)
        if len(trimmed) > 4 and len(set(compact)) == 1:
            issues.append(f"Suspicious repeated character value in '{key}': \"{trimmed}\"")

    # Same literal in two differently-named identifier fields
    seen: dict[str, str] = {}
    for key, value in extracted_data.items():
        if not isinstance(value, str) or not value.strip():
            continue
        lowered = key.lower()
        if not ("number" in lowered or "id" in lowered or "no" in lowered):
            continue
        trimmed = value.strip()
        other = seen.get(trimmed)
        if other is not None and other != key:
            other_lower = other.lower()
            if lowered not in other_lower and other_lower not in lowered:
                issues.append(
                    f"Same value \"{trimmed}\" found in both '{other}' and '{key}' "
                    f"- possible data inconsistency"
                )
        seen[trimmed] = key

    return CheckResult(valid=not issues, issues=issues)


# ─── Helpers ─────────────────────────────────────────────────────────


def _squash(text: str) -> str:
    return re.sub(r"[_\s-]", "", text)


def _normalize(text: str) -> str:
    return re.sub(r"[\s\-/.]", "", text)


def _to_number(value: Any) -> Optional[float]:
    """Leading-number parse: '85.5%' → 85.5, '₹1,20,000.50' → 120000.5."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = re.sub(r"[,\s₹$]", "", str(value))
    m = re.match(r"[-+]?\d+(\.\d+)?", cleaned)
    return float(m.group(0)) if m else None
