"""
Rule engine: turns collaborator output into the final verdict.

The extraction collaborator proposes a status, a confidence and a risk
score. We do not take them at face value. Evaluation order:

  1. Collaborator says the document is the wrong type → reject outright.
  2. Keyword cross-check says the document is a look-alike type → reject
     outright, even if the collaborator reported a match.
  3. Otherwise start from the collaborator's numbers and apply additive
     penalties for every missing field, failed pattern, mismatch,
     fraud signal and failed authenticity or consistency check.
  4. Clamp, then threshold:
       rejected  if a force-flag fired, confidence < 50 or risk > 0.7
       verified  if confidence >= 80 and risk < 0.2
       otherwise the collaborator's own status stands

Pure arithmetic over its inputs. No I/O, no clock, no randomness.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from .document_types import CONFUSION_RULES
from .models import (
    DocumentTypeConfig,
    ExtractionResult,
    ImageQuality,
    RequestStatus,
    RuleResult,
)

# ─── Thresholds ──────────────────────────────────────────────────────

REJECT_BELOW_CONFIDENCE = 50
REJECT_ABOVE_RISK = 0.7
VERIFY_MIN_CONFIDENCE = 80
VERIFY_BELOW_RISK = 0.2

_SEARCH_EXTRA_FIELDS = ("exam_name", "board", "board_name", "examination")


@dataclass
class _Scorecard:
    """Running totals while adjustments are applied."""

    issues: list[str]
    confidence: float = 0.0
    risk: float = 0.0
    force_reject: bool = False
    results: dict[str, dict[str, Any]] = field(default_factory=dict)

    def penalize(self, confidence: float, risk: float, issue: Optional[str] = None) -> None:
        self.confidence -= confidence
        self.risk += risk
        if issue:
            self.issues.append(issue)


@dataclass(frozen=True)
class KeywordMismatch:
    expected: str
    detected: str
    reason: str


# ─── Public API ──────────────────────────────────────────────────────


def score_document(
    document_type: str,
    extracted_data: Mapping[str, Any],
    result: ExtractionResult,
    config: Optional[DocumentTypeConfig],
) -> RuleResult:
    """Produce the final status/confidence/risk triple for one document.

    Args:
        document_type: The claimed document-type code.
        extracted_data: Fields read off the document.
        result: The collaborator's response, with validator flags merged
            into ``data_consistency``.
        config: Resolved document-type configuration, or None if unknown.
    """
    issues = list(result.issues)

    # ── 1. Collaborator-reported type mismatch ──────────────────────
    if not result.document_type_match:
        detected = result.detected_document_type or "Unknown"
        expected = result.expected_document_type or document_type
        reason = (
            result.document_type_mismatch_reason
            or f'Expected "{expected}" but received "{detected}"'
        )
        issues.append(f"Wrong document submitted: {reason}")
        return _wrong_document(issues, result, expected, detected, reason)

    # ── 2. Keyword cross-check ──────────────────────────────────────
    mismatch = check_keyword_mismatch(document_type, extracted_data, result.remarks)
    if mismatch is not None:
        issues.append(mismatch.reason)
        return _wrong_document(
            issues, result, mismatch.expected, mismatch.detected, mismatch.reason
        )

    card = _Scorecard(issues=issues)
    if config is None:
        card.issues.append(f"Unknown document type: {document_type}")
        pattern_failed = False
    else:
        _apply_required_fields(card, config, extracted_data)
        pattern_failed = _apply_validation_rules(card, config, extracted_data)

    _apply_metadata_mismatches(card, result)
    _apply_fraud_indicators(card, result)
    _apply_authenticity(card, result)
    _apply_data_consistency(card, result, pattern_failed)

    # ── 4. Clamp and threshold ──────────────────────────────────────
    confidence = _clamp(result.confidence + card.confidence, 0.0, 100.0, worst=0.0)
    risk = _clamp(result.risk_score + card.risk, 0.0, 1.0, worst=1.0)

    if card.force_reject or confidence < REJECT_BELOW_CONFIDENCE or risk > REJECT_ABOVE_RISK:
        status = RequestStatus.REJECTED
    elif confidence >= VERIFY_MIN_CONFIDENCE and risk < VERIFY_BELOW_RISK:
        status = RequestStatus.VERIFIED
    else:
        status = result.status

    return RuleResult(
        status=status,
        confidence=round(confidence, 2),
        risk_score=round(risk, 4),
        issues=card.issues,
        validation_results=card.results,
        fraud_indicators=list(result.fraud_indicators),
        wrong_document=False,
        detected_document_type=result.detected_document_type,
        expected_document_type=result.expected_document_type or document_type,
    )


def check_keyword_mismatch(
    document_type: str,
    extracted_data: Mapping[str, Any],
    remarks: str = "",
) -> Optional[KeywordMismatch]:
    """Scan extracted text for keywords that betray a look-alike document type."""
    rule = CONFUSION_RULES.get(document_type)
    if rule is None:
        return None

    text = _build_search_text(extracted_data, remarks)
    if not text:
        return None
    lowered = text.lower()

    for kw in rule.reject_keywords:
        if kw in lowered:
            return KeywordMismatch(
                expected=rule.expected,
                detected=rule.detected_if_rejected,
                reason=(
                    f'Wrong document submitted: Found "{kw}" in document text which '
                    f"indicates this is a {rule.detected_if_rejected}, not a {rule.expected}"
                ),
            )

    overridden = any(ow in lowered for ow in rule.override_if_present)
    for pattern in rule.reject_patterns:
        if pattern.search(text) and not overridden:
            return KeywordMismatch(
                expected=rule.expected,
                detected=rule.detected_if_rejected,
                reason=(
                    f"Wrong document submitted: Document content indicates this is a "
                    f"{rule.detected_if_rejected}, not a {rule.expected}"
                ),
            )

    exam_class = extracted_data.get("exam_class")
    if exam_class:
        value = str(exam_class).lower().strip()
        if document_type == "marksheet_10" and (
            "12" in value or "xii" in value or "higher" in value
        ):
            return KeywordMismatch(
                expected=rule.expected,
                detected=rule.detected_if_rejected,
                reason=(
                    f'Wrong document submitted: Extracted exam_class "{exam_class}" '
                    f"indicates 12th class, not 10th"
                ),
            )
        if document_type == "marksheet_12" and (
            ("10" in value or " x" in value or value == "x")
            and "12" not in value
            and "xii" not in value
        ):
            return KeywordMismatch(
                expected=rule.expected,
                detected=rule.detected_if_rejected,
                reason=(
                    f'Wrong document submitted: Extracted exam_class "{exam_class}" '
                    f"indicates 10th class, not 12th"
                ),
            )

    return None


# ─── Adjustments ─────────────────────────────────────────────────────


def _apply_required_fields(
    card: _Scorecard, config: DocumentTypeConfig, data: Mapping[str, Any]
) -> None:
    for name in config.required_fields:
        value = data.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            card.penalize(5, 0.05, f"Required field missing: {name}")
            card.results[name] = {"status": "missing", "message": "Required field not found"}
        else:
            card.results[name] = {"status": "present", "value": value}


def _apply_validation_rules(
    card: _Scorecard, config: DocumentTypeConfig, data: Mapping[str, Any]
) -> bool:
    """Returns True if any configured pattern rejected its field."""
    failed = False
    for name, pattern in config.validation_rules.items():
        value = data.get(name)
        if value is None or value == "":
            continue
        try:
            matched = re.search(pattern, str(value)) is not None
        except re.error:
            continue  # unusable pattern in config
        entry = card.results.setdefault(name, {})
        entry["pattern_valid"] = matched
        if not matched:
            failed = True
            entry["message"] = f"Does not match pattern: {pattern}"
            card.penalize(10, 0.1, f"Field '{name}' does not match expected pattern")
    return failed


def _apply_metadata_mismatches(card: _Scorecard, result: ExtractionResult) -> None:
    for name, match in result.metadata_match.items():
        if match.matches is False:
            card.penalize(
                15,
                0.15,
                f"Metadata mismatch on '{name}': expected '{match.expected}', "
                f"got '{match.extracted}'",
            )


def _apply_fraud_indicators(card: _Scorecard, result: ExtractionResult) -> None:
    count = len(result.fraud_indicators)
    if count:
        card.penalize(10 * count, 0.2 * count)


def _apply_authenticity(card: _Scorecard, result: ExtractionResult) -> None:
    checks = result.authenticity_checks

    if result.is_genuine is False:
        card.penalize(
            40, 0.5, "Document failed authenticity check: AI determined document is not genuine"
        )
        card.force_reject = True
        card.results["authenticity"] = {"status": "failed", "message": "Document is not genuine"}

    if checks.tampering_detected is True:
        card.penalize(30, 0.4, "Tampering detected: Document appears to have been digitally altered")
        card.force_reject = True
        card.results["tampering"] = {"status": "failed", "message": "Tampering evidence found"}

    if checks.is_original_document is False:
        card.penalize(
            15,
            0.15,
            "Document does not appear to be an original - possible photocopy or digitally recreated",
        )
        card.results["originality"] = {"status": "failed", "message": "Not an original document"}

    if checks.font_consistency is False:
        card.penalize(15, 0.15, "Inconsistent fonts detected across the document")
        card.results["font_check"] = {"status": "failed", "message": "Font inconsistency detected"}

    if checks.layout_matches_official is False:
        card.penalize(20, 0.2, "Document layout does not match known official format")
        card.results["layout_check"] = {
            "status": "failed",
            "message": "Layout mismatch with official format",
        }

    if checks.photo_integrity is False:
        card.penalize(20, 0.2, "Photo on document appears altered or digitally pasted")
        card.results["photo_check"] = {"status": "failed", "message": "Photo integrity compromised"}

    if checks.image_quality == ImageQuality.SUSPICIOUS:
        card.penalize(20, 0.2, "Image quality is suspicious - may indicate digital manipulation")
        card.results["image_quality"] = {"status": "failed", "message": "Suspicious image quality"}
    elif checks.image_quality == ImageQuality.POOR:
        card.penalize(10, 0.1, "Image quality is too poor for reliable verification")
        card.results["image_quality"] = {"status": "warning", "message": "Poor image quality"}

    if checks.has_security_features is False:
        card.penalize(
            15,
            0.15,
            "Expected security features (watermarks, holograms, official seals) not found",
        )
        card.results["security_features"] = {
            "status": "failed",
            "message": "Security features missing",
        }


def _apply_data_consistency(
    card: _Scorecard, result: ExtractionResult, pattern_failed: bool
) -> None:
    consistency = result.data_consistency

    if consistency.dates_valid is False:
        card.penalize(10, 0.1, "Date inconsistency detected in document fields")
        card.results["date_consistency"] = {
            "status": "failed",
            "message": "Invalid or inconsistent dates",
        }

    if consistency.id_format_valid is False:
        card.results["id_format"] = {"status": "failed", "message": "ID format mismatch"}
        # A configured pattern already charged for the same bad ID
        if not pattern_failed:
            card.penalize(
                10,
                0.1,
                "ID number format does not match expected pattern for this document type",
            )

    if consistency.logical_checks_passed is False:
        details = consistency.details or "Logical inconsistencies found in document data"
        card.penalize(10, 0.1, f"Data consistency issue: {details}")
        card.results["logical_consistency"] = {"status": "failed", "message": details}


# ─── Helpers ─────────────────────────────────────────────────────────


def _clamp(value: float, low: float, high: float, *, worst: float) -> float:
    """NaN and infinity clamp to ``worst``."""
    if not math.isfinite(value):
        return worst
    return max(low, min(high, value))


def _wrong_document(
    issues: list[str],
    result: ExtractionResult,
    expected: str,
    detected: str,
    reason: str,
) -> RuleResult:
    return RuleResult(
        status=RequestStatus.REJECTED,
        confidence=0.0,
        risk_score=1.0,
        issues=issues,
        validation_results={
            "document_type_check": {
                "status": "failed",
                "expected": expected,
                "detected": detected,
                "message": reason,
            }
        },
        fraud_indicators=list(result.fraud_indicators),
        wrong_document=True,
        detected_document_type=detected,
        expected_document_type=expected,
    )


def _build_search_text(extracted_data: Mapping[str, Any], remarks: str = "") -> str:
    """Join every extracted value and the collaborator's remarks into one blob."""
    parts = [str(v) for v in extracted_data.values() if v is not None]
    if remarks:
        parts.append(remarks)
    for key in _SEARCH_EXTRA_FIELDS:
        if extracted_data.get(key):
            parts.append(str(extracted_data[key]))
    return " ".join(parts)
