#!/usr/bin/env python3
"""
Document Verifier: Offline Demo
================================

Runs the deterministic half of the pipeline (validators + rule engine) on a
collaborator response, without touching the network or the database.

Usage:
    python main.py                              # Built-in sample PAN card
    python main.py response.json pan            # Your own collaborator JSON
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

from doc_verifier.config import load_settings
from doc_verifier.document_types import load_document_types
from doc_verifier.extractor_llm import coerce_extraction
from doc_verifier.models import ExtractionResult, RequestStatus, RuleResult, ValidationOutcome
from doc_verifier.pipeline import merge_validation
from doc_verifier.rules import score_document
from doc_verifier.validators import validate_all

# ─── Sample Collaborator Response ───────────────────────────────────

SAMPLE_DOCUMENT_TYPE = "pan"
SAMPLE_METADATA = {"name": "Rahul Sharma"}

SAMPLE_RESPONSE = {
    "document_type_match": True,
    "detected_document_type": "PAN Card",
    "expected_document_type": "pan",
    "status": "verified",
    "confidence": 92,
    "risk_score": 0.05,
    "extracted_data": {
        "name": "Rahul Sharma",
        "father_name": "Suresh Sharma",
        "dob": "14/05/1990",
        "pan_number": "ABCDE1234F",
    },
    "issues": [],
    "fraud_indicators": [],
    "metadata_match": {
        "name": {"matches": True, "extracted": "Rahul Sharma", "expected": "Rahul Sharma"}
    },
    "is_genuine": True,
    "authenticity_checks": {
        "tampering_detected": False,
        "has_security_features": True,
        "font_consistency": True,
        "layout_matches_official": True,
        "photo_integrity": True,
        "is_original_document": True,
        "image_quality": "good",
    },
    "remarks": "Clear scan of an Income Tax Department PAN card",
}


# ─── ANSI Color Constants ───────────────────────────────────────────

_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"
_BOLD = "\033[1m"
_RESET = "\033[0m"
_WIDTH = 72


# ─── Pretty Printer Helpers ─────────────────────────────────────────


def _print_extracted(result: ExtractionResult) -> None:
    for key, value in result.extracted_data.items():
        print(f"  {key + ':':<16} {value}")


def _print_checks(outcome: ValidationOutcome) -> None:
    """One line per validator check."""
    for name, check in outcome.results.items():
        mark = f"{_GREEN}pass{_RESET}" if check.valid else f"{_RED}FAIL{_RESET}"
        print(f"  {name:<18} {mark}")


def _print_issues(issues: list[str]) -> None:
    if not issues:
        return
    print(f"\n  {_YELLOW}{_BOLD}ISSUES ({len(issues)}){_RESET}")
    for issue in issues:
        print(f"    - {issue}")
    print()


# ─── Pretty Printer ─────────────────────────────────────────────────


def print_report(
    document_type: str,
    result: ExtractionResult,
    outcome: ValidationOutcome,
    verdict: RuleResult,
) -> int:
    """Pretty-print the verdict with ANSI color codes.

    Returns:
        0 if the document was verified, 1 otherwise.
    """
    print(f"\n{'=' * _WIDTH}")
    print(f"{_BOLD}{_CYAN}  DOCUMENT VERIFICATION REPORT{_RESET}")
    print(f"{'=' * _WIDTH}")
    print(f"  Type:        {document_type}")
    print(f"  AI says:     {result.status.value} "
          f"{_DIM}(confidence {result.confidence}, risk {result.risk_score}){_RESET}")
    print(f"{'─' * _WIDTH}")
    _print_extracted(result)
    print(f"{'─' * _WIDTH}")
    _print_checks(outcome)
    _print_issues(verdict.issues)

    print(f"{'=' * _WIDTH}")
    summary = f"confidence {verdict.confidence}, risk {verdict.risk_score}"
    if verdict.wrong_document:
        print(f"  {_RED}{_BOLD}WRONG DOCUMENT  --  looks like {verdict.detected_document_type}{_RESET}")
    elif verdict.status == RequestStatus.VERIFIED:
        print(f"  {_GREEN}{_BOLD}DOCUMENT VERIFIED  --  {summary}{_RESET}")
    else:
        print(f"  {_RED}{_BOLD}DOCUMENT REJECTED  --  {summary}{_RESET}")
    print(f"{'=' * _WIDTH}\n")

    return 0 if verdict.status == RequestStatus.VERIFIED else 1


# ─── Main ────────────────────────────────────────────────────────────


def main():
    """Score a collaborator response offline and print the report."""
    settings = load_settings()
    logging.basicConfig(level=settings.log_level)

    if len(sys.argv) > 1:
        raw = json.loads(Path(sys.argv[1]).read_text(encoding="utf-8"))
        document_type = sys.argv[2] if len(sys.argv) > 2 else SAMPLE_DOCUMENT_TYPE
        metadata: dict = {}
    else:
        raw, document_type, metadata = SAMPLE_RESPONSE, SAMPLE_DOCUMENT_TYPE, SAMPLE_METADATA

    configs = {c.code: c for c in load_document_types()}
    result = coerce_extraction(raw)
    outcome = validate_all(document_type, result.extracted_data, metadata)
    merged = merge_validation(result, outcome)
    verdict = score_document(document_type, merged.extracted_data, merged, configs.get(document_type))

    sys.exit(print_report(document_type, result, outcome, verdict))


if __name__ == "__main__":
    main()
