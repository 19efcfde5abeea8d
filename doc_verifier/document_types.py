"""
Document-type reference data.

Two kinds of reference data live here:
  1. The seed catalogue of global document types (document_types.json),
     loaded into the store at startup with owner=None.
  2. Confusion rules for document types that are easy to mix up. A 12th
     class marksheet and a 10th class marksheet look alike to a model,
     so the rule engine double-checks the extracted text for keywords
     that give the real type away.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path

from .models import DocumentTypeConfig

# ─── Seed Catalogue ──────────────────────────────────────────────────


def load_document_types(path: str | Path | None = None) -> list[DocumentTypeConfig]:
    """Load the global document-type catalogue from JSON.

    Args:
        path: Path to document_types.json. Defaults to project root.
    """
    resolved = (
        Path(__file__).parent.parent / "document_types.json" if path is None else Path(path)
    )

    with resolved.open(encoding="utf-8") as f:
        raw: list[dict] = json.load(f)
    return [DocumentTypeConfig(**entry) for entry in raw]


# ─── Confusion Rules ─────────────────────────────────────────────────

SSC_LABEL = "10th Class Marksheet (SSC / Secondary School)"
HSC_LABEL = "12th Class Marksheet (HSC / Higher Secondary)"


@dataclass(frozen=True)
class ConfusionRule:
    """Keywords that reveal a document is the look-alike type, not the claimed one."""

    expected: str
    detected_if_rejected: str
    reject_keywords: tuple[str, ...] = ()
    reject_patterns: tuple[re.Pattern[str], ...] = ()
    # A pattern hit is ignored when any of these is also present
    override_if_present: tuple[str, ...] = field(default=())


CONFUSION_RULES: dict[str, ConfusionRule] = {
    "marksheet_10": ConfusionRule(
        expected=SSC_LABEL,
        detected_if_rejected=HSC_LABEL,
        reject_keywords=(
            "higher secondary", "hsc", "senior secondary",
            "class xii", "class-xii", "12th", "xiith",
            "intermediate", "plus two", "higher sec",
        ),
    ),
    "marksheet_12": ConfusionRule(
        expected=HSC_LABEL,
        detected_if_rejected=SSC_LABEL,
        reject_keywords=("sslc", "matriculation exam"),
        reject_patterns=(
            re.compile(r"\bsecondary\s+school\s+certificate\b", re.IGNORECASE),
            re.compile(r"\bssc\s+exam", re.IGNORECASE),
            re.compile(r"\bclass\s+x\b(?!\s*i)", re.IGNORECASE),
            re.compile(r"\b10th\s+(class|standard|std)", re.IGNORECASE),
        ),
        override_if_present=("higher secondary", "hsc", "senior secondary"),
    ),
}
