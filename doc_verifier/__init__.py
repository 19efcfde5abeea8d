"""
Document Verifier: asynchronous accept/reject verdicts for submitted documents.

Architecture: Queue → Extract (AI) → Validate (code) → Score (rules) → Persist → Notify
Philosophy:  Trust the AI to read. Trust only code to decide.
"""

__version__ = "1.0.0"
