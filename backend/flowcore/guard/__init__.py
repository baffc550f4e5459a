"""
Extraction Guard package
"""
from .pipeline import (
    ExtractionGuard,
    FieldExtractor,
    describe_fields,
    extraction_guard,
    apply_guard,
)
from .rules import (
    CorrectionRule,
    ExtractionPatch,
    GuardState,
    DEFAULT_RULES,
)
from .expectations import derive_expected_fields, fields_from_question
from .names import extract_name
from .first_turn import extract_first_turn

__all__ = [
    "ExtractionGuard",
    "FieldExtractor",
    "describe_fields",
    "extraction_guard",
    "apply_guard",
    "CorrectionRule",
    "ExtractionPatch",
    "GuardState",
    "DEFAULT_RULES",
    "derive_expected_fields",
    "fields_from_question",
    "extract_name",
    "extract_first_turn",
]
