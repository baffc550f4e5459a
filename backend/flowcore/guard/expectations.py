"""
Expected field derivation.

The expected set for a turn is the caller's hint plus whatever the last
question talks about: concepts recognized by the field kind keyword tables
(with their companion kinds) and fields whose description is quoted in the
question.
"""
import re
import logging
from typing import Dict, List, Optional

from ..flow.field_kinds import RELATED_KINDS, fields_of_kind, kinds_in_text
from ..models.flow import FieldDefinition

logger = logging.getLogger(__name__)

MIN_DESCRIPTION_MATCH_LENGTH = 4


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[\"'“”׳״?.,:;!()]", " ", text or "")).strip().lower()


def fields_from_question(question: Optional[str], fields_schema: Dict[str, FieldDefinition]) -> List[str]:
    """Fields the question text asks about, in schema order."""
    if not question or not fields_schema:
        return []

    kinds = set(kinds_in_text(question))
    for kind in list(kinds):
        kinds.update(RELATED_KINDS.get(kind, set()))
    matched = set(fields_of_kind(fields_schema, kinds)) if kinds else set()

    normalized_question = _normalize(question)
    for field_slug, field_def in fields_schema.items():
        description = _normalize(field_def.description)
        if len(description) >= MIN_DESCRIPTION_MATCH_LENGTH and description in normalized_question:
            matched.add(field_slug)
            continue
        readable_slug = field_slug.replace("_", " ").lower()
        if len(readable_slug) >= MIN_DESCRIPTION_MATCH_LENGTH and readable_slug in normalized_question:
            matched.add(field_slug)

    return [f for f in fields_schema if f in matched]


def derive_expected_fields(
    hint: Optional[List[str]],
    last_question_text: Optional[str],
    fields_schema: Dict[str, FieldDefinition],
) -> List[str]:
    """
    Compute the expected field set for a turn.

    When the question narrows the hint (non-empty intersection) the
    intersection wins; otherwise hint and question fields are combined.

    Returns:
        Ordered list of field slugs (hint order first)
    """
    hinted = [f for f in (hint or []) if f in fields_schema]
    from_question = fields_from_question(last_question_text, fields_schema)

    if hinted and from_question:
        narrowed = [f for f in hinted if f in from_question]
        if narrowed:
            logger.debug(f"Expected fields narrowed by question: {narrowed}")
            return narrowed

    expected = list(hinted)
    for field_slug in from_question:
        if field_slug not in expected:
            expected.append(field_slug)
    return expected
