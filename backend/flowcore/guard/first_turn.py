"""
First-turn opportunistic extraction.

Before any question was asked, users often introduce themselves in one
message ("היי, אני דנה, בעלת משרד עורכי דין, 050-1234567"). These extractors
pull name, role, mobile and a coarse business segment from that message, for
fields that exist in the schema.
"""
import re
import logging
from typing import Any, Dict, List, Optional, Tuple, Pattern

from ..flow.field_kinds import FieldKind, fields_of_kind
from ..flow.field_validation import normalize_mobile
from ..models.flow import FieldDefinition
from .names import extract_name

logger = logging.getLogger(__name__)

MOBILE_RE = re.compile(r"(?<!\d)(?:\+?972[\s\-]?0?|0)?5\d(?:[\s\-]?\d){7}(?!\d)")

ROLE_PATTERNS: List[Tuple[Pattern, str]] = [
    (re.compile(r"בעל(ת)?\s+ה?(עסק|משרד|חנות|מסעדה|קליניקה)|הבעלים|\bowner\b", re.IGNORECASE), "בעלים"),
    (re.compile(r"(?<![א-ת])מנהל(ת)?(?![א-ת])|\bmanager\b", re.IGNORECASE), "מנהל"),
    (re.compile(r"(?<![א-ת])שותפ(ה)?(?![א-ת])|(?<![א-ת])שותף(?![א-ת])|\bpartner\b", re.IGNORECASE), "שותף"),
]

SEGMENT_PATTERNS: List[Tuple[Pattern, str]] = [
    (re.compile(r"עורכ(י|ת)?\s+דין|עו\"?ד|law\s+(office|firm)|lawyer", re.IGNORECASE), "משרד עורכי דין"),
    (re.compile(r"רוא(ה|ת|י)\s+חשבון|רו\"?ח|accountant", re.IGNORECASE), "רואי חשבון"),
    (re.compile(r"אדריכל|architect", re.IGNORECASE), "אדריכלים"),
    (re.compile(r"מסעד(ה|ת)|restaurant", re.IGNORECASE), "מסעדה"),
    (re.compile(r"חנות|\bshop\b|\bstore\b", re.IGNORECASE), "חנות"),
    (re.compile(r"קליניק(ה|ת)|clinic", re.IGNORECASE), "קליניקה"),
    (re.compile(r"מתווכ|תיווך|real\s+estate\s+agen", re.IGNORECASE), "תיווך"),
]


def _allowed(field_def: Optional[FieldDefinition], value: str) -> bool:
    if field_def is None or not field_def.enum:
        return True
    return value in field_def.enum


def extract_mobile(message: str) -> Optional[str]:
    for match in MOBILE_RE.finditer(message or ""):
        normalized = normalize_mobile(match.group(0))
        if normalized:
            return normalized
    return None


def extract_role(message: str) -> Optional[str]:
    for pattern, role in ROLE_PATTERNS:
        if pattern.search(message or ""):
            return role
    return None


def extract_segment(message: str) -> Optional[str]:
    for pattern, segment in SEGMENT_PATTERNS:
        if pattern.search(message or ""):
            return segment
    return None


def extract_first_turn(message: str, fields_schema: Dict[str, FieldDefinition]) -> Dict[str, Any]:
    """
    Deterministic extraction from an opening message.

    Args:
        message: The first user message
        fields_schema: Fields of the flow

    Returns:
        Field slug -> value for the fields found (schema fields only)
    """
    found: Dict[str, Any] = {}
    if not message or not fields_schema:
        return found

    name = extract_name(message)
    if name:
        full_name_fields = fields_of_kind(fields_schema, [FieldKind.FULL_NAME])
        first_fields = fields_of_kind(fields_schema, [FieldKind.FIRST_NAME])
        last_fields = fields_of_kind(fields_schema, [FieldKind.LAST_NAME])
        if full_name_fields:
            found[full_name_fields[0]] = name
        elif first_fields:
            parts = name.split()
            found[first_fields[0]] = parts[0]
            if last_fields and len(parts) > 1:
                found[last_fields[0]] = " ".join(parts[1:])

    role = extract_role(message)
    if role:
        for field_slug in fields_of_kind(fields_schema, [FieldKind.RELATION_TO_BUSINESS]):
            if _allowed(fields_schema[field_slug], role):
                found[field_slug] = role
                break

    mobile = extract_mobile(message)
    if mobile:
        for field_slug in fields_of_kind(fields_schema, [FieldKind.MOBILE_PHONE])[:1]:
            found[field_slug] = mobile

    segment = extract_segment(message)
    if segment:
        for field_slug in fields_of_kind(fields_schema, [FieldKind.BUSINESS_SEGMENT]):
            if _allowed(fields_schema[field_slug], segment):
                found[field_slug] = segment
                break

    if found:
        logger.debug(f"First-turn extraction found: {sorted(found)}")
    return found
