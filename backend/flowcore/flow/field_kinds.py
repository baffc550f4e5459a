"""
Field Kinds - classify flow fields into the domain concepts the validator and
the extraction guard know how to handle (postal code, PO box, mobile, ...).

Classification looks at the field slug first, then at its description. A flow
author can also pin the kind explicitly with `"kind": "<value>"` on the field.
"""
import re
from enum import Enum
from functools import lru_cache
from typing import Dict, List, Optional, Pattern, Set, Tuple

from ..models.flow import FieldDefinition


class FieldKind(str, Enum):
    """Domain concepts recognized by the flow core"""
    PO_BOX = "po_box"
    POSTAL_CODE = "postal_code"
    LEGAL_ENTITY_TYPE = "legal_entity_type"
    EMAIL = "email"
    REGISTRATION_ID = "registration_id"
    NATIONAL_ID = "national_id"
    MOBILE_PHONE = "mobile_phone"
    RELATION_TO_BUSINESS = "relation_to_business"
    BUILDING_RELATION = "building_relation"
    HOUSE_NUMBER = "house_number"
    FIRST_NAME = "first_name"
    LAST_NAME = "last_name"
    BUSINESS_NAME = "business_name"
    FULL_NAME = "full_name"
    CITY = "city"
    STREET = "street"
    DATE = "date"
    COUNT = "count"
    BUSINESS_SEGMENT = "business_segment"
    GENERIC = "generic"


# Quote-like characters, including Hebrew geresh/gershayim used in abbreviations
QUOTES = "“”\"׳״'’`´"
_Q = "[\"״׳'’]?"
# Hebrew abbreviations must stand alone, not inside a longer Hebrew word
_NB = r"(?<![\u0590-\u05FF])"
_NA = r"(?![\u0590-\u05FF])"

# Order matters: the first matching kind wins
SLUG_PATTERNS: List[Tuple[FieldKind, Pattern]] = [
    (FieldKind.PO_BOX, re.compile(r"po_?box|pobox|mailbox")),
    (FieldKind.POSTAL_CODE, re.compile(r"zip|postal|postcode|mikud")),
    (FieldKind.LEGAL_ENTITY_TYPE, re.compile(r"legal_entity|entity_type")),
    (FieldKind.EMAIL, re.compile(r"e_?mail")),
    (FieldKind.REGISTRATION_ID, re.compile(r"regnum|reg_num|registration|company_number|company_id|business_id|hp_number|vat_number")),
    (FieldKind.NATIONAL_ID, re.compile(r"(^|_)(id_number|national_id|israeli_id|legal_id|tz|teudat|zehut)($|_)")),
    (FieldKind.MOBILE_PHONE, re.compile(r"mobile|phone|cell")),
    (FieldKind.RELATION_TO_BUSINESS, re.compile(r"relation_to_business|role_in_business|(^|_)role$")),
    (FieldKind.BUILDING_RELATION, re.compile(r"building_relation|property_relation|premises_ownership|building_owner")),
    (FieldKind.HOUSE_NUMBER, re.compile(r"house_number|house_no|building_number|street_number")),
    (FieldKind.FIRST_NAME, re.compile(r"first_name")),
    (FieldKind.LAST_NAME, re.compile(r"last_name|surname|family_name")),
    (FieldKind.BUSINESS_NAME, re.compile(r"business_name|organization_name|company_name|entity_name")),
    (FieldKind.FULL_NAME, re.compile(r"full_name|(^|_)name$")),
    (FieldKind.CITY, re.compile(r"city|town|settlement")),
    (FieldKind.STREET, re.compile(r"street|address")),
    (FieldKind.DATE, re.compile(r"date|(^|_)dob($|_)|birthday")),
    (FieldKind.COUNT, re.compile(r"count|num_of|number_of|employees|quantity|(^|_)num_")),
    (FieldKind.BUSINESS_SEGMENT, re.compile(r"segment|industry|occupation|business_type")),
]

# Also used to read the question the assistant just asked
TEXT_PATTERNS: List[Tuple[FieldKind, Pattern]] = [
    (FieldKind.PO_BOX, re.compile(rf"{_NB}ת{_Q}\.?\s?{_Q}ד{_NA}|תא\s*דואר|תיבת\s*דואר|p\.?\s?o\.?\s*box", re.IGNORECASE)),
    (FieldKind.POSTAL_CODE, re.compile(r"מיקוד|zip|postal", re.IGNORECASE)),
    (FieldKind.LEGAL_ENTITY_TYPE, re.compile(r"י?ישות\s*משפטית|סוג\s*(ה)?(עסק|תאגיד|ישות)|legal\s*entity", re.IGNORECASE)),
    (FieldKind.EMAIL, re.compile(rf"דואר\s*אלקטרוני|אימייל|מייל|דוא{_Q}ל|e-?mail", re.IGNORECASE)),
    (FieldKind.REGISTRATION_ID, re.compile(rf"{_NB}ח{_Q}פ{_NA}|{_NB}ע{_Q}מ{_NA}|מספר\s*רישום|מספר\s*עוסק|registration\s*(number|id)|company\s*(number|id)", re.IGNORECASE)),
    (FieldKind.NATIONAL_ID, re.compile(rf"{_NB}ת{_Q}ז{_NA}|תעודת\s*זהות|מספר\s*זהות|national\s*id|id\s*number", re.IGNORECASE)),
    (FieldKind.MOBILE_PHONE, re.compile(r"נייד|טלפון|פלאפון|mobile|phone", re.IGNORECASE)),
    (FieldKind.RELATION_TO_BUSINESS, re.compile(r"קשר\s*(שלך\s*)?ל?עסק|תפקידך|התפקיד\s*שלך|relation\s*to\s*(the\s*)?business|your\s*role", re.IGNORECASE)),
    (FieldKind.BUILDING_RELATION, re.compile(r"בעלים\s*או\s*שוכר|שוכר(ים|ת)?\s*או\s*בעלים|owner\s*or\s*(a\s*)?tenant|rent\s*or\s*own", re.IGNORECASE)),
    (FieldKind.HOUSE_NUMBER, re.compile(rf"מס{_Q}\s*בית|מספר\s*(ה)?בית|house\s*number", re.IGNORECASE)),
    (FieldKind.FIRST_NAME, re.compile(r"שם\s*פרטי|first\s*name", re.IGNORECASE)),
    (FieldKind.LAST_NAME, re.compile(r"שם\s*(ה)?משפחה|last\s*name|surname", re.IGNORECASE)),
    (FieldKind.BUSINESS_NAME, re.compile(r"שם\s*(ה)?(עסק|חברה|ארגון)|business\s*name|company\s*name", re.IGNORECASE)),
    (FieldKind.FULL_NAME, re.compile(r"שם\s*מלא|שמך|איך\s*קוראים\s*לך|full\s*name|your\s*name", re.IGNORECASE)),
    (FieldKind.CITY, re.compile(r"עיר|יישוב|ישוב|city|town", re.IGNORECASE)),
    (FieldKind.STREET, re.compile(r"רחוב|כתובת|street|address", re.IGNORECASE)),
    (FieldKind.DATE, re.compile(r"תאריך|מאיזה\s*יום|date", re.IGNORECASE)),
    (FieldKind.COUNT, re.compile(r"כמה|מספר\s*(ה)?עובדים|how\s*many|number\s*of", re.IGNORECASE)),
    (FieldKind.BUSINESS_SEGMENT, re.compile(r"תחום\s*(ה)?(עיסוק|פעילות)|ענף|industry|segment|line\s*of\s*business", re.IGNORECASE)),
]

# Asking for one concept usually means the companion fields are fair game too
RELATED_KINDS: Dict[FieldKind, Set[FieldKind]] = {
    FieldKind.FULL_NAME: {FieldKind.FIRST_NAME, FieldKind.LAST_NAME},
    FieldKind.STREET: {FieldKind.HOUSE_NUMBER},
}

ADDRESS_KINDS = frozenset({
    FieldKind.CITY, FieldKind.STREET, FieldKind.HOUSE_NUMBER,
    FieldKind.POSTAL_CODE, FieldKind.PO_BOX,
})
IDENTIFIER_KINDS = frozenset({FieldKind.REGISTRATION_ID, FieldKind.NATIONAL_ID})
NAME_KINDS = frozenset({FieldKind.FIRST_NAME, FieldKind.LAST_NAME, FieldKind.FULL_NAME})


@lru_cache(maxsize=2048)
def _detect(slug: str, description: str, pinned: str) -> FieldKind:
    if pinned:
        try:
            return FieldKind(pinned)
        except ValueError:
            pass

    lowered = slug.lower()
    for kind, pattern in SLUG_PATTERNS:
        if pattern.search(lowered):
            return kind

    if description:
        for kind, pattern in TEXT_PATTERNS:
            if pattern.search(description):
                return kind

    return FieldKind.GENERIC


def detect_field_kind(field_slug: str, field_def: Optional[FieldDefinition] = None) -> FieldKind:
    """
    Classify a field.

    Args:
        field_slug: Field key in the flow definition
        field_def: Field definition (description and optional pinned kind)

    Returns:
        The detected FieldKind (GENERIC when nothing matches)
    """
    description = ""
    pinned = ""
    if field_def is not None:
        description = field_def.description or ""
        extra = field_def.model_extra or {}
        pinned = str(extra.get("kind") or "")
    return _detect(field_slug or "", description, pinned)


def kinds_in_text(text: str) -> List[FieldKind]:
    """All concepts a piece of text (usually a question) talks about, in table order."""
    if not text:
        return []
    found: List[FieldKind] = []
    for kind, pattern in TEXT_PATTERNS:
        if pattern.search(text) and kind not in found:
            found.append(kind)
    return found


def fields_of_kind(fields_schema: Dict[str, FieldDefinition], kinds) -> List[str]:
    """Field slugs in the schema whose kind is in `kinds`, in schema order."""
    wanted = set(kinds)
    return [
        slug for slug, field_def in fields_schema.items()
        if detect_field_kind(slug, field_def) in wanted
    ]
