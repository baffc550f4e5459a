"""
Field Validator - canonicalizes and validates collected field values.

Every value extracted from a user message passes through here before it is
written to UserData. Field-specific normalizers run first (postal code, PO box,
legal entity, IDs, mobile, email, relation aliases), then the generic
constraints declared on the field (prohibited words, minLength, maxLength,
enum, pattern) run against the normalized value.

Rejections are return values, never exceptions.
"""
import re
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..models.flow import FieldDefinition
from .evaluator import is_present
from .field_kinds import FieldKind, QUOTES, detect_field_kind
from .wordlists import WordListRegistry, word_lists

logger = logging.getLogger(__name__)


class ValidationReason(str, Enum):
    """Stable machine-readable rejection reasons"""
    MIN_LENGTH = "minLength"
    MAX_LENGTH = "maxLength"
    ENUM = "enum"
    PATTERN = "pattern"
    ZIP_INVALID = "zip_invalid"
    PO_BOX_INVALID = "po_box_invalid"
    ISRAELI_ID_INVALID = "israeli_id_invalid"
    BUSINESS_REGISTRATION_ID_INVALID = "business_registration_id_invalid"
    MOBILE_INVALID = "mobile_invalid"
    EMAIL_INVALID = "email_invalid"
    EMAIL_TYPO_SUSPECTED = "email_typo_suspected"
    PROHIBITED_WORD = "prohibited_word"


@dataclass
class ValidationResult:
    """Result of validating one field value"""
    ok: bool
    normalized_value: Any = None
    reason: Optional[ValidationReason] = None
    suggestion: Optional[str] = None
    original_value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "normalizedValue": self.normalized_value,
            "reason": self.reason.value if self.reason else None,
            "suggestion": self.suggestion,
        }


@dataclass
class ValidationBatch:
    """A patch split into accepted (normalized) values and rejections"""
    accepted: Dict[str, Any] = field(default_factory=dict)
    rejected: Dict[str, ValidationResult] = field(default_factory=dict)


# =============================================================================
# CONSTANTS
# =============================================================================

UNKNOWN_SENTINEL = "לא ידוע"

POSTAL_UNKNOWN_TOKENS = frozenset({
    "לא ידוע", "לא יודע", "לא יודעת", "unknown", "dont know", "don't know",
})

PO_BOX_NEGATIVE_TOKENS = frozenset({"אין", "לא", "ללא", "none", "no"})

POSTAL_CODE_SUGGESTION = 'נא להזין מיקוד בן 5 או 7 ספרות (לא מתחיל ב-0), או לכתוב "לא ידוע".'
PO_BOX_SUGGESTION = 'אם יש ת.ד, נא להזין את המספר (עד 7 ספרות). אם אין, לכתוב "אין".'

QUOTES_RE = re.compile(f"[{re.escape(QUOTES)}]")
EDGE_PUNCTUATION_RE = re.compile(r"^[\s.,;:!?()\[\]{}\-–—]+|[\s.,;:!?()\[\]{}\-–—]+$")
ENTITY_SEPARATORS_RE = re.compile(r"[\s/\\\-.–—,;:!?()\[\]{}]+")
ID_SEPARATORS_RE = re.compile(r"[\s\-./]+")
NON_DIGIT_RE = re.compile(r"\D")

EMAIL_RE = re.compile(r"^[\w.+\-']+@[\w\-]+(\.[\w\-]+)*\.[a-zA-Z]{2,}$")

COMMON_EMAIL_DOMAINS = (
    "gmail.com", "googlemail.com", "hotmail.com", "outlook.com", "live.com",
    "icloud.com", "yahoo.com", "yahoo.co.il", "walla.co.il", "bezeqint.net",
    "bezeqint.co.il", "012.net.il", "013.net", "netvision.net.il",
)

TLD_TYPOS = {
    ".con": ".com",
    ".cmo": ".com",
    ".comm": ".com",
    ".cm": ".com",
    ".coom": ".com",
}

# Exact normalized tokens, checked in order
LEGAL_ENTITY_EXACT: List[Tuple[str, str]] = [
    ("בעמ", "חברה פרטית"),
    ("עמ", "עוסק מורשה"),
    ("חפ", "חברה פרטית"),
    ("חצ", "חברה ציבורית"),
    ("פרטית", "חברה פרטית"),
    ("ציבורית", "חברה ציבורית"),
]

# Phrases looked for inside the normalized token, checked in order
LEGAL_ENTITY_CONTAINS: List[Tuple[str, str]] = [
    ("חברהבעמ", "חברה פרטית"),
    ("עוסקמורשה", "עוסק מורשה"),
    ("עוסקפטור", "עוסק פטור"),
    ("עוסקזעיר", "עוסק זעיר"),
    ("חברהפרטית", "חברה פרטית"),
    ("חברהציבורית", "חברה ציבורית"),
    ("שותפות", "שותפות"),
    ("עמותה", "עמותה"),
    ("אגודה", "אגודה"),
    ("authorizeddealer", "עוסק מורשה"),
    ("exempt", "עוסק פטור"),
    ("partnership", "שותפות"),
    ("private", "חברה פרטית"),
    ("public", "חברה ציבורית"),
    # "vat" is a substring of "private"
    ("vat", "עוסק מורשה"),
    ("nonprofit", "עמותה"),
    ("ngo", "עמותה"),
    ("cooperative", "אגודה"),
    ("association", "אגודה"),
]

RELATION_TO_BUSINESS_ALIASES: Dict[str, str] = {
    "בעלים": "בעלים",
    "בעל העסק": "בעלים",
    "בעלת העסק": "בעלים",
    "owner": "בעלים",
    "מנהל": "מנהל",
    "מנהלת": "מנהל",
    "manager": "מנהל",
    "שותף": "שותף",
    "שותפה": "שותף",
    "partner": "שותף",
    "אחר": "אחר",
    "other": "אחר",
}

BUILDING_RELATION_ALIASES: Dict[str, str] = {
    "בעלים": "בעלים",
    "בבעלות": "בעלים",
    "בבעלותי": "בעלים",
    "owner": "בעלים",
    "שוכר": "שוכר",
    "שוכרת": "שוכר",
    "בשכירות": "שוכר",
    "tenant": "שוכר",
    "renter": "שוכר",
}

# Registration number prefix -> legal entity label
REGISTRATION_PREFIX_ENTITIES: Dict[str, str] = {
    "50": "חברה פרטית",  # government company
    "51": "חברה פרטית",
    "52": "חברה ציבורית",
    "53": "שותפות",
    "54": "שותפות",
    "55": "שותפות",
    "56": "חברה פרטית",  # foreign company
    "57": "אגודה",
    "58": "עמותה",
    "59": "עמותה",
}

REJECTION_MESSAGES: Dict[ValidationReason, str] = {
    ValidationReason.MIN_LENGTH: "הערך קצר מדי",
    ValidationReason.MAX_LENGTH: "הערך ארוך מדי",
    ValidationReason.ENUM: "יש לבחור אחת מהאפשרויות",
    ValidationReason.PATTERN: "הערך אינו בפורמט הנדרש",
    ValidationReason.ZIP_INVALID: POSTAL_CODE_SUGGESTION,
    ValidationReason.PO_BOX_INVALID: PO_BOX_SUGGESTION,
    ValidationReason.ISRAELI_ID_INVALID: "מספר תעודת הזהות אינו תקין",
    ValidationReason.BUSINESS_REGISTRATION_ID_INVALID: "מספר הרישום של העסק אינו תקין",
    ValidationReason.MOBILE_INVALID: "מספר הנייד אינו תקין",
    ValidationReason.EMAIL_INVALID: "כתובת האימייל אינה תקינה",
    ValidationReason.EMAIL_TYPO_SUSPECTED: "נראה שיש טעות הקלדה בכתובת האימייל",
    ValidationReason.PROHIBITED_WORD: "הערך מכיל מילים שאינן מותרות",
}


# =============================================================================
# NORMALIZERS
# =============================================================================

def strip_quotes(value: str) -> str:
    return QUOTES_RE.sub("", value)


def collapse_spaces(value: str) -> str:
    return " ".join(value.split())


def normalize_mobile(value: Any) -> Optional[str]:
    """
    Canonicalize an Israeli mobile number to 05XXXXXXXX.

    Accepts 5XXXXXXXX, 05XXXXXXXX, 9725XXXXXXXX and 97205XXXXXXXX (with any
    separators or a leading +). Returns None when the input is not a mobile.
    """
    digits = re.sub(r"\D", "", str(value or ""))
    if len(digits) == 9 and digits.startswith("5"):
        return "0" + digits
    if len(digits) == 10 and digits.startswith("05"):
        return digits
    if len(digits) == 12 and digits.startswith("9725"):
        return "0" + digits[3:]
    if len(digits) == 13 and digits.startswith("97205"):
        return "0" + digits[4:]
    return None


def normalize_id_digits(value: Any) -> Optional[str]:
    """Digits of an ID left-padded to 9, or None if it has other characters or too many digits."""
    cleaned = ID_SEPARATORS_RE.sub("", strip_quotes(str(value or "")))
    if not cleaned or not cleaned.isdigit() or len(cleaned) > 9:
        return None
    return cleaned.zfill(9)


def id_checksum_valid(digits: str) -> bool:
    """Weighted checksum used by Israeli ID and registration numbers."""
    if len(digits) != 9 or not digits.isdigit():
        return False
    total = 0
    for i, char in enumerate(digits):
        product = int(char) * (1 if i % 2 == 0 else 2)
        total += product if product < 10 else product - 9
    return total % 10 == 0


def infer_legal_entity_type(registration_id: Any) -> Optional[str]:
    """
    Guess the legal entity label from a registration number prefix.

    Returns None when the number is not a valid 9-digit registration number.
    """
    digits = normalize_id_digits(registration_id)
    if digits is None or not id_checksum_valid(digits):
        return None
    return REGISTRATION_PREFIX_ENTITIES.get(digits[:2], "עוסק מורשה")


def legal_entity_token(value: str) -> str:
    return ENTITY_SEPARATORS_RE.sub("", strip_quotes(value)).lower()


def normalize_legal_entity(value: Any) -> Optional[str]:
    """Map an abbreviation or phrase to a canonical legal entity label."""
    token = legal_entity_token(str(value or ""))
    if not token:
        return None
    for alias, label in LEGAL_ENTITY_EXACT:
        if token == alias:
            return label
    if token.endswith("בעמ"):
        return "חברה פרטית"
    for phrase, label in LEGAL_ENTITY_CONTAINS:
        if phrase in token:
            return label
    return None


def _alias_lookup(value: Any, aliases: Dict[str, str]) -> Optional[str]:
    key = collapse_spaces(strip_quotes(str(value or ""))).strip(" .,!?").lower()
    return aliases.get(key)


def normalize_relation_to_business(value: Any) -> Optional[str]:
    return _alias_lookup(value, RELATION_TO_BUSINESS_ALIASES)


def normalize_building_relation(value: Any) -> Optional[str]:
    return _alias_lookup(value, BUILDING_RELATION_ALIASES)


def normalize_postal_code(value: Any) -> Tuple[bool, Any]:
    """Returns (ok, normalized). Unknown answers and all-zero codes become the sentinel."""
    text = collapse_spaces(strip_quotes(str(value))).strip()
    if text.lower() in POSTAL_UNKNOWN_TOKENS:
        return True, UNKNOWN_SENTINEL
    digits = NON_DIGIT_RE.sub("", text)
    if digits:
        if set(digits) == {"0"}:
            return True, UNKNOWN_SENTINEL
        if len(digits) in (5, 7) and not digits.startswith("0"):
            return True, digits
    return False, text


def normalize_po_box(value: Any) -> Tuple[bool, Any]:
    """Returns (ok, normalized). Negative answers become False, numbers a digit string."""
    if value is False:
        return True, False
    text = EDGE_PUNCTUATION_RE.sub("", strip_quotes(str(value))).strip()
    lowered = text.lower()
    if lowered in PO_BOX_NEGATIVE_TOKENS or lowered.startswith("אין "):
        return True, False
    # "ת.ד 105" -> "105"
    digits = NON_DIGIT_RE.sub("", text)
    if digits and len(digits) <= 7:
        return True, digits
    return False, text


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def normalize_email(value: Any) -> str:
    """Trim, keep the local part as typed, lower-case the domain."""
    text = str(value or "").strip()
    if "@" not in text:
        return text
    local, _, domain = text.rpartition("@")
    return f"{local}@{domain.lower()}"


def suggest_email(value: str) -> Optional[str]:
    """Suggest a corrected address for common TLD and provider typos."""
    if "@" not in value:
        return None
    local, _, domain = value.rpartition("@")
    if not local or not domain:
        return None

    fixed = domain.lower().rstrip(".")
    for typo, replacement in TLD_TYPOS.items():
        if fixed.endswith(typo):
            fixed = fixed[: -len(typo)] + replacement
            break

    candidate = fixed
    if fixed not in COMMON_EMAIL_DOMAINS:
        best, best_distance = None, None
        for known in COMMON_EMAIL_DOMAINS:
            distance = levenshtein(fixed, known)
            if best_distance is None or distance < best_distance:
                best, best_distance = known, distance
        if best is not None and 0 < best_distance <= 2:
            candidate = best

    if candidate == domain:
        return None
    return f"{local}@{candidate}"


# =============================================================================
# VALIDATOR
# =============================================================================

class FieldValidator:
    """
    Validates one field value against its definition.

    Usage:
        validator = FieldValidator()
        result = validator.validate("zip_code", field_def, "1234567")
        if result.ok:
            user_data["zip_code"] = result.normalized_value
    """

    def __init__(self, word_list_registry: Optional[WordListRegistry] = None):
        self.word_lists = word_list_registry or word_lists

    def validate(self, field_slug: str, field_def: Optional[FieldDefinition], raw_value: Any) -> ValidationResult:
        """
        Validate and normalize a field value.

        Args:
            field_slug: Field key in the flow definition
            field_def: Field definition (None means no constraints)
            raw_value: Value as extracted from the user message

        Returns:
            ValidationResult with the normalized value or a rejection reason
        """
        if not is_present(raw_value):
            return ValidationResult(ok=True, normalized_value=raw_value, original_value=raw_value)

        if field_def is None:
            field_def = FieldDefinition()
        if not field_def.is_string:
            return ValidationResult(ok=True, normalized_value=raw_value, original_value=raw_value)

        kind = detect_field_kind(field_slug, field_def)

        # Postal code and PO box: kind check first, then the generic constraints.
        # "Unknown" and "no PO box" answers are final.
        if kind in (FieldKind.POSTAL_CODE, FieldKind.PO_BOX):
            if kind == FieldKind.POSTAL_CODE:
                ok, normalized = normalize_postal_code(raw_value)
                reason, suggestion = ValidationReason.ZIP_INVALID, POSTAL_CODE_SUGGESTION
            else:
                ok, normalized = normalize_po_box(raw_value)
                reason, suggestion = ValidationReason.PO_BOX_INVALID, PO_BOX_SUGGESTION
            if not ok:
                return self._reject(normalized, raw_value, reason, suggestion)
            if normalized is False or normalized == UNKNOWN_SENTINEL:
                return self._accept(normalized, raw_value)
            return self._check_constraints(field_slug, field_def, normalized, raw_value)

        value = collapse_spaces(str(raw_value))

        special = self._normalize_special(kind, value, raw_value)
        if isinstance(special, ValidationResult):
            return special
        value = special

        return self._check_constraints(field_slug, field_def, value, raw_value)

    def validate_many(self, fields_schema: Dict[str, FieldDefinition], values: Dict[str, Any]) -> ValidationBatch:
        """
        Validate a patch of extracted values.

        Values that are not present are skipped; fields missing from the schema
        are validated without constraints.
        """
        batch = ValidationBatch()
        for field_slug, raw_value in (values or {}).items():
            if not is_present(raw_value):
                continue
            result = self.validate(field_slug, fields_schema.get(field_slug), raw_value)
            if result.ok:
                batch.accepted[field_slug] = result.normalized_value
            else:
                logger.info(
                    f"Rejected value for '{field_slug}': reason={result.reason.value}"
                )
                batch.rejected[field_slug] = result
        return batch

    @staticmethod
    def rejection_message(result: ValidationResult) -> str:
        """Short Hebrew re-prompt for a rejection (with the suggestion when there is one)."""
        if result.ok or result.reason is None:
            return ""
        message = REJECTION_MESSAGES.get(result.reason, "הערך אינו תקין")
        if result.suggestion and result.suggestion != message:
            if result.reason in (ValidationReason.EMAIL_INVALID, ValidationReason.EMAIL_TYPO_SUSPECTED):
                return f"{message}. האם התכוונת ל-{result.suggestion}?"
            return f"{message}. {result.suggestion}"
        return message

    # ----- Special cases -----

    def _normalize_special(self, kind: FieldKind, value: str, raw_value: Any):
        """Returns the normalized string, or a ValidationResult when the value is rejected."""
        if kind == FieldKind.EMAIL:
            normalized = normalize_email(value)
            suggestion = suggest_email(normalized)
            if not EMAIL_RE.match(normalized):
                return self._reject(normalized, raw_value, ValidationReason.EMAIL_INVALID, suggestion)
            if suggestion:
                return self._reject(normalized, raw_value, ValidationReason.EMAIL_TYPO_SUSPECTED, suggestion)
            return normalized

        if kind == FieldKind.MOBILE_PHONE:
            normalized = normalize_mobile(value)
            if normalized is None:
                return self._reject(value, raw_value, ValidationReason.MOBILE_INVALID)
            return normalized

        if kind in (FieldKind.NATIONAL_ID, FieldKind.REGISTRATION_ID):
            reason = (
                ValidationReason.ISRAELI_ID_INVALID
                if kind == FieldKind.NATIONAL_ID
                else ValidationReason.BUSINESS_REGISTRATION_ID_INVALID
            )
            digits = normalize_id_digits(value)
            if digits is None or not id_checksum_valid(digits):
                return self._reject(value, raw_value, reason)
            return digits

        if kind == FieldKind.LEGAL_ENTITY_TYPE:
            return normalize_legal_entity(value) or value

        if kind == FieldKind.RELATION_TO_BUSINESS:
            return normalize_relation_to_business(value) or value

        if kind == FieldKind.BUILDING_RELATION:
            return normalize_building_relation(value) or value

        return value

    # ----- Generic constraints -----

    def _check_constraints(self, field_slug: str, field_def: FieldDefinition, value: str, raw_value: Any) -> ValidationResult:
        if field_def.prohibited_words_list:
            blocked = self.word_lists.find_match(field_def.prohibited_words_list, value)
            if blocked:
                logger.info(f"Prohibited word in '{field_slug}'")
                return self._reject(value, raw_value, ValidationReason.PROHIBITED_WORD)

        if field_def.min_length is not None and len(value) < field_def.min_length:
            return self._reject(value, raw_value, ValidationReason.MIN_LENGTH)

        if field_def.max_length is not None and len(value) > field_def.max_length:
            return self._reject(value, raw_value, ValidationReason.MAX_LENGTH)

        if field_def.enum:
            if value not in field_def.enum:
                folded = {option.lower(): option for option in field_def.enum}
                if value.lower() not in folded:
                    return self._reject(value, raw_value, ValidationReason.ENUM)
                value = folded[value.lower()]

        if field_def.pattern:
            try:
                compiled = re.compile(field_def.pattern)
            except re.error as e:
                logger.warning(f"Skipping invalid pattern on '{field_slug}': {e}")
            else:
                if not compiled.search(value):
                    return self._reject(value, raw_value, ValidationReason.PATTERN)

        return self._accept(value, raw_value)

    @staticmethod
    def _accept(normalized: Any, raw_value: Any) -> ValidationResult:
        return ValidationResult(ok=True, normalized_value=normalized, original_value=raw_value)

    @staticmethod
    def _reject(
        normalized: Any,
        raw_value: Any,
        reason: ValidationReason,
        suggestion: Optional[str] = None,
    ) -> ValidationResult:
        return ValidationResult(
            ok=False,
            normalized_value=normalized,
            reason=reason,
            suggestion=suggestion,
            original_value=raw_value,
        )


# Default validator (uses the shared word list registry)
field_validator = FieldValidator()


def validate_field(field_slug: str, field_def: Optional[FieldDefinition], raw_value: Any) -> ValidationResult:
    """Convenience function to validate a single field."""
    return field_validator.validate(field_slug, field_def, raw_value)
