"""
Extraction guard correction rules.

Each rule takes the turn state and the current extraction and returns an
ExtractionPatch. The pipeline applies the rules in DEFAULT_RULES order and
isolates failures, so a broken heuristic only disables itself.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from ..flow.context import ExtractionContext
from ..flow.evaluator import PLACEHOLDER_TOKENS, is_present
from ..flow.field_kinds import (
    ADDRESS_KINDS,
    IDENTIFIER_KINDS,
    FieldKind,
    detect_field_kind,
    fields_of_kind,
)
from ..flow.field_validation import (
    normalize_building_relation,
    normalize_legal_entity,
    normalize_mobile,
    normalize_po_box,
    normalize_postal_code,
    normalize_relation_to_business,
)
from ..models.flow import FieldType
from .first_turn import extract_first_turn
from .parsers import (
    clean_answer,
    has_boolean_evidence,
    identifier_digits,
    is_iso_date,
    is_numeric_answer,
    parse_enum_choice,
    parse_yes_no,
    split_full_name,
    split_street_and_number,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_VALUES = frozenset({"", "/", "-", ".", "n/a", "na", "none"}) | PLACEHOLDER_TOKENS

COUNT_MAX_VALUE = 10000
COUNT_MAX_DIGITS = 4


@dataclass
class ExtractionPatch:
    """
    Changes proposed by one rule.

    An exclusive patch replaces the whole extraction with `updates`.
    """
    updates: Dict[str, Any] = field(default_factory=dict)
    removals: Set[str] = field(default_factory=set)
    exclusive: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.updates and not self.removals and not self.exclusive

    def apply_to(self, extraction: Dict[str, Any]) -> Dict[str, Any]:
        if self.exclusive:
            return dict(self.updates)
        result = {k: v for k, v in extraction.items() if k not in self.removals}
        result.update(self.updates)
        return result


@dataclass
class GuardState:
    """Per-turn state shared by the rules"""
    context: ExtractionContext
    expected: List[str] = field(default_factory=list)
    short_answer: bool = False
    # Fields set by a deterministic override; later rules keep them
    locked: Set[str] = field(default_factory=set)
    overridden: bool = False

    @property
    def message(self) -> str:
        return self.context.text

    @property
    def schema(self):
        return self.context.fields_schema

    def kind(self, field_slug: str) -> FieldKind:
        return detect_field_kind(field_slug, self.schema.get(field_slug))

    def expected_of_kind(self, *kinds: FieldKind) -> List[str]:
        return [f for f in self.expected if self.kind(f) in kinds]


@dataclass
class CorrectionRule:
    """A named rule of the guard pipeline"""
    name: str
    apply: Callable[[GuardState, Dict[str, Any]], ExtractionPatch]
    description: str = ""


# =============================================================================
# RULES
# =============================================================================

def drop_placeholders(state: GuardState, extraction: Dict[str, Any]) -> ExtractionPatch:
    """Drop empty/placeholder values, self-named values and unknown keys."""
    removals = set()
    for key, value in extraction.items():
        if key not in state.schema:
            removals.add(key)
        elif value is None:
            removals.add(key)
        elif isinstance(value, (list, dict)) and not value:
            removals.add(key)
        elif isinstance(value, str):
            token = value.strip().lower()
            if token in PLACEHOLDER_VALUES or token == key.lower():
                removals.add(key)
    return ExtractionPatch(removals=removals)


def first_turn_opportunistic(state: GuardState, extraction: Dict[str, Any]) -> ExtractionPatch:
    """Deterministic name/role/mobile/segment extraction before the first question."""
    if not state.context.is_first_turn:
        return ExtractionPatch()
    found = extract_first_turn(state.message, state.schema)
    updates = {k: v for k, v in found.items() if not is_present(extraction.get(k))}
    return ExtractionPatch(updates=updates)


def quarantine_identifier(state: GuardState, extraction: Dict[str, Any]) -> ExtractionPatch:
    """An ID-shaped reply is never an address, a date or a count."""
    digits = identifier_digits(state.message)
    if digits is None:
        return ExtractionPatch()

    expected_ids = state.expected_of_kind(*IDENTIFIER_KINDS)
    expected_mobile = state.expected_of_kind(FieldKind.MOBILE_PHONE)
    # 05XXXXXXXX is a local mobile number, not an ID
    looks_like_phone = len(digits) == 10 and digits.startswith("05")
    if expected_mobile and normalize_mobile(digits) and (looks_like_phone or not expected_ids):
        return ExtractionPatch()

    quarantined = ADDRESS_KINDS | {FieldKind.DATE, FieldKind.COUNT}
    removals = {k for k in extraction if state.kind(k) in quarantined}

    target = None
    if expected_ids:
        target = expected_ids[0]
    elif not looks_like_phone and not state.expected:
        candidates = fields_of_kind(state.schema, IDENTIFIER_KINDS)
        if len(candidates) == 1:
            target = candidates[0]

    if target is None:
        return ExtractionPatch(removals=removals)

    logger.debug(f"Identifier-shaped reply assigned to '{target}'")
    return ExtractionPatch(updates={target: digits}, exclusive=True)


def narrow_to_expected(state: GuardState, extraction: Dict[str, Any]) -> ExtractionPatch:
    """For a short single answer, keep only expected fields."""
    if state.context.is_first_turn or not state.short_answer or not state.expected:
        return ExtractionPatch()
    removals = {
        k for k in extraction
        if k not in state.expected and k not in state.locked
    }
    if removals:
        logger.debug(f"Narrowing dropped unexpected fields: {sorted(removals)}")
    return ExtractionPatch(removals=removals)


def yes_no_override(state: GuardState, extraction: Dict[str, Any]) -> ExtractionPatch:
    """A yes/no reply to a boolean question decides the boolean field."""
    if state.overridden or not state.short_answer:
        return ExtractionPatch()
    candidates = [
        f for f in state.expected
        if state.schema[f].type == FieldType.BOOLEAN
    ]
    if not candidates:
        return ExtractionPatch()
    answer = parse_yes_no(state.message)
    if answer is None:
        return ExtractionPatch()
    return ExtractionPatch(updates={candidates[0]: answer}, exclusive=True)


def enum_choice_override(state: GuardState, extraction: Dict[str, Any]) -> ExtractionPatch:
    """A reply naming (or numbering) one option of an expected enum field."""
    if state.overridden or not state.short_answer:
        return ExtractionPatch()

    # A bare number belongs to a numeric field when one is expected too
    numeric_expected = any(
        state.schema[f].type == FieldType.NUMBER or state.kind(f) == FieldKind.COUNT
        for f in state.expected
    )
    allow_index = not numeric_expected

    for field_slug in state.expected:
        field_def = state.schema[field_slug]
        # Structured kinds go through their alias tables first
        if not field_def.enum or state.kind(field_slug) in STRUCTURED_KINDS:
            continue
        choice = parse_enum_choice(state.message, field_def.enum, allow_index=allow_index)
        if choice is not None:
            return ExtractionPatch(updates={field_slug: choice}, exclusive=True)
    return ExtractionPatch()


def _structured_value(kind: FieldKind, message: str, enum: Optional[List[str]]):
    """Deterministic value for a structured field, or None."""
    value: Any = None
    if kind == FieldKind.POSTAL_CODE:
        ok, normalized = normalize_postal_code(message)
        value = normalized if ok else None
    elif kind == FieldKind.PO_BOX:
        ok, normalized = normalize_po_box(message)
        if ok:
            value = normalized
        elif parse_yes_no(message) is False:
            value = False
    elif kind == FieldKind.LEGAL_ENTITY_TYPE:
        value = normalize_legal_entity(message)
    elif kind == FieldKind.RELATION_TO_BUSINESS:
        value = normalize_relation_to_business(message)
    elif kind == FieldKind.BUILDING_RELATION:
        value = normalize_building_relation(message)

    if isinstance(value, str) and enum and kind in (
        FieldKind.LEGAL_ENTITY_TYPE, FieldKind.RELATION_TO_BUSINESS, FieldKind.BUILDING_RELATION,
    ) and value not in enum:
        return None
    return value


STRUCTURED_KINDS = (
    FieldKind.POSTAL_CODE,
    FieldKind.PO_BOX,
    FieldKind.LEGAL_ENTITY_TYPE,
    FieldKind.RELATION_TO_BUSINESS,
    FieldKind.BUILDING_RELATION,
)


def structured_field_override(state: GuardState, extraction: Dict[str, Any]) -> ExtractionPatch:
    """Postal code, PO box, legal entity and relation answers are computed, not trusted."""
    if state.overridden or not state.short_answer:
        return ExtractionPatch()
    for field_slug in state.expected_of_kind(*STRUCTURED_KINDS):
        enum = state.schema[field_slug].enum
        value = _structured_value(state.kind(field_slug), state.message, enum)
        if value is None and enum:
            value = parse_enum_choice(state.message, enum)
        if value is not None:
            return ExtractionPatch(updates={field_slug: value}, exclusive=True)
    return ExtractionPatch()


def split_compound_answers(state: GuardState, extraction: Dict[str, Any]) -> ExtractionPatch:
    """Split name and street answers only when both parts were asked for."""
    if state.context.is_first_turn or state.overridden or not state.short_answer:
        return ExtractionPatch()
    if is_numeric_answer(state.message):
        return ExtractionPatch()

    patch = ExtractionPatch()
    reply = clean_answer(state.message)
    # The whole reply only stands for one field when one field was asked for
    single_answer = len(state.expected) == 1

    first = state.expected_of_kind(FieldKind.FIRST_NAME)
    last = state.expected_of_kind(FieldKind.LAST_NAME)
    if first and last:
        if not (is_present(extraction.get(first[0])) and is_present(extraction.get(last[0]))):
            parts = split_full_name(reply)
            if parts:
                patch.updates[first[0]] = parts[0]
                patch.updates[last[0]] = parts[1]
    else:
        single = (first or last or state.expected_of_kind(FieldKind.FULL_NAME))[:1]
        if single and single_answer:
            _keep_whole_reply(single[0], reply, extraction, patch)
        if single:
            # The other half was not asked for
            for other in fields_of_kind(state.schema, [FieldKind.FIRST_NAME, FieldKind.LAST_NAME]):
                if other not in single and other in extraction and other not in state.expected:
                    patch.removals.add(other)

    street = state.expected_of_kind(FieldKind.STREET)
    number = state.expected_of_kind(FieldKind.HOUSE_NUMBER)
    if street and number:
        if not (is_present(extraction.get(street[0])) and is_present(extraction.get(number[0]))):
            parts = split_street_and_number(reply)
            if parts:
                patch.updates[street[0]] = parts[0]
                patch.updates[number[0]] = parts[1]
    elif street:
        if single_answer:
            _keep_whole_reply(street[0], reply, extraction, patch)
        for other in fields_of_kind(state.schema, [FieldKind.HOUSE_NUMBER]):
            if other in extraction and other not in state.expected:
                patch.removals.add(other)

    return patch


def _keep_whole_reply(field_slug: str, reply: str, extraction: Dict[str, Any], patch: ExtractionPatch) -> None:
    """Replace a truncated model value with the whole reply."""
    value = extraction.get(field_slug)
    if isinstance(value, str) and value.strip() and value.strip() != reply and value.strip() in reply:
        patch.updates[field_slug] = reply


def plausibility_filters(state: GuardState, extraction: Dict[str, Any]) -> ExtractionPatch:
    """Reject implausible counts, numeric non-ISO dates and unsupported booleans."""
    removals = set()
    for key, value in extraction.items():
        if key in state.locked:
            continue
        kind = state.kind(key)

        if kind == FieldKind.COUNT and not isinstance(value, bool):
            digits = "".join(c for c in str(value) if c.isdigit())
            if len(digits) > COUNT_MAX_DIGITS or (digits and int(digits) > COUNT_MAX_VALUE):
                removals.add(key)
                continue

        if kind == FieldKind.DATE and not isinstance(value, bool):
            text = str(value).strip()
            if text.isdigit() and not is_iso_date(text):
                removals.add(key)
                continue

        if isinstance(value, bool):
            if not has_boolean_evidence(state.message, state.schema.get(key), value):
                logger.debug(f"Dropping unsupported boolean for '{key}'")
                removals.add(key)

    return ExtractionPatch(removals=removals)


def _same_value(stored: Any, value: Any) -> bool:
    if isinstance(stored, bool) or isinstance(value, bool):
        return stored is value
    if stored is None:
        return False
    return str(stored).strip() == str(value).strip()


def drop_rejected_and_unchanged(state: GuardState, extraction: Dict[str, Any]) -> ExtractionPatch:
    """Never re-emit a value rejected earlier, nor a value already stored."""
    removals = set()
    stored = state.context.user_data
    for key, value in extraction.items():
        if state.context.was_rejected(key, value):
            removals.add(key)
        elif key in stored and _same_value(stored[key], value):
            removals.add(key)
    return ExtractionPatch(removals=removals)


def drop_self_named_values(state: GuardState, extraction: Dict[str, Any]) -> ExtractionPatch:
    """A field name is never its own value."""
    removals = set()
    for key, value in extraction.items():
        if not isinstance(value, str):
            continue
        token = value.strip().lower()
        if token in (key.lower(), key.replace("_", " ").lower()):
            removals.add(key)
    return ExtractionPatch(removals=removals)


DEFAULT_RULES: List[CorrectionRule] = [
    CorrectionRule("drop_placeholders", drop_placeholders, "Empty values, placeholders and unknown keys"),
    CorrectionRule("first_turn_opportunistic", first_turn_opportunistic, "Introductions before the first question"),
    CorrectionRule("quarantine_identifier", quarantine_identifier, "ID-shaped replies"),
    CorrectionRule("narrow_to_expected", narrow_to_expected, "Expectation narrowing"),
    CorrectionRule("yes_no_override", yes_no_override, "Yes/no answers to boolean questions"),
    CorrectionRule("enum_choice_override", enum_choice_override, "Enum options and numbered choices"),
    CorrectionRule("structured_field_override", structured_field_override, "Structured field normalizers"),
    CorrectionRule("split_compound_answers", split_compound_answers, "Name and address splitting"),
    CorrectionRule("plausibility_filters", plausibility_filters, "Counts, dates and booleans"),
    CorrectionRule("drop_rejected_and_unchanged", drop_rejected_and_unchanged, "Previously rejected or unchanged values"),
    CorrectionRule("drop_self_named_values", drop_self_named_values, "Field names as values"),
]
