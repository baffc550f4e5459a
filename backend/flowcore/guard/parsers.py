"""
Deterministic answer parsers used by the extraction guard rules.

Each parser reads the raw user message and returns None when it cannot
decide; none of them raise on odd input.
"""
import re
from typing import List, Optional, Tuple

from ..flow.field_kinds import QUOTES
from ..models.flow import FieldDefinition

QUOTES_RE = re.compile(f"[{re.escape(QUOTES)}]")
EDGE_PUNCTUATION_RE = re.compile(r"^[\s.,;:!?()\[\]{}\-–—]+|[\s.,;:!?()\[\]{}\-–—]+$")

YES_NO_HEAD_RE = re.compile(
    r"^(כן|לא|yes|no|y|n|true|false)(?=$|[\s,.:;!?()\[\]{}'\"“”\-–—])",
    re.IGNORECASE,
)
YES_TOKENS = frozenset({"כן", "yes", "y", "true"})

DONT_KNOW_RE = re.compile(
    r"^\s*(לא\s+יודע(ת)?|לא\s+בטוח(ה)?|לא\s+זוכר(ת)?|don'?t\s+know|not\s+sure|no\s+idea)",
    re.IGNORECASE,
)

NEGATION_RE = re.compile(r"(?<![\u0590-\u05FF])(לא|אין|ללא|בלי)(?![\u0590-\u05FF])|\b(no|not|don'?t|without|none)\b", re.IGNORECASE)
AFFIRMATION_RE = re.compile(r"(?<![\u0590-\u05FF])(כן|יש|בטח|נכון|בהחלט)(?![\u0590-\u05FF])|\b(yes|have|sure|of course|we do)\b", re.IGNORECASE)

IDENTIFIER_SEPARATORS_RE = re.compile(r"[\s\-./]")
IDENTIFIER_RE = re.compile(r"\d{8,10}")
NUMERIC_ANSWER_RE = re.compile(r"[\d\s\-./+]+")
ISO_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")

STREET_NUMBER_RE = re.compile(r"^(?P<street>.*?[^\d\s,])[\s,]+(?P<number>\d{1,4}[א-תa-zA-Z]?)$")

# Words of a field description that carry no meaning on their own
DESCRIPTION_NOISE = frozenset({
    "האם", "של", "את", "על", "עם", "יש", "לך", "לכם", "לעסק", "העסק", "מה", "כמה",
    "the", "is", "are", "do", "does", "you", "your", "have", "has", "of", "for", "a", "an",
})


def clean_answer(message: Optional[str]) -> str:
    """Trim quotes and surrounding punctuation."""
    text = QUOTES_RE.sub("", str(message or "")).strip()
    return EDGE_PUNCTUATION_RE.sub("", text)


def is_short_answer(message: Optional[str], max_length: int) -> bool:
    """A single short reply: one line and short, or purely numeric."""
    text = (message or "").strip()
    if not text:
        return False
    if NUMERIC_ANSWER_RE.fullmatch(text):
        return True
    return "\n" not in text and len(text) <= max_length


def is_numeric_answer(message: Optional[str]) -> bool:
    text = (message or "").strip()
    return bool(text) and bool(NUMERIC_ANSWER_RE.fullmatch(text)) and any(c.isdigit() for c in text)


def parse_yes_no(message: Optional[str]) -> Optional[bool]:
    """
    Read a yes/no answer from the head of the message.

    "לא, אין לנו" -> False, "yes please" -> True, "לא יודע" -> None.
    """
    text = (message or "").strip().lstrip(QUOTES).strip()
    if not text or DONT_KNOW_RE.match(text):
        return None
    match = YES_NO_HEAD_RE.match(text)
    if not match:
        return None
    return match.group(1).lower() in YES_TOKENS


def parse_enum_choice(message: Optional[str], options: List[str], allow_index: bool = True) -> Optional[str]:
    """
    Map a reply to one of the enum options.

    Accepts a 1-based list index, an exact option, or text uniquely contained
    in (or containing) one option.
    """
    if not options:
        return None
    text = clean_answer(message).lower()
    if not text:
        return None

    if allow_index and re.fullmatch(r"\d{1,2}", text):
        index = int(text)
        if 1 <= index <= len(options):
            return options[index - 1]
        return None

    normalized = [(option, clean_answer(option).lower()) for option in options]
    for option, option_text in normalized:
        if text == option_text:
            return option

    if len(text) < 2:
        return None
    matches = [
        option for option, option_text in normalized
        if option_text and (text in option_text or option_text in text)
    ]
    if len(matches) == 1:
        return matches[0]
    return None


def identifier_digits(message: Optional[str]) -> Optional[str]:
    """The digits of a reply shaped like an ID (8-10 digits and nothing else)."""
    compact = IDENTIFIER_SEPARATORS_RE.sub("", (message or "").strip())
    if IDENTIFIER_RE.fullmatch(compact):
        return compact
    return None


def is_iso_date(value: str) -> bool:
    return bool(ISO_DATE_RE.fullmatch(value.strip()))


def description_keywords(field_def: Optional[FieldDefinition]) -> List[str]:
    """Meaningful words of a field description (used as evidence keywords)."""
    if field_def is None or not field_def.description:
        return []
    words = re.findall(r"[\w\u0590-\u05FF]{3,}", QUOTES_RE.sub("", field_def.description).lower())
    return [w for w in words if w not in DESCRIPTION_NOISE]


def has_boolean_evidence(message: Optional[str], field_def: Optional[FieldDefinition], value: bool) -> bool:
    """
    True when the message textually supports `value` for the field.

    Either an explicit yes/no answer with the same polarity, or a polarity
    word together with a keyword from the field description.
    """
    parsed = parse_yes_no(message)
    if parsed is not None:
        return parsed == value

    text = (message or "").lower()
    polarity = NEGATION_RE if value is False else AFFIRMATION_RE
    if not polarity.search(text):
        return False
    return any(keyword in text for keyword in description_keywords(field_def))


def split_full_name(text: Optional[str]) -> Optional[Tuple[str, str]]:
    """Split "first last" into its two parts (the last part may have several words)."""
    words = clean_answer(text).split()
    if not 2 <= len(words) <= 4:
        return None
    if any(any(c.isdigit() for c in w) or "@" in w for w in words):
        return None
    return words[0], " ".join(words[1:])


def split_street_and_number(text: Optional[str]) -> Optional[Tuple[str, str]]:
    """Split "הרצל 12" / "Herzl St, 12" into street and house number."""
    match = STREET_NUMBER_RE.match(clean_answer(text))
    if not match:
        return None
    street = match.group("street").strip(" ,")
    if not street:
        return None
    return street, match.group("number")
