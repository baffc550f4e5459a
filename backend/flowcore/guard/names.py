"""
Personal name inference from free-text introductions.

Only explicit introductions are read ("שמי דנה", "קוראים לי דנה כהן",
"my name is Dana"). Intent phrases such as "אני צריך הצעת ביטוח" must never
turn into a name, so every candidate token is checked against stop-words and
domain nouns.
"""
import re
import logging
from typing import List, Optional

logger = logging.getLogger(__name__)

GREETINGS = frozenset({
    "היי", "הי", "שלום", "אהלן", "הלו", "בוקר", "ערב", "צהריים", "טוב", "טובים",
    "hi", "hello", "hey", "good", "morning", "evening",
})

CONTACT_LABELS = frozenset({
    "טלפון", "נייד", "פלאפון", "מייל", "אימייל", "מספר", "כתובת",
    "phone", "mobile", "email", "mail", "number", "address",
})

DEFAULT_STOPWORDS = GREETINGS | CONTACT_LABELS | frozenset({
    # fillers
    "אני", "רק", "גם", "פה", "כאן", "מאוד", "יש", "לי", "את", "של", "עם", "זה", "זו",
    "הוא", "היא", "אנחנו", "מה", "איך", "כן", "לא", "אבל", "ו", "או", "כבר", "עכשיו",
    "i", "am", "the", "a", "an", "and", "or", "at", "on", "from", "here", "just", "so",
    "with", "for", "my", "me", "is", "this", "it", "please", "thanks",
    # intent
    "רוצה", "רוצים", "מבקש", "מבקשת", "צריך", "צריכה", "צריכים", "מחפש", "מחפשת",
    "מעוניין", "מעוניינת", "מעוניינים", "להזמין", "לקבל", "לבטח",
    "need", "want", "looking", "would", "like", "interested", "get",
    # business terms
    "ביטוח", "הצעה", "הצעת", "פוליסה", "עסק", "העסק", "משרד", "חברה", "חנות", "מסעדה",
    "קליניקה", "עורך", "עורכת", "עורכי", "דין", "רואה", "רואת", "רואי", "חשבון",
    "אדריכל", "אדריכלית", "תיווך", "מתווך", "מתווכת",
    "insurance", "quote", "policy", "business", "office", "company", "shop", "store",
    "restaurant", "clinic", "law", "lawyer", "accountant", "architect",
    # customer status
    "לקוח", "לקוחה", "חדש", "חדשה", "קיים", "קיימת",
    "customer", "client", "new", "existing",
})

# Roles and relations are never names
NON_NAME_TOKENS = frozenset({
    "בעלים", "בעל", "בעלת", "מנהל", "מנהלת", "שותף", "שותפה", "אחר", "אחרת",
    "owner", "manager", "partner", "other",
})

INTENT_RE = re.compile(
    r"(הצעת\s*ביטוח|ביטוח|הצעה|פוליסה|רוצה|מבקש|צריך|מחפש|מעוניין|\bneed\b|\bwant\b|looking\s+for|\bquote\b|insurance)",
    re.IGNORECASE,
)
EXPLICIT_INTRO_RE = re.compile(r"(שמי|קוראים\s+לי|my\s+name\s+is)", re.IGNORECASE)
CONTACT_SIGNAL_RE = re.compile(r"(\d[\d\s\-]{7,}\d|@|טלפון|נייד|פלאפון)")

INTRO_PATTERNS = [
    re.compile(r"(?:שמי|קוראים\s+לי|השם\s+שלי(?:\s+הוא)?)\s*[:\-]?\s*(?P<name>[א-ת'׳\-\s]{2,40})"),
    re.compile(r"(?<![א-ת])אני\s+(?P<name>[א-ת'׳\-\s]{2,40})"),
    re.compile(r"(?:my\s+name\s+is|i\s+am|i'm|this\s+is|call\s+me)\s+(?P<name>[A-Za-z'\-\s]{2,40})", re.IGNORECASE),
]

MAX_NAME_TOKENS = 3
GLUED_PREFIXES = "לובש"


def is_bad_name_value(value: Optional[str]) -> bool:
    """Greetings, contact labels, digits or emails are not names."""
    text = (value or "").strip()
    if not text:
        return True
    if any(c.isdigit() for c in text) or "@" in text:
        return True
    tokens = [t.lower() for t in text.split()]
    return any(t in GREETINGS or t in CONTACT_LABELS for t in tokens)


def _is_name_token(token: str) -> bool:
    lowered = token.lower().strip("'׳-")
    if len(lowered) < 2:
        return False
    if lowered in DEFAULT_STOPWORDS or lowered in NON_NAME_TOKENS:
        return False
    # "לעסק", "ואני", "שלי": a prefix letter glued to a stop-word
    if lowered[0] in GLUED_PREFIXES and (lowered[1:] in DEFAULT_STOPWORDS or lowered[1:] in NON_NAME_TOKENS):
        return False
    return True


def _name_tokens(candidate: str) -> List[str]:
    tokens: List[str] = []
    for token in candidate.split():
        if not _is_name_token(token):
            break
        tokens.append(token.strip("'׳-"))
        if len(tokens) == MAX_NAME_TOKENS:
            break
    return tokens


def extract_name(message: Optional[str]) -> Optional[str]:
    """
    Read a personal name from an introduction.

    Returns:
        The name (1-3 tokens) or None when the message carries no explicit name
    """
    text = (message or "").strip()
    if not text:
        return None

    explicit = bool(EXPLICIT_INTRO_RE.search(text))
    if INTENT_RE.search(text) and not explicit and not CONTACT_SIGNAL_RE.search(text):
        return None

    for pattern in INTRO_PATTERNS:
        for match in pattern.finditer(text):
            tokens = _name_tokens(match.group("name"))
            if not tokens:
                continue
            name = " ".join(tokens)
            if is_bad_name_value(name):
                continue
            logger.debug(f"Inferred name from introduction: {name}")
            return name
    return None
