"""
Error Policy Engine - decides how the flow recovers from a failed action.

Resolution order:
    1. action.onErrorCode[errorCode]   (source: error_code)
    2. action.onError / stage.onError  (source: config)
    3. pause                           (source: default)

An error code handler without a behavior only contributes its
updateUserData/resetFields and falls through to step 2.
"""
import re
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..models.flow import ErrorBehavior, ErrorHandlingConfig, Stage, StageAction

logger = logging.getLogger(__name__)


class ErrorSource(str, Enum):
    """Where an error decision came from"""
    ERROR_CODE = "error_code"
    CONFIG = "config"
    DEFAULT = "default"


@dataclass
class ErrorAnalysis:
    """Classification of an error message"""
    is_technical: bool
    matched_keyword: Optional[str] = None


@dataclass
class ErrorDecision:
    """What the executor should do after an action failure"""
    behavior: ErrorBehavior
    source: ErrorSource
    message: str = ""
    next_stage: Optional[str] = None
    reset_fields: List[str] = field(default_factory=list)
    update_user_data: Dict[str, Any] = field(default_factory=dict)
    is_technical: bool = False
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "behavior": self.behavior.value,
            "source": self.source.value,
            "message": self.message,
            "next_stage": self.next_stage,
            "reset_fields": self.reset_fields,
            "update_user_data": self.update_user_data,
            "is_technical": self.is_technical,
            "error_code": self.error_code,
        }


HEBREW_RE = re.compile(r"[\u0590-\u05FF]")

# Protocol / infrastructure vocabulary, matched case-insensitively as substrings.
# Only the protocol variants of "gateway": a payment gateway is a business term.
TECHNICAL_KEYWORDS_EN = [
    "connection", "econnrefused", "econnreset", "enotfound", "etimedout",
    "timeout", "timed out", "certificate", "ssl", "tls", "handshake",
    "status code", "http", "internal server error", "bad gateway",
    "gateway timeout", "service unavailable", "database", "sql", "socket",
    "dns", "network", "exception", "traceback", "stack trace", "null pointer",
    "undefined", "unexpected token", "json", "unauthorized", "forbidden",
    "rate limit", "too many requests", "proxy", "upstream", "webhook",
    "endpoint", "duplicate row", "duplicate key", "constraint", "foreign key",
    "schema", "query failed", "migration", "internal ref", "trace id",
    "request id", "error id", "environment variable",
]

TECHNICAL_KEYWORDS_HE = [
    "שגיאת שרת", "שרת", "חיבור", "תקשורת", "תעודת אבטחה", "מסד נתונים",
    "בסיס נתונים", "זמן קצוב", "פג הזמן", "רשת", "שגיאה פנימית",
    "קוד סטטוס", "תקלה טכנית", "שאילתה", "אילוץ", "מפתח זר", "קוד שגיאה",
]

# Status codes count only next to "status"/"HTTP", or as a bare 500-504
STATUS_CODE_RE = re.compile(
    r"\b(?:status|http)\b[\s:=#-]*(?:code\s*)?[\s:=#-]*([1-5]\d\d)(?!\d)|(?<!\d)(50[0-4])(?!\d)"
)

# Internal identifiers: "user_id=77", "table accounts", "ref #A9"
INTERNAL_DETAIL_RE = re.compile(
    r"\b[a-z]+(?:_[a-z0-9]+)+\s*[=:]|\btable\s+[\"'`]?\w+|#[a-z]*\d+\w*",
    re.IGNORECASE,
)

GENERIC_TECHNICAL_MESSAGE = {
    "he": "נתקלנו בתקלה טכנית זמנית. אנחנו כבר מטפלים בזה, אפשר לנסות שוב בעוד כמה דקות.",
    "en": "We ran into a temporary technical issue. Please try again in a few minutes.",
}

GENERIC_END_MESSAGE = {
    "he": "לא נוכל להמשיך בתהליך כרגע. נציג יחזור אליך בהקדם.",
    "en": "We can't continue this process right now. A representative will get back to you soon.",
}

# Re-prompt for a user-actionable failure. The raw error is never part of it.
ACTIONABLE_RETRY_MESSAGE = {
    "he": "לא הצלחנו לאמת את הפרטים הבאים: {fields}. אפשר לבדוק אותם ולשלוח שוב?",
    "en": "We couldn't verify these details: {fields}. Could you check them and send them again?",
}

ACTIONABLE_RETRY_MESSAGE_NO_FIELDS = {
    "he": "לא הצלחנו לאמת את הפרטים ששלחת. אפשר לבדוק אותם ולשלוח שוב?",
    "en": "We couldn't verify the details you sent. Could you check them and send them again?",
}

ERROR_PREVIEW_LENGTH = 50


def detect_language(text: Optional[str]) -> str:
    return "he" if text and HEBREW_RE.search(text) else "en"


class ErrorPolicyEngine:
    """
    Resolves action failures into typed decisions.

    Usage:
        decision = ErrorPolicyEngine.resolve(
            error="Registry lookup failed",
            error_code="NOT_FOUND",
            action=stage.action,
            stage_slug="business_details",
            stage=stage,
            conversation_id="abc",
            user_message="515555550",
        )
    """

    @classmethod
    def classify(cls, error: Optional[str]) -> ErrorAnalysis:
        """Technical (infrastructure) vs user-actionable error."""
        text = (error or "").lower()
        if not text:
            return ErrorAnalysis(is_technical=True, matched_keyword=None)
        for keyword in TECHNICAL_KEYWORDS_EN + TECHNICAL_KEYWORDS_HE:
            if keyword in text:
                return ErrorAnalysis(is_technical=True, matched_keyword=keyword)
        match = STATUS_CODE_RE.search(text)
        if match:
            return ErrorAnalysis(is_technical=True, matched_keyword=match.group(1) or match.group(2))
        match = INTERNAL_DETAIL_RE.search(error)
        if match:
            return ErrorAnalysis(is_technical=True, matched_keyword=match.group(0))
        return ErrorAnalysis(is_technical=False)

    @staticmethod
    def render_template(template: str, error: Optional[str], stage_slug: str, conversation_id: Optional[str]) -> str:
        """Substitute {error} (first 50 characters), {stage} and {conversationId}."""
        preview = (error or "")[:ERROR_PREVIEW_LENGTH]
        return (
            template
            .replace("{error}", preview)
            .replace("{stage}", stage_slug or "")
            .replace("{conversationId}", str(conversation_id or ""))
        )

    @classmethod
    def resolve(
        cls,
        error: Optional[str],
        error_code: Optional[str],
        action: Optional[StageAction],
        stage_slug: str,
        stage: Optional[Stage] = None,
        conversation_id: Optional[str] = None,
        user_message: Optional[str] = None,
        field_labels: Optional[List[str]] = None,
    ) -> ErrorDecision:
        """
        Decide how to recover from a failed action.

        Args:
            error: Raw error text from the tool (logged, never shown as is)
            error_code: Provider error code, if any
            action: The action that failed
            stage_slug: Current stage
            stage: Current stage definition (for stage-level onError)
            conversation_id: For message templates
            user_message: Last user message (selects the language of generic messages)
            field_labels: Descriptions of the stage fields, for the re-prompt

        Returns:
            ErrorDecision with behavior, source and the user-facing message
        """
        update_user_data: Dict[str, Any] = {}
        reset_fields: List[str] = []
        template: Optional[str] = None
        next_stage: Optional[str] = None

        handler = None
        if action is not None and error_code:
            handler = action.on_error_code.get(error_code)

        if handler is not None:
            update_user_data.update(handler.update_user_data)
            reset_fields.extend(handler.reset_fields)

        config: Optional[ErrorHandlingConfig] = None
        if action is not None and action.on_error is not None:
            config = action.on_error
        elif stage is not None and stage.on_error is not None:
            config = stage.on_error

        if handler is not None and handler.behavior is not None:
            source = ErrorSource.ERROR_CODE
            behavior = handler.behavior
            next_stage = handler.next_stage
            template = handler.message
        elif config is not None:
            source = ErrorSource.CONFIG
            behavior = config.behavior
            next_stage = config.next_stage
            template = config.message
            for field_slug in config.reset_fields:
                if field_slug not in reset_fields:
                    reset_fields.append(field_slug)
        else:
            source = ErrorSource.DEFAULT
            behavior = ErrorBehavior.PAUSE

        if behavior == ErrorBehavior.NEW_STAGE and not next_stage:
            logger.warning(f"newStage without nextStage on '{stage_slug}', pausing instead")
            behavior = ErrorBehavior.PAUSE

        analysis = cls.classify(error)
        is_technical = analysis.is_technical
        collects_fields = stage is not None and bool(stage.fields_to_collect)
        if behavior == ErrorBehavior.PAUSE and not collects_fields:
            # Nothing the user could fix on an action-only stage
            is_technical = True

        language = detect_language(user_message)
        message = cls._message(
            behavior, template, error, is_technical, stage_slug, conversation_id, language, field_labels,
        )

        logger.info(
            f"Error policy for '{stage_slug}': behavior={behavior.value}, "
            f"source={source.value}, technical={is_technical}, code={error_code}, "
            f"matched={analysis.matched_keyword!r}, error={error!r}"
        )

        return ErrorDecision(
            behavior=behavior,
            source=source,
            message=message,
            next_stage=next_stage if behavior == ErrorBehavior.NEW_STAGE else None,
            reset_fields=reset_fields,
            update_user_data=update_user_data,
            is_technical=is_technical,
            error_code=error_code,
        )

    @classmethod
    def _message(
        cls,
        behavior: ErrorBehavior,
        template: Optional[str],
        error: Optional[str],
        is_technical: bool,
        stage_slug: str,
        conversation_id: Optional[str],
        language: str,
        field_labels: Optional[List[str]] = None,
    ) -> str:
        # Templates are written by the flow author, so {error} is an explicit opt-in
        if template:
            if not (is_technical and "{error}" in template):
                return cls.render_template(template, error, stage_slug, conversation_id)
        if is_technical:
            return GENERIC_TECHNICAL_MESSAGE[language]
        if behavior == ErrorBehavior.PAUSE:
            return cls.retry_prompt(field_labels, language)
        if behavior == ErrorBehavior.END_FLOW:
            return GENERIC_END_MESSAGE[language]
        return ""

    @staticmethod
    def retry_prompt(field_labels: Optional[List[str]], language: str) -> str:
        """Actionable re-prompt naming the fields the user should check."""
        labels = [label for label in (field_labels or []) if label]
        if not labels:
            return ACTIONABLE_RETRY_MESSAGE_NO_FIELDS[language]
        return ACTIONABLE_RETRY_MESSAGE[language].format(fields=", ".join(labels))


# Convenience functions

def resolve_error(
    error: Optional[str],
    error_code: Optional[str],
    action: Optional[StageAction],
    stage_slug: str,
    stage: Optional[Stage] = None,
    conversation_id: Optional[str] = None,
    user_message: Optional[str] = None,
    field_labels: Optional[List[str]] = None,
) -> ErrorDecision:
    return ErrorPolicyEngine.resolve(
        error, error_code, action, stage_slug, stage, conversation_id, user_message, field_labels,
    )


def classify_error(error: Optional[str]) -> ErrorAnalysis:
    return ErrorPolicyEngine.classify(error)
