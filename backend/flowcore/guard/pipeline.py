"""
Extraction Guard - deterministic correction layer around LLM field extraction.

The model proposes a dict of field values for the user's message; the guard
runs an ordered list of correction rules over it so one reply can never
overwrite fields it did not talk about.
"""
import logging
from typing import Any, Dict, List, Optional, Protocol

from ..core.config import settings
from ..flow.context import ExtractionContext
from ..models.flow import FieldDefinition
from .expectations import derive_expected_fields
from .parsers import is_short_answer
from .rules import DEFAULT_RULES, CorrectionRule, GuardState

logger = logging.getLogger(__name__)


class FieldExtractor(Protocol):
    """The part of the LLM service the guard depends on"""

    async def extract_fields(
        self,
        message: str,
        fields_description: str,
        stage_context: Optional[str] = None,
    ) -> Dict[str, Any]:
        ...


def describe_fields(fields_schema: Dict[str, FieldDefinition], expected: Optional[List[str]] = None) -> str:
    """
    Render the field schema for the extraction prompt.

    Expected fields are listed first and marked.
    """
    expected = [f for f in (expected or []) if f in fields_schema]
    ordered = expected + [f for f in fields_schema if f not in expected]

    lines = []
    for field_slug in ordered:
        field_def = fields_schema[field_slug]
        line = f"- {field_slug} ({field_def.type.value})"
        if field_def.description:
            line += f": {field_def.description}"
        if field_def.enum:
            line += f" [options: {', '.join(field_def.enum)}]"
        if field_slug in expected:
            line += " [asked now]"
        lines.append(line)
    return "\n".join(lines)


class ExtractionGuard:
    """
    Runs LLM extraction and the correction rules for one user message.

    Usage:
        guard = ExtractionGuard(extractor=llm_service)
        fields = await guard.extract(message, ["mobile"], "מה מספר הנייד?", schema, user_data)
    """

    def __init__(
        self,
        extractor: Optional[FieldExtractor] = None,
        rules: Optional[List[CorrectionRule]] = None,
        short_answer_max_length: Optional[int] = None,
    ):
        self.extractor = extractor
        self.rules = list(rules) if rules is not None else list(DEFAULT_RULES)
        self.short_answer_max_length = short_answer_max_length or settings.SHORT_ANSWER_MAX_LENGTH

    async def extract(
        self,
        message: str,
        expected_fields_hint: Optional[List[str]],
        last_question_text: Optional[str],
        fields_schema: Dict[str, FieldDefinition],
        user_data: Optional[Dict[str, Any]] = None,
        is_first_turn: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """
        Extract and correct field values from a user message.

        Args:
            message: Raw user message
            expected_fields_hint: Fields the current stage is asking for
            last_question_text: The assistant's last question (None on the first turn)
            fields_schema: Field definitions of the flow
            user_data: Stored user data (for rejected/unchanged filtering)
            is_first_turn: Overrides the first-turn inference from the question text

        Returns:
            Fields newly asserted or corrected in this turn
        """
        context = ExtractionContext.build(
            message=message,
            fields_schema=fields_schema,
            expected_fields=expected_fields_hint,
            last_question_text=last_question_text,
            user_data=user_data,
            is_first_turn=is_first_turn,
        )

        raw: Dict[str, Any] = {}
        if self.extractor is not None and context.text:
            expected = derive_expected_fields(
                context.expected_fields, context.last_question_text, context.fields_schema
            )
            stage_context = f"Last question: {last_question_text}" if last_question_text else None
            raw = await self.extractor.extract_fields(
                context.text,
                describe_fields(fields_schema, expected),
                stage_context,
            )
            logger.debug(f"Model extraction: {raw}")

        return self.apply(raw, context)

    def apply(self, raw_extraction: Optional[Dict[str, Any]], context: ExtractionContext) -> Dict[str, Any]:
        """
        Run the correction rules over a model extraction.

        A rule that raises is logged and skipped; the rest still run.
        """
        extraction = dict(raw_extraction) if isinstance(raw_extraction, dict) else {}
        state = GuardState(
            context=context,
            expected=derive_expected_fields(
                context.expected_fields, context.last_question_text, context.fields_schema
            ),
            short_answer=is_short_answer(context.text, self.short_answer_max_length),
        )

        for rule in self.rules:
            try:
                patch = rule.apply(state, extraction)
            except Exception as e:
                logger.warning(f"Guard rule '{rule.name}' failed, skipping: {e}")
                continue

            if patch is None or patch.is_empty:
                continue

            before = set(extraction)
            extraction = patch.apply_to(extraction)
            if patch.exclusive:
                state.overridden = True
                state.locked |= set(patch.updates)
                logger.debug(f"Rule '{rule.name}' replaced extraction with {sorted(patch.updates)}")
            elif before - set(extraction):
                logger.debug(f"Rule '{rule.name}' dropped {sorted(before - set(extraction))}")

        return extraction


# Stateless default without an extractor (apply() only)
extraction_guard = ExtractionGuard()


def apply_guard(raw_extraction: Dict[str, Any], context: ExtractionContext) -> Dict[str, Any]:
    """Convenience function to correct an extraction with the default rules"""
    return extraction_guard.apply(raw_extraction, context)
