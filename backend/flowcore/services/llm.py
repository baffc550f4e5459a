"""
LLM Service - field extraction and response generation on ChatOpenAI.

The flow engine never trusts this output directly: extraction goes through
the extraction guard and the field validator before anything is stored.
"""
import json
import re
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Union

from langchain_openai import ChatOpenAI
from langchain_core.messages import SystemMessage, HumanMessage, AIMessage, BaseMessage

from ..core.config import settings

logger = logging.getLogger(__name__)

CODE_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")

EXTRACTION_SYSTEM_PROMPT = (
    "You are a precise data extractor for a conversational onboarding form. "
    "Return ONLY a valid JSON object, without explanations."
)

EXTRACTION_PROMPT = """Extract field values from the user's message.

USER MESSAGE: "{message}"

FIELDS:
{fields_description}
{stage_context}
RULES:
1. Extract ONLY information explicitly present in the message
2. Never invent values and never guess
3. Use null for fields the message does not mention, never empty strings
4. Booleans must be true/false, numbers must be numbers
5. For fields with options, use the exact option text

Return a JSON object: {{"field_slug": value, ...}}"""

RESPONSE_SYSTEM_PROMPT = (
    "You are a friendly onboarding assistant. Reply in the user's language "
    "(Hebrew when the user writes Hebrew). Ask for at most the listed missing "
    "information, one short question at a time, and never invent facts."
)


def parse_json_object(content: str) -> Dict[str, Any]:
    """Parse a model reply into a dict (code fences stripped; anything else -> {})"""
    text = (content or "").strip()
    if "```" in text:
        match = CODE_FENCE_RE.search(text)
        if match:
            text = match.group(1)
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Extraction reply is not valid JSON: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Extraction reply is not a JSON object: {type(data).__name__}")
        return {}
    return data


def to_messages(history: Optional[List[Tuple[str, str]]]) -> List[BaseMessage]:
    """(role, content) pairs -> LangChain messages"""
    messages: List[BaseMessage] = []
    for role, content in history or []:
        if role == "assistant":
            messages.append(AIMessage(content=content))
        elif role == "system":
            messages.append(SystemMessage(content=content))
        else:
            messages.append(HumanMessage(content=content))
    return messages


class LLMService:
    """
    ChatOpenAI wrapper for the flow engine.

    Two models: a low temperature one for extraction and a warmer one for
    user-facing responses.
    """

    def __init__(self, model_name: Optional[str] = None):
        """
        Initialize LLMService.

        Args:
            model_name: OpenAI model to use (default from settings)
        """
        self.model = ChatOpenAI(
            model=model_name or settings.OPENAI_MODEL,
            temperature=settings.RESPONSE_TEMPERATURE,
            api_key=settings.OPENAI_API_KEY
        )
        self.extraction_model = ChatOpenAI(
            model=model_name or settings.OPENAI_MODEL,
            temperature=settings.EXTRACTION_TEMPERATURE,
            api_key=settings.OPENAI_API_KEY
        )

    async def extract_fields(
        self,
        message: str,
        fields_description: str,
        stage_context: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Ask the model for field values found in a user message.

        Args:
            message: The user's message
            fields_description: One line per field (slug, type, description, options)
            stage_context: Extra context such as the last question asked

        Returns:
            Field slug -> value (may contain nulls and junk; the guard cleans it)
        """
        prompt = EXTRACTION_PROMPT.format(
            message=message,
            fields_description=fields_description,
            stage_context=f"\nCONTEXT:\n{stage_context}\n" if stage_context else "",
        )
        response = await self.extraction_model.ainvoke([
            SystemMessage(content=EXTRACTION_SYSTEM_PROMPT),
            HumanMessage(content=prompt),
        ])
        data = parse_json_object(response.content)
        logger.debug(f"Extracted {len(data)} keys from message")
        return data

    async def generate_response(
        self,
        prompt: str,
        history: Optional[List[Tuple[str, str]]] = None,
        stream: bool = False,
    ) -> Union[str, AsyncIterator[str]]:
        """
        Generate the assistant reply for the current stage.

        Args:
            prompt: Stage instructions (what to ask, what was rejected)
            history: Recent (role, content) pairs
            stream: Return an async iterator of text chunks instead of a string
        """
        messages = [SystemMessage(content=f"{RESPONSE_SYSTEM_PROMPT}\n\n{prompt}")]
        messages.extend(to_messages(history))

        if stream:
            return self._stream(messages)

        response = await self.model.ainvoke(messages)
        return response.content.strip()

    async def _stream(self, messages: List[BaseMessage]) -> AsyncIterator[str]:
        async for chunk in self.model.astream(messages):
            if chunk.content:
                yield chunk.content
