"""
Flow Context - per-turn extraction context and per-conversation session state
"""
import copy
import json
import logging
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..models.flow import FieldDefinition

logger = logging.getLogger(__name__)

REJECTED_VALUES_KEY = "__rejected_values"
RESERVED_PREFIX = "__"


class SessionStatus(str, Enum):
    """Status of a flow session"""
    ACTIVE = "active"
    COMPLETED = "completed"
    ENDED = "ended"


# ============ REJECTED VALUES ============

def read_rejected_values(user_data: Optional[Dict[str, Any]]) -> Dict[str, List[Any]]:
    """Decode the per-field list of values rejected earlier in this flow."""
    raw = (user_data or {}).get(REJECTED_VALUES_KEY)
    if not raw:
        return {}
    if isinstance(raw, dict):
        return {k: list(v) for k, v in raw.items() if isinstance(v, list)}
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring unreadable rejected values bookkeeping")
        return {}
    if not isinstance(decoded, dict):
        return {}
    return {k: list(v) for k, v in decoded.items() if isinstance(v, list)}


def add_rejected_values(user_data: Dict[str, Any], rejected: Dict[str, Any]) -> Dict[str, Any]:
    """
    Record rejected values in `user_data` (in place) and return it.

    Args:
        user_data: Working copy of the user data
        rejected: field slug -> rejected raw value
    """
    if not rejected:
        return user_data
    current = read_rejected_values(user_data)
    for field_slug, value in rejected.items():
        values = current.setdefault(field_slug, [])
        if value not in values:
            values.append(value)
    user_data[REJECTED_VALUES_KEY] = json.dumps(current, ensure_ascii=False)
    return user_data


def public_user_data(user_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """User data without the reserved bookkeeping keys."""
    return {
        k: v for k, v in (user_data or {}).items()
        if not k.startswith(RESERVED_PREFIX)
    }


# ============ EXTRACTION CONTEXT ============

@dataclass
class ExtractionContext:
    """
    Everything the extraction guard knows about the current turn.

    Built fresh for every user message and never persisted.
    """

    message: str
    fields_schema: Dict[str, FieldDefinition] = field(default_factory=dict)
    expected_fields: List[str] = field(default_factory=list)
    last_question_text: Optional[str] = None
    user_data: Dict[str, Any] = field(default_factory=dict)
    is_first_turn: bool = False
    rejected_values: Dict[str, List[Any]] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        message: str,
        fields_schema: Dict[str, FieldDefinition],
        expected_fields: Optional[List[str]] = None,
        last_question_text: Optional[str] = None,
        user_data: Optional[Dict[str, Any]] = None,
        is_first_turn: Optional[bool] = None,
    ) -> "ExtractionContext":
        snapshot = dict(user_data or {})
        if is_first_turn is None:
            is_first_turn = not (last_question_text or "").strip()
        return cls(
            message=message or "",
            fields_schema=fields_schema or {},
            expected_fields=[f for f in (expected_fields or []) if f in (fields_schema or {})],
            last_question_text=last_question_text,
            user_data=snapshot,
            is_first_turn=is_first_turn,
            rejected_values=read_rejected_values(snapshot),
        )

    @property
    def text(self) -> str:
        return self.message.strip()

    def field_def(self, field_slug: str) -> Optional[FieldDefinition]:
        return self.fields_schema.get(field_slug)

    def was_rejected(self, field_slug: str, value: Any) -> bool:
        previous = self.rejected_values.get(field_slug, [])
        if value in previous:
            return True
        if isinstance(value, str):
            stripped = value.strip()
            return any(isinstance(p, str) and p.strip() == stripped for p in previous)
        return False


# ============ SESSION ============

@dataclass
class FlowSession:
    """
    State of one conversation running a flow.

    Owned by the caller (API layer / session store). The executor only
    updates it once a turn has completed.
    """

    conversation_id: str
    user_id: str
    flow_slug: str
    stage: str
    status: SessionStatus = SessionStatus.ACTIVE

    # Stages completed so far, in order
    history: List[str] = field(default_factory=list)

    # Last question asked by the assistant (drives expectation narrowing)
    last_question_text: Optional[str] = None
    turn_count: int = 0

    # Timing
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @property
    def is_first_turn(self) -> bool:
        return self.turn_count == 0 and not self.last_question_text

    def move_to_stage(self, stage: str) -> None:
        """
        Record the completion of the current stage and move to another one.

        Args:
            stage: Slug of the new stage
        """
        if stage == self.stage:
            return
        self.history.append(self.stage)
        previous = self.stage
        self.stage = stage
        self.updated_at = datetime.now()
        logger.info(f"Conversation {self.conversation_id}: {previous} -> {stage}")

    def complete(self) -> None:
        self.status = SessionStatus.COMPLETED
        self.updated_at = datetime.now()

    def end(self) -> None:
        self.status = SessionStatus.ENDED
        self.updated_at = datetime.now()

    def snapshot(self) -> "FlowSession":
        """Independent copy to run a turn on before it is committed."""
        return copy.deepcopy(self)

    def apply(self, other: "FlowSession") -> None:
        """Take over the state of a committed turn (in place)."""
        for f in fields(self):
            setattr(self, f.name, getattr(other, f.name))

    def switch_flow(self, flow_slug: str, initial_stage: str) -> None:
        """Hand the session over to another flow."""
        self.history.append(self.stage)
        self.flow_slug = flow_slug
        self.stage = initial_stage
        self.status = SessionStatus.ACTIVE
        self.last_question_text = None
        self.updated_at = datetime.now()
        logger.info(f"Conversation {self.conversation_id}: handoff to flow '{flow_slug}'")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "flow_slug": self.flow_slug,
            "stage": self.stage,
            "status": self.status.value,
            "history": list(self.history),
            "last_question_text": self.last_question_text,
            "turn_count": self.turn_count,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "metadata": self.metadata,
        }

    def __str__(self) -> str:
        return (
            f"FlowSession(conversation={self.conversation_id}, "
            f"flow={self.flow_slug}, stage={self.stage}, status={self.status.value})"
        )
