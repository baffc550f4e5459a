"""
Session store - in-memory conversation sessions
"""
import uuid
import logging
from typing import Dict, List, Optional

from ..flow.context import FlowSession

logger = logging.getLogger(__name__)


class SessionStore:
    """Process-local FlowSession storage keyed by conversation id"""

    def __init__(self):
        self._sessions: Dict[str, FlowSession] = {}

    def create(
        self,
        user_id: str,
        flow_slug: str,
        initial_stage: str,
        conversation_id: Optional[str] = None,
    ) -> FlowSession:
        session = FlowSession(
            conversation_id=conversation_id or str(uuid.uuid4()),
            user_id=user_id,
            flow_slug=flow_slug,
            stage=initial_stage,
        )
        self._sessions[session.conversation_id] = session
        logger.info(f"Created conversation {session.conversation_id} on flow '{flow_slug}'")
        return session

    def get(self, conversation_id: str) -> Optional[FlowSession]:
        return self._sessions.get(conversation_id)

    def save(self, session: FlowSession) -> None:
        self._sessions[session.conversation_id] = session

    def list_for_user(self, user_id: str) -> List[FlowSession]:
        return [s for s in self._sessions.values() if s.user_id == user_id]

    def clear(self) -> None:
        self._sessions.clear()
