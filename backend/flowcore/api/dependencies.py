"""
Engine wiring for the API - one set of collaborators per process
"""
import logging
from functools import lru_cache
from typing import Optional

from ..core.config import settings
from ..flow.executor import FlowExecutor
from ..services.flows import FlowRegistry
from ..services.llm import LLMService
from ..services.sessions import SessionStore
from ..services.tools import HttpToolExecutor, ToolExecutor, ToolRegistry
from ..services.user_data import UserDataStore, create_user_data_store

logger = logging.getLogger(__name__)


class Engine:
    """Collaborators shared by the routes"""

    def __init__(
        self,
        flows: FlowRegistry,
        user_data_store: UserDataStore,
        tools: ToolExecutor,
        sessions: SessionStore,
        llm: Optional[LLMService] = None,
    ):
        self.flows = flows
        self.user_data_store = user_data_store
        self.tools = tools
        self.sessions = sessions
        self.llm = llm
        self.executor = FlowExecutor(flows, user_data_store, tools, llm=llm)


def build_engine() -> Engine:
    """
    Build the engine from settings.

    Flows are loaded and validated here, so an invalid flow file fails the boot.
    """
    if settings.TOOL_WEBHOOK_BASE_URL:
        tools: ToolExecutor = HttpToolExecutor()
    else:
        tools = ToolRegistry()

    # An executor that cannot list its tools skips the load-time tool check
    flows = FlowRegistry(tool_names=tools.tool_names() or None)
    flows.load_directory(settings.FLOWS_DIR)

    llm = LLMService() if settings.OPENAI_API_KEY else None
    if llm is None:
        logger.warning("OPENAI_API_KEY not set: running without model extraction and responses")

    return Engine(
        flows=flows,
        user_data_store=create_user_data_store(settings.USER_DATA_BACKEND),
        tools=tools,
        sessions=SessionStore(),
        llm=llm,
    )


@lru_cache()
def get_engine() -> Engine:
    """Get cached engine instance"""
    return build_engine()
