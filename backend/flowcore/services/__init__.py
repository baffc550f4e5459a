"""
Services Module
Adapters for the collaborators of the flow engine
"""

# UserData persistence
from .user_data import (
    UserDataStore,
    InMemoryUserDataStore,
    SupabaseUserDataStore,
    create_user_data_store,
)

# Tool executors
from .tools import ToolExecutor, ToolRegistry, HttpToolExecutor

# LLM (OpenAI via LangChain)
from .llm import LLMService

# Flow definitions
from .flows import FlowRegistry

# Conversation sessions
from .sessions import SessionStore

__all__ = [
    "UserDataStore",
    "InMemoryUserDataStore",
    "SupabaseUserDataStore",
    "create_user_data_store",
    "ToolExecutor",
    "ToolRegistry",
    "HttpToolExecutor",
    "LLMService",
    "FlowRegistry",
    "SessionStore",
]
