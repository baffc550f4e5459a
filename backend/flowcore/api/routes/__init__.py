from .flows import router as flows_router
from .conversations import router as conversations_router

__all__ = [
    "flows_router",
    "conversations_router",
]
