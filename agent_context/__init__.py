"""agent-context: memory, branches and budgeted context assembly for a conversational agent."""

from .config import load_config
from .engine import AgentContextEngine
from .types import (
    AgentContextConfig,
    AssembledContext,
    Branch,
    ContextReport,
    InboundEvent,
    MemoryRecord,
    MessageContent,
    RetrievalQuery,
    Sender,
    TurnResult,
)

__version__ = "0.1.0"

__all__ = [
    "AgentContextEngine",
    "load_config",
    "AgentContextConfig",
    "AssembledContext",
    "Branch",
    "ContextReport",
    "InboundEvent",
    "MemoryRecord",
    "MessageContent",
    "RetrievalQuery",
    "Sender",
    "TurnResult",
]
