"""
Relay Protocols Module

This module contains typed event schemas, the debug event log, and data
contracts for streaming relay state to external interfaces.
"""

from agentrelay.protocols.events import (
    EventType,
    AgentEvent,
    StreamMessage,
    create_agent_delta_event,
    create_agent_end_event,
    create_agent_start_event,
    create_conversation_event,
    create_error_event,
    create_handoff_event,
    create_narration_event,
    create_revision_event,
    create_run_end_event,
    create_run_start_event,
    create_tool_call_event,
    create_tool_call_miss_event,
    detect_missed_tool_calls,
)
from agentrelay.protocols.relay_log import RelayLog

__all__ = [
    "EventType",
    "AgentEvent",
    "StreamMessage",
    "RelayLog",
    "create_agent_delta_event",
    "create_agent_end_event",
    "create_agent_start_event",
    "create_conversation_event",
    "create_error_event",
    "create_handoff_event",
    "create_narration_event",
    "create_revision_event",
    "create_run_end_event",
    "create_run_start_event",
    "create_tool_call_event",
    "create_tool_call_miss_event",
    "detect_missed_tool_calls",
]
