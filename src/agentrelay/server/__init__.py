"""
Agentrelay Server Module

This module contains the FastAPI server and streaming endpoints.
"""

from agentrelay.server.api import app, get_orchestrator, main, set_orchestrator
from agentrelay.server.streaming import EventStream, StreamManager, get_stream_manager

__all__ = [
    "app",
    "main",
    "get_orchestrator",
    "set_orchestrator",
    "EventStream",
    "StreamManager",
    "get_stream_manager",
]
