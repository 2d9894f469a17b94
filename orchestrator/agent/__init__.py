"""
Agent Pipeline
==============

The message processor turns one conversational turn into a response. It:
1. Parses and validates the request
2. Enriches it with context and memories
3. Optionally runs a reasoning pass
4. Calls the model and executes tools in a bounded loop
5. Builds the response and persists the turn

This module provides:
- MessageProcessor: Runs the stage pipeline (process / process_stream)
- build_pipeline: Wires a processor from configuration
- ToolExecutor: Tool discovery, execution and retry guidance
- IntentClassifier: Decides whether a turn needs tools
"""

from orchestrator.agent.core import MessageProcessor, Pipeline, build_pipeline
from orchestrator.agent.intent import IntentClassification, IntentClassifier
from orchestrator.agent.models import ChatTurnRequest, ProcessingContext, StreamEvent, ToolDetail
from orchestrator.agent.tools_executor import ToolCall, ToolCallStatus, ToolExecutor, ToolResult

__all__ = [
    "ChatTurnRequest",
    "IntentClassification",
    "IntentClassifier",
    "MessageProcessor",
    "Pipeline",
    "ProcessingContext",
    "StreamEvent",
    "ToolCall",
    "ToolCallStatus",
    "ToolDetail",
    "ToolExecutor",
    "ToolResult",
    "build_pipeline",
]
