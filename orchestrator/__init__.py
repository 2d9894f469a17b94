"""
Agent Orchestrator - LLM Orchestration Pipeline
===============================================

Turns a single conversational turn into a grounded, tool-augmented model
response.

This package provides:
- Multi-provider model routing (OpenAI, Anthropic) with per-agent preferences
- Token-budgeted context assembly from several sources
- Episodic and semantic memory with consolidation and decay
- Tool discovery and execution with model-guided retry
- A staged message processor with streaming support
"""

__version__ = "1.0.0"
