"""Tests for the command line entry point."""

import argparse
import json
from dataclasses import replace

import pytest

from orchestrator.agent.core import build_pipeline
from orchestrator.main import apply_overrides, build_parser, load_preferences, main
from orchestrator.rag import VectorDocument
from orchestrator.tools import ToolRegistry
from orchestrator.tools.http_backend import HttpToolBackend


@pytest.mark.asyncio
async def test_load_preferences_from_list_and_object(tmp_path):
    listed = tmp_path / "list.json"
    listed.write_text(json.dumps([{"agent_id": "agent-1", "model": "gpt-4o", "params": {"temperature": 0.2}}]))
    wrapped = tmp_path / "wrapped.json"
    wrapped.write_text(json.dumps({
        "agents": [{"agent_id": "agent-1", "provider": "anthropic", "model": "claude-3-5-haiku"}],
        "default": {"provider": "openai", "model": "gpt-4o-mini"},
    }))

    from_list = load_preferences(str(listed))
    from_object = load_preferences(str(wrapped))

    first = await from_list.get_preference("agent-1")
    assert (first.provider, first.model, first.params) == ("openai", "gpt-4o", {"temperature": 0.2})
    assert await from_list.get_preference("agent-2") is None
    assert (await from_object.get_preference("agent-1")).provider == "anthropic"
    assert (await from_object.get_preference("agent-2")).model == "gpt-4o-mini"


def test_parser_options():
    args = build_parser().parse_args(["req.json", "--stream", "--knowledge", "a.txt", "b.txt"])

    assert args.request == "req.json"
    assert args.stream is True
    assert args.agents is None
    assert args.knowledge == ["a.txt", "b.txt"]
    assert args.knowledge_dir is None
    assert args.tools_url is None


def test_overrides_replace_tool_service_and_knowledge_store(config):
    args = build_parser().parse_args(["req.json", "--tools-url", "http://tools.local", "--knowledge-dir", "kb"])

    overridden = apply_overrides(config, args)

    assert overridden.pipeline.tool_service_url == "http://tools.local"
    assert overridden.context.knowledge_store_path == "kb"
    assert overridden.pipeline.deadline_seconds == config.pipeline.deadline_seconds
    assert apply_overrides(config, build_parser().parse_args(["req.json"])) is config


@pytest.mark.asyncio
async def test_pipeline_uses_the_configured_tool_service(config):
    remote = replace(config, pipeline=replace(config.pipeline, tool_service_url="http://tools.local/"))

    pipeline = build_pipeline(remote)
    local = build_pipeline(config)

    assert isinstance(pipeline.tools, HttpToolBackend)
    assert pipeline.tools.base_url == "http://tools.local"
    assert isinstance(local.tools, ToolRegistry)
    await pipeline.aclose()
    await local.aclose()
    assert pipeline.tools.client.is_closed


def test_knowledge_store_survives_a_rebuild(config, tmp_path):
    persisted = replace(config, context=replace(config.context, knowledge_store_path=str(tmp_path / "kb")))

    first = build_pipeline(persisted)
    first.vectorstore.add_batch([
        VectorDocument(id="refunds", content="Refunds take five days.", embedding=[1.0, 0.0], metadata={"agent_id": "agent-1"}),
        VectorDocument(id="shipping", content="Shipping is free.", embedding=[0.0, 1.0], metadata={"agent_id": "agent-1"}),
    ])
    second = build_pipeline(persisted)

    assert len(second.vectorstore) == 2
    assert len(build_pipeline(config).vectorstore) == 0


@pytest.mark.asyncio
async def test_unreadable_input_exits_with_status_2(tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")

    missing = argparse.Namespace(request=str(tmp_path / "nope.json"), agents=None, knowledge=[], stream=False, knowledge_dir=None, tools_url=None)
    malformed = argparse.Namespace(request=str(bad), agents=None, knowledge=[], stream=False, knowledge_dir=None, tools_url=None)

    assert await main(missing) == 2
    assert await main(malformed) == 2
