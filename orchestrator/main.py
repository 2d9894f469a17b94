"""
Agent Orchestrator - Command Line Entry Point
=============================================

Runs one turn through the pipeline. It:
1. Loads configuration
2. Wires the pipeline (router, context engine, memory, tools)
3. Optionally loads agent preferences and indexes knowledge files
4. Processes the request and prints the response (or stream events)

Run with:
    python -m orchestrator.main request.json

Or after installing:
    agent-orchestrator request.json --stream
    echo '{"message": "hi", "agent_id": "a1"}' | agent-orchestrator -

Exit status is 0 on success, 1 on an error response, 2 on bad input files.
"""

import argparse
import asyncio
import json
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

from orchestrator.agent.core import Pipeline, build_pipeline
from orchestrator.llm import AgentLLMPreference, InMemoryPreferenceStore
from orchestrator.rag import KnowledgeIndexer
from orchestrator.utils.config import Config, get_config
from orchestrator.utils.logger import Logger

main_logger = Logger("Main")


def _read_json(source: str) -> Any:
    if source == "-":
        return json.load(sys.stdin)
    return json.loads(Path(source).read_text(encoding="utf-8"))


def load_preferences(path: str) -> InMemoryPreferenceStore:
    """
    Load agent preferences from a JSON file.

    Accepts a list of preference objects, or {"agents": [...], "default": {...}}.
    """
    data = _read_json(path)
    if isinstance(data, list):
        data = {"agents": data}
    default = data.get("default")
    return InMemoryPreferenceStore(
        preferences=[AgentLLMPreference.from_dict(p) for p in data.get("agents", [])],
        default=AgentLLMPreference.from_dict({"agent_id": "*", **default}) if default else None,
    )


async def _index_knowledge(pipeline: Pipeline, agent_id: str, paths: list[str]) -> None:
    indexer = KnowledgeIndexer(pipeline.embeddings, pipeline.vectorstore)
    documents = [
        {"id": Path(p).name, "text": Path(p).read_text(encoding="utf-8"), "metadata": {"path": p}}
        for p in paths
    ]
    results = await indexer.index_multiple(agent_id, documents)
    main_logger.info(f"Indexed {sum(results.values())} chunks from {len(documents)} files")


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Apply command line overrides for the tool service and knowledge store."""
    if getattr(args, "tools_url", None):
        config = replace(config, pipeline=replace(config.pipeline, tool_service_url=args.tools_url))
    if getattr(args, "knowledge_dir", None):
        config = replace(config, context=replace(config.context, knowledge_store_path=args.knowledge_dir))
    return config


async def main(args: argparse.Namespace) -> int:
    """
    Main async entry point.

    Returns:
        Process exit status
    """
    try:
        payload = _read_json(args.request)
        preferences = load_preferences(args.agents) if args.agents else None
    except (OSError, ValueError, KeyError) as e:
        main_logger.error("Could not read input", e)
        return 2

    config = apply_overrides(get_config(), args)
    pipeline = build_pipeline(config, preferences=preferences)
    try:
        return await _run_turn(pipeline, payload, args)
    finally:
        await pipeline.aclose()


async def _run_turn(pipeline: Pipeline, payload: dict, args: argparse.Namespace) -> int:
    if args.knowledge:
        agent_id = (payload.get("context") or {}).get("agent_id") or payload.get("agent_id")
        if not agent_id:
            main_logger.warning("--knowledge given but the request has no agent_id; skipping indexing")
        else:
            await _index_knowledge(pipeline, agent_id, args.knowledge)

    if args.stream:
        status = 0
        async for event in pipeline.processor.process_stream(payload):
            print(json.dumps(event, default=str), flush=True)
            if event["event"] == "error":
                status = 1
        return status

    response = await pipeline.processor.process(payload)
    print(json.dumps(response, indent=2, default=str))
    return 0 if response.get("status") == "success" else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-orchestrator",
        description="Run one conversational turn through the LLM orchestration pipeline.",
    )
    parser.add_argument("request", help="Request JSON file, or - for stdin")
    parser.add_argument("--stream", action="store_true", help="Print one JSON line per stream event")
    parser.add_argument("--agents", help="Agent preferences JSON file")
    parser.add_argument(
        "--knowledge",
        nargs="*",
        default=[],
        metavar="FILE",
        help="Text files to index as the agent's knowledge before the turn",
    )
    parser.add_argument(
        "--knowledge-dir",
        metavar="DIR",
        help="Directory the knowledge index is loaded from and saved to (overrides KNOWLEDGE_STORE_PATH)",
    )
    parser.add_argument(
        "--tools-url",
        metavar="URL",
        help="Remote tool service base URL (overrides TOOL_SERVICE_URL)",
    )
    return parser


def run():
    """
    Synchronous entry point.

    This is called when running with `agent-orchestrator` command.
    """
    args = build_parser().parse_args()
    try:
        status = asyncio.run(main(args))
    except KeyboardInterrupt:
        status = 130
    sys.exit(status)


if __name__ == "__main__":
    run()
