"""Command-line runner: executes one turn of a workflow document.

Usage:
  python -m flowrunner workflow.json --conversation c1 --user u1 --prompt "Hi"
  python -m flowrunner workflow.json --conversation c1 --user u1 --prompt "Oslo" --metrics

Conversations, memory, slot state and progress rows live in ``FLOW_DB_URL``,
so a halted run resumes on the next invocation with the same conversation id.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from flowrunner.config import Settings
from flowrunner.connectors.records import Conversation
from flowrunner.connectors.sql_data_client import SqlDataClient
from flowrunner.db.engine import init_db, make_engine, make_session_factory
from flowrunner.errors import FlowRunnerError
from flowrunner.runtime.executor import build_runtime, run_graph
from flowrunner.runtime.state import initial_state
from flowrunner.utils.logger import setup_logger
from flowrunner.utils.metrics import to_prometheus_text
from flowrunner.utils.tracing import setup_telemetry

logger = logging.getLogger("flowrunner.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="flowrunner", description="Run one turn of a flowrunner workflow")
    parser.add_argument("workflow", type=Path, help="Workflow definition JSON file")
    parser.add_argument("--conversation", required=True, help="Conversation id (created when missing)")
    parser.add_argument("--user", required=True, help="User id; also the progress owner")
    parser.add_argument("--prompt", default="", help="User message for this turn")
    parser.add_argument("--tenant", default=None, help="Tenant id for prompt pointer resolution")
    parser.add_argument("--db-url", default=None, help="Override FLOW_DB_URL")
    parser.add_argument("--metrics", action="store_true", help="Print Prometheus metrics after the run")
    return parser


async def run_turn(args: argparse.Namespace, settings: Settings) -> dict[str, Any]:
    definition = json.loads(args.workflow.read_text(encoding="utf-8"))
    engine = make_engine(settings, url=args.db_url)
    try:
        await init_db(engine)
        data_client = SqlDataClient(make_session_factory(engine))
        services = build_runtime(settings, data_client=data_client)

        if await data_client.get_conversation(args.conversation) is None:
            await data_client.create_conversation(Conversation(
                id=args.conversation, user_id=args.user, workflow_id=definition.get("id", ""),
            ))

        extra: dict[str, Any] = {"tenant_id": args.tenant} if args.tenant else {}
        state = initial_state(definition.get("id", ""), args.conversation, args.user, args.prompt, **extra)
        result = await run_graph(definition, state, None, services)
    finally:
        await engine.dispose()

    report: dict[str, Any] = {
        "status": result.status,
        "awaitingInputFor": result.awaiting_input_for,
        "output": result.state.get("output"),
        "intent": result.state.get("intent") or None,
    }
    if args.metrics:
        report["metrics"] = to_prometheus_text(services.metrics)
    return report


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings()
    setup_logger(log_format=settings.LOG_FORMAT, log_level=settings.LOG_LEVEL)
    setup_telemetry(settings.OTLP_ENDPOINT)

    try:
        report = asyncio.run(run_turn(args, settings))
    except FlowRunnerError as exc:
        logger.error("Run failed: %s", exc)
        print(json.dumps({"status": "failed", "error": str(exc)}))
        return 1

    metrics_text = report.pop("metrics", None)
    print(json.dumps(report, indent=2))
    if metrics_text:
        print(metrics_text)
    return 0


if __name__ == "__main__":
    sys.exit(main())
