"""
ICN Node CLI.

Usage:
    icn-node [--log-level LEVEL] [--config FILE] <command>

Commands:
    run [--interval N]          Run the daemon
    execute --file F [--force]  Execute one proposal file
    trace --proposal ID         Show stored output and a traced re-run
    watch                       Watch the queue and the ledger
    dag-info [--json]           Ledger summary
    dag-vertex --id ID [--json] One vertex with parents and children
    dag-log                     Print the DAG audit log
    health [--json]             Probe federation peers

Failures print one line on stderr and exit with status 1.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from ..logging import LoggingOptions, configure_logging, load_logging_options_from_env
from .config import DEFAULT_CONFIG_ENV, NodeConfig
from .daemon import NodeRuntime, run_daemon, run_watch
from .errors import NodeError
from .watch import WatchEvent

RULE = "-" * 40


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="icn-node", description="ICN cooperative node runner")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["debug", "info", "warning", "error", "critical"],
        help="Log level (defaults to logging.level from config)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help=f"Path to JSON/TOML/YAML config (defaults to {DEFAULT_CONFIG_ENV})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run the node in daemon mode")
    run.add_argument("--interval", type=float, default=None, help="Check interval in seconds")

    execute = subparsers.add_parser("execute", help="Execute a specific proposal")
    execute.add_argument("--file", required=True, help="Path to the proposal file")
    execute.add_argument("--force", action="store_true", help="Bypass validation")

    trace = subparsers.add_parser("trace", help="Trace a proposal execution")
    trace.add_argument("--proposal", required=True, help="Proposal ID to trace")

    subparsers.add_parser("watch", help="Watch the DAG and proposal queue")

    dag_info = subparsers.add_parser("dag-info", help="Show ledger summary")
    dag_info.add_argument("--json", action="store_true", help="Print raw JSON")

    dag_vertex = subparsers.add_parser("dag-vertex", help="Show one vertex")
    dag_vertex.add_argument("--id", required=True, help="Vertex ID")
    dag_vertex.add_argument("--json", action="store_true", help="Print raw JSON")

    subparsers.add_parser("dag-log", help="Print the DAG audit log")

    health = subparsers.add_parser("health", help="Probe federation peers")
    health.add_argument("--json", action="store_true", help="Print raw JSON")
    return parser


def _load_config(path: Optional[str]) -> NodeConfig:
    config_path = path or os.environ.get(DEFAULT_CONFIG_ENV)
    return NodeConfig.load(Path(config_path) if config_path else None)


def _logging_options(config: NodeConfig, level: Optional[str]) -> LoggingOptions:
    options = load_logging_options_from_env(LoggingOptions(
        level=config.logging.level,
        format=config.logging.format,
        file=config.logging.file,
    ))
    if level:
        options = replace(options, level=level)
    return options


# =============================================================================
# Command output
# =============================================================================

def _print_dag_info(info: Dict[str, Any]) -> None:
    print("DAG Summary:")
    print(f"Vertex Count: {info['vertex_count']}")
    print(f"Root Count: {info['root_count']}")
    print(f"Tip Count: {info['tip_count']}")
    print(f"Genesis Time: {info['genesis_time']}")
    print(f"Latest Update: {info['latest_update']}")
    print("\nLatest Tips:")
    if not info["tips"]:
        print("No tips found")
    for tip in info["tips"]:
        print(f"- {tip}")


def _print_vertex(vertex: Dict[str, Any]) -> None:
    print("Vertex Details:")
    for label, key in (
        ("ID", "id"),
        ("Timestamp", "timestamp"),
        ("Height", "height"),
        ("Proposer", "proposer"),
        ("Data Type", "data_type"),
        ("Scope", "scope"),
        ("Proposal", "proposal_id"),
        ("Hash", "hash"),
    ):
        print(f"{label}: {vertex[key]}")

    print("\nParents:")
    if not vertex["parents"]:
        print("No parents (root vertex)")
    for parent in vertex["parents"]:
        print(f"- {parent}")

    print("\nChildren:")
    if not vertex["children"]:
        print("No children (tip vertex)")
    for child in vertex["children"]:
        print(f"- {child}")


def _print_event(event: WatchEvent) -> None:
    print(f"[{event.kind}] {event.message}", flush=True)


# =============================================================================
# Commands
# =============================================================================

def _cmd_execute(runtime: NodeRuntime, args: argparse.Namespace) -> int:
    async def _execute():
        try:
            return await runtime.coordinator.execute(Path(args.file), force=args.force)
        finally:
            runtime.close()

    result = asyncio.run(_execute())
    if result is None:
        print("Proposal already executed; nothing to do")
        return 0
    print(f"Execution completed with status: {result.status_code}")
    if result.vertex_id:
        print(f"Vertex: {result.vertex_id}")
    return 0 if result.succeeded else 1


def _cmd_trace(runtime: NodeRuntime, args: argparse.Namespace) -> int:
    async def _trace():
        try:
            return await runtime.coordinator.trace(args.proposal)
        finally:
            runtime.close()

    report = asyncio.run(_trace())
    if report.previous_output is not None:
        print(f"Execution Output for Proposal {report.proposal_id}:")
        print(RULE)
        print(json.dumps(report.previous_output, indent=2))
        print(RULE)
    else:
        print(f"No execution output found for proposal: {report.proposal_id}")

    print("Trace Output:")
    print(RULE)
    print(report.trace.output)
    print(RULE)
    return 0


def _cmd_health(runtime: NodeRuntime, args: argparse.Namespace) -> int:
    status = asyncio.run(runtime.check_health())
    runtime.close()
    data = status.to_dict()
    if args.json:
        print(json.dumps(data, indent=2))
        return 0
    print(f"Online peers: {len(status.online_peers)}")
    for peer in status.online_peers:
        print(f"- {peer.name} ({peer.address})")
    print(f"Offline peers: {len(status.offline_peers)}")
    for peer in status.offline_peers:
        print(f"- {peer.name} ({peer.address})")
    return 0


def _dispatch(runtime: NodeRuntime, args: argparse.Namespace) -> int:
    if args.command == "run":
        asyncio.run(run_daemon(runtime, interval=args.interval))
        return 0
    if args.command == "execute":
        return _cmd_execute(runtime, args)
    if args.command == "trace":
        return _cmd_trace(runtime, args)
    if args.command == "watch":
        asyncio.run(run_watch(runtime, _print_event))
        return 0
    if args.command == "health":
        return _cmd_health(runtime, args)

    runtime.close()
    if args.command == "dag-info":
        info = runtime.ledger.summary().to_dict()
        if args.json:
            print(json.dumps({"dag_info": info}, indent=2))
        else:
            _print_dag_info(info)
        return 0
    if args.command == "dag-vertex":
        vertex = runtime.ledger.describe(args.id)
        if args.json:
            print(json.dumps(vertex, indent=2))
        else:
            _print_vertex(vertex)
        return 0
    if args.command == "dag-log":
        print(runtime.ledger.read_log())
        return 0
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        config = _load_config(args.config)
        options = _logging_options(config, args.log_level)
        configure_logging(options)
        runtime = NodeRuntime.open(config)
        configure_logging(replace(options, node_id=runtime.state.node_id))
        return _dispatch(runtime, args)
    except NodeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
