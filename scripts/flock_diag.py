"""Flock diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from flock.config import FlockSettings
from flock.storage import ChromaUnavailableError, SnapshotStore


def load_store(settings: FlockSettings) -> SnapshotStore:
    try:
        return SnapshotStore(settings.chroma_persist_path)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)


def cmd_agents(args: argparse.Namespace) -> None:
    settings = FlockSettings()
    store = load_store(settings)
    try:
        snapshot = store.load_snapshot()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    agents = snapshot.agents if snapshot is not None else []
    if args.json:
        print(json.dumps(agents, indent=2))
    else:
        for agent in agents:
            print(f"{agent['id']} [{agent['status']}] {agent['name']} -> {agent['branch']}")


def cmd_history(args: argparse.Namespace) -> None:
    settings = FlockSettings()
    store = load_store(settings)
    try:
        records = store.list_lifecycle(agent_id=args.agent_id)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    if args.limit is not None and args.limit > 0:
        records = records[-args.limit :]
    payload = [
        {
            "agent_id": record.agent_id,
            "event": record.event,
            "name": record.name,
            "detail": record.detail,
            "recorded_at": record.recorded_at.isoformat(),
        }
        for record in records
    ]
    print(json.dumps(payload, indent=2))


def cmd_events(args: argparse.Namespace) -> None:
    settings = FlockSettings()
    store = load_store(settings)
    try:
        events = store.search_events(args.query, limit=args.limit)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    payload = [
        {
            "event_id": event.id,
            "stream_id": event.stream_id,
            "event_type": event.event_type,
            "timestamp": event.timestamp.isoformat(),
            "excerpt": event.document[:200],
        }
        for event in events
    ]
    print(json.dumps(payload, indent=2))


def cmd_devservers(args: argparse.Namespace) -> None:
    settings = FlockSettings()
    store = load_store(settings)
    try:
        snapshot = store.load_snapshot()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    configs = snapshot.devservers if snapshot is not None else {}
    print(json.dumps({agent_id: config.model_dump() for agent_id, config in configs.items()}, indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = FlockSettings()
    store = load_store(settings)
    try:
        snapshot = store.load_snapshot()
        history = store.list_lifecycle()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    agents = snapshot.agents if snapshot is not None else []
    status_counts: dict[str, int] = {}
    for agent in agents:
        status = agent.get("status", "unknown")
        status_counts[status] = status_counts.get(status, 0) + 1

    event_counts: dict[str, int] = {}
    for record in history:
        event_counts[record.event] = event_counts.get(record.event, 0) + 1

    metrics = {
        "agents_total": len(agents),
        "status_counts": status_counts,
        "lifecycle_events": len(history),
        "lifecycle_event_counts": event_counts,
        "devserver_configs": len(snapshot.devservers) if snapshot is not None else 0,
        "snapshot_saved_at": snapshot.saved_at.isoformat() if snapshot is not None else None,
    }
    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Flock diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_agents = sub.add_parser("agents", help="List agents from the latest snapshot")
    p_agents.add_argument("--json", action="store_true", help="Output JSON")
    p_agents.set_defaults(func=cmd_agents)

    p_history = sub.add_parser("history", help="List lifecycle events")
    p_history.add_argument("--agent-id")
    p_history.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N events",
    )
    p_history.set_defaults(func=cmd_history)

    p_events = sub.add_parser("events", help="Search stored events by keyword")
    p_events.add_argument("query", nargs="?")
    p_events.add_argument("--limit", type=int, default=20)
    p_events.set_defaults(func=cmd_events)

    p_devservers = sub.add_parser("devservers", help="Show per-agent dev server configs")
    p_devservers.set_defaults(func=cmd_devservers)

    p_metrics = sub.add_parser("metrics", help="Show agent and lifecycle counts")
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
