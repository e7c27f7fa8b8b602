"""CLI: agent-context status, branches, memories, buffer, assemble, sweep, config validate."""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import datetime, timedelta, timezone

from ..config import load_config, validate_config
from ..engine import AgentContextEngine
from ..types import BranchStatus, RetrievalQuery


def _get_engine(args) -> AgentContextEngine:
    return AgentContextEngine(config_path=args.config, llm=None)


def _fmt_dt(dt: datetime | None) -> str:
    return dt.strftime("%Y-%m-%d %H:%M") if dt else "n/a"


def cmd_status(args):
    """Show store counts."""
    engine = _get_engine(args)
    try:
        stats = engine.status()
        print(f"Storage:          {engine.config.storage.sqlite_path}")
        print(f"Context budget:   {engine.config.assembler.budget_tokens:,} tokens")
        print(f"Active branches:  {stats['branches_active']}")
        print(f"Dormant branches: {stats['branches_dormant']}")
        print(f"Closed branches:  {stats['branches_closed']}")
        print(f"Memories:         {stats['memories_active']} active / {stats['memories_total']} total")
        print(f"Buffer entries:   {stats['buffer_entries']}")
        print(f"Profiles:         {stats['profiles']}")
        print(f"Pending notes:    {stats['pending_notes']}")
    finally:
        engine.close()


def cmd_branches(args):
    """List branches, most recently active first."""
    engine = _get_engine(args)
    try:
        status = BranchStatus(args.status) if args.status else None
        branches = engine.branches.list_branches(status)
        if not branches:
            print("No branches.")
            return
        print(f"{'Branch':<10} {'Status':<8} {'Channel':<12} {'Msgs':>5} {'Last Activity':>17}  Topic")
        print("-" * 80)
        for b in branches:
            print(
                f"{b.id[:8]:<10} {b.status.value:<8} {b.channel_type[:12]:<12} "
                f"{engine.branches.message_count(b.id):>5} {_fmt_dt(b.last_activity_at):>17}  "
                f"{b.current_topic or ''}"
            )
    finally:
        engine.close()


def cmd_memories(args):
    """List recent memories, or rank them against --query."""
    engine = _get_engine(args)
    try:
        if args.query:
            results = engine.memory.retrieve(RetrievalQuery(query_text=args.query, limit=args.limit))
            if not results:
                print("No matching memories.")
                return
            print(f"{'Score':>6} {'Rec':>5} {'Imp':>5} {'Rel':>5}  Memory")
            print("-" * 70)
            for s in results:
                print(
                    f"{s.score:>6.3f} {s.breakdown.recency:>5.2f} {s.breakdown.importance:>5.2f} "
                    f"{s.breakdown.relevance:>5.2f}  [{s.memory.type.value}] {s.memory.content[:60]}"
                )
            return

        records = engine.memory.get_recent(limit=args.limit)
        if not records:
            print("No memories yet.")
            return
        for r in records:
            print(f"{_fmt_dt(r.created_at)}  [{r.type.value}] ({r.importance:.2f}) {r.content[:60]}")
    finally:
        engine.close()


def cmd_buffer(args):
    """Show buffered turn events."""
    engine = _get_engine(args)
    try:
        if args.since:
            since = datetime.fromisoformat(args.since)
            if since.tzinfo is None:
                since = since.replace(tzinfo=timezone.utc)
        else:
            since = datetime.now(timezone.utc) - timedelta(hours=24)
        entries = engine.memory.get_buffer_since(since)
        if not entries:
            print("Buffer is empty.")
            return
        for e in entries:
            branch = e.branch_id[:8] if e.branch_id else "-"
            print(f"{_fmt_dt(e.timestamp)}  {branch:<8} {e.event_type:<18} {e.content[:50]}")
    finally:
        engine.close()


def cmd_assemble(args):
    """Assemble and print the context for a branch."""
    engine = _get_engine(args)
    try:
        matches = [b for b in engine.branches.list_branches() if b.id.startswith(args.branch)]
        if len(matches) != 1:
            print(f"No unique branch matches '{args.branch}'", file=sys.stderr)
            sys.exit(1)
        assembled = engine.assemble_for(
            matches[0].id,
            current_text=args.message,
            include_switchboard=args.switchboard,
        )
        print(assembled.text)
        r = assembled.report
        print(file=sys.stderr)
        print(
            f"[{r.total_tokens}/{r.budget_tokens} tokens | memories={r.memories_included} "
            f"switchboard={r.switchboard_included} summary={r.summary_used} "
            f"messages={r.messages_included} dropped={r.messages_dropped}"
            f"{' OVER BUDGET' if r.over_budget else ''}]",
            file=sys.stderr,
        )
    finally:
        engine.close()


def cmd_sweep(args):
    """Demote idle branches, fade expired memories, remove old delivered notes."""
    engine = _get_engine(args)
    try:
        threshold = timedelta(hours=args.hours) if args.hours is not None else None
        result = engine.sweep(threshold)
        print(f"Branches made dormant: {result['branches_demoted']}")
        print(f"Memories faded:        {result['memories_faded']}")
        print(f"Notes removed:         {result['notes_removed']}")
        print(f"Locks released:        {result['locks_evicted']}")
    finally:
        engine.close()


def cmd_config_validate(args):
    """Validate config file."""
    try:
        config = load_config(args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    else:
        print("Config is valid.")
        print(f"  Storage: {config.storage.sqlite_path}")
        print(f"  Context budget: {config.assembler.budget_tokens:,}")
        print(f"  Embeddings: {config.embeddings.provider} ({config.embeddings.model})")
        print(f"  Summarization: {config.summarization.provider or 'disabled'}")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="agent-context",
        description="Memory and context management for a conversational agent",
    )
    parser.add_argument("--config", "-c", help="Path to config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("status", help="Show store counts")

    branches_parser = subparsers.add_parser("branches", help="List branches")
    branches_parser.add_argument("--status", choices=[s.value for s in BranchStatus], help="Filter by status")

    memories_parser = subparsers.add_parser("memories", help="List or search memories")
    memories_parser.add_argument("--query", "-q", help="Rank memories against this text")
    memories_parser.add_argument("--limit", "-n", type=int, default=10, help="Max results")

    buffer_parser = subparsers.add_parser("buffer", help="Show buffered turn events")
    buffer_parser.add_argument("--since", help="ISO timestamp (default: last 24h)")

    assemble_parser = subparsers.add_parser("assemble", help="Print assembled context for a branch")
    assemble_parser.add_argument("branch", help="Branch id or unique prefix")
    assemble_parser.add_argument("--message", "-m", help="Current message text")
    assemble_parser.add_argument("--switchboard", action="store_true", help="Request the switchboard tier")

    sweep_parser = subparsers.add_parser("sweep", help="Run maintenance sweep")
    sweep_parser.add_argument("--hours", type=float, help="Inactivity threshold override")

    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "status":
        cmd_status(args)
    elif args.command == "branches":
        cmd_branches(args)
    elif args.command == "memories":
        cmd_memories(args)
    elif args.command == "buffer":
        cmd_buffer(args)
    elif args.command == "assemble":
        cmd_assemble(args)
    elif args.command == "sweep":
        cmd_sweep(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: agent-context config validate")
            sys.exit(1)


if __name__ == "__main__":
    main()
