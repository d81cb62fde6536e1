"""
Command-line interface for SEO Autopilot.

Commands:
    batch        Generate (and optionally publish) every item in a file
    resume       Re-run only items with recoverable checkpoints
    schedule     Run the autonomous scheduler as a daemon (Ctrl+C to stop)
    rank         Show how the scheduler would rank the items right now
    checkpoints  list | show | clear
    breakers     status | reset

Usage:
    seo-autopilot batch --items data/items.json --publish --limit 5
    seo-autopilot schedule --items data/items.json --config scheduler.json
    seo-autopilot checkpoints show --item-id my-post
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from seo_autopilot import __version__
from seo_autopilot.batch_runner import BatchRunner, ItemStatus
from seo_autopilot.cache import CacheRegistry
from seo_autopilot.checkpoint_store import CheckpointStore
from seo_autopilot.circuit_breaker import BreakerRegistry
from seo_autopilot.config import Settings, load_settings
from seo_autopilot.content_generator import AnthropicGenerator
from seo_autopilot.pipeline import GenerationPipeline
from seo_autopilot.research_client import SerperClient
from seo_autopilot.scheduler import (
    AutonomousScheduler,
    SchedulerConfig,
    SchedulerContext,
    load_scheduler_config,
)
from seo_autopilot.wordpress_client import WordPressPublisher
from seo_autopilot.work_items import WorkItem, WorkItemStore

logger = logging.getLogger("cli")

LOGGER_NAMES = (
    "cache", "circuit_breaker", "resilience", "checkpoint_store", "pipeline",
    "scheduler", "batch_runner", "wordpress_client", "research_client",
    "content_generator", "work_items", "cli",
)


# ===================================================================
# WIRING
# ===================================================================


def _checkpoint_store(settings: Settings) -> CheckpointStore:
    return CheckpointStore(settings.data_dir / "checkpoints" / "checkpoints.json")


def _breaker_registry(settings: Settings) -> BreakerRegistry:
    registry = BreakerRegistry(state_file=settings.data_dir / "circuit_breaker" / "breakers.json")
    registry.load_state()
    return registry


def build_pipeline(settings: Settings) -> GenerationPipeline:
    """Construct a pipeline with every collaborator the settings allow."""
    research = SerperClient(settings.serper_api_key) if settings.has_research else None
    publisher = None
    if settings.has_publisher:
        publisher = WordPressPublisher(
            settings.wp_url,
            settings.wp_username,
            settings.wp_app_password,
            status=settings.wp_publish_status,
        )
    return GenerationPipeline(
        generator=AnthropicGenerator(api_key=settings.anthropic_api_key, model=settings.model),
        research=research,
        publisher=publisher,
        store=_checkpoint_store(settings),
        breakers=_breaker_registry(settings),
        caches=CacheRegistry(),
    )


async def _close_clients(pipeline: GenerationPipeline) -> None:
    for client in (pipeline.research, pipeline.publisher):
        if client is not None and hasattr(client, "close"):
            await client.close()


def _load_items(path: str, limit: Optional[int] = None) -> List[WorkItem]:
    items = WorkItemStore(Path(path)).load()
    return items[:limit] if limit else items


def _format_table(headers: List[str], rows: List[List[str]], max_col_width: int = 40) -> str:
    """Format a simple ASCII table for CLI output."""
    if not rows:
        return "(no results)"
    truncated = [
        [val[: max_col_width - 3] + "..." if len(val) > max_col_width else val for val in row]
        for row in rows
    ]
    widths = [len(h) for h in headers]
    for row in truncated:
        for i, val in enumerate(row):
            widths[i] = max(widths[i], len(val))
    fmt = "  ".join(f"{{:<{w}}}" for w in widths)
    lines = [fmt.format(*headers), "  ".join("-" * w for w in widths)]
    lines.extend(fmt.format(*row) for row in truncated)
    return "\n".join(lines)


def _print_progress(status: ItemStatus) -> None:
    suffix = f" ({status.error})" if status.error else ""
    print(f"  [{status.status.value:>9}] {status.title}{suffix}")


# ===================================================================
# COMMANDS
# ===================================================================


def _run_batch(args: argparse.Namespace, resume: bool) -> int:
    settings = load_settings()
    if not settings.has_generator:
        print("ANTHROPIC_API_KEY is not set.", file=sys.stderr)
        return 1
    if args.publish and not settings.has_publisher:
        print("--publish requires WP_URL and WP_USERNAME.", file=sys.stderr)
        return 1

    items = _load_items(args.items, getattr(args, "limit", None))
    pipeline = build_pipeline(settings)
    runner = BatchRunner(pipeline, publish=args.publish)

    async def _run():
        try:
            if resume:
                return await runner.resume_recoverable(items, on_progress=_print_progress)
            return await runner.run(items, on_progress=_print_progress)
        finally:
            await _close_clients(pipeline)

    report = asyncio.run(_run())
    summary = report.summary()
    print(
        f"\n  {summary['succeeded']}/{summary['total']} succeeded, "
        f"{summary['failed']} failed, {summary['published']} published\n"
    )
    return 0 if summary["failed"] == 0 else 2


def _cmd_batch(args: argparse.Namespace) -> int:
    return _run_batch(args, resume=False)


def _cmd_resume(args: argparse.Namespace) -> int:
    return _run_batch(args, resume=True)


def _scheduler_config(args: argparse.Namespace) -> SchedulerConfig:
    if getattr(args, "config", None):
        return load_scheduler_config(Path(args.config))
    return SchedulerConfig()


def _cmd_rank(args: argparse.Namespace) -> int:
    settings = load_settings()
    items = _load_items(args.items)
    scheduler = AutonomousScheduler()
    scheduler.update_context(
        SchedulerContext(pipeline=build_pipeline(settings), items=items, config=_scheduler_config(args))
    )
    ranked = scheduler.rank_candidates()[: args.limit]
    rows = []
    for rank, page in enumerate(ranked, 1):
        f = page.factors
        rows.append([
            str(rank),
            f"{page.score:.1f}",
            f"{f['priority']:.0f}/{f['recency']:.0f}/{f['importance']:.0f}/{f['urgency']:.0f}",
            page.item.title,
        ])
    print(f"\n  Candidates  --  {len(ranked)} of {len(items)} item(s) eligible\n")
    print(_format_table(["#", "Score", "P/R/I/U", "Title"], rows, max_col_width=60))
    print()
    return 0


def _cmd_schedule(args: argparse.Namespace) -> int:
    """Run the scheduler daemon until SIGINT/SIGTERM."""
    settings = load_settings()
    item_store = WorkItemStore(Path(args.items))
    items = item_store.load()
    pipeline = build_pipeline(settings)
    context = SchedulerContext(
        pipeline=pipeline, items=items, config=_scheduler_config(args), item_store=item_store,
    )
    scheduler = AutonomousScheduler(
        history_file=settings.data_dir / "scheduler" / "history.json",
    )

    print(f"Starting scheduler with {len(items)} items...")
    print("Press Ctrl+C to stop.\n")

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    shutdown_event = asyncio.Event()

    async def _run_daemon() -> bool:
        if not await scheduler.start(context):
            return False

        def _signal_handler() -> None:
            logger.info("Received shutdown signal.")
            shutdown_event.set()

        try:
            loop.add_signal_handler(signal.SIGINT, _signal_handler)
            loop.add_signal_handler(signal.SIGTERM, _signal_handler)
        except NotImplementedError:
            pass

        try:
            while scheduler.is_running and not shutdown_event.is_set():
                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=5)
                except asyncio.TimeoutError:
                    continue
        except asyncio.CancelledError:
            pass
        finally:
            summary = await scheduler.stop()
            cycle = scheduler.current_cycle
            if cycle is not None and not cycle.done():
                await asyncio.wait([cycle])
            await _close_clients(pipeline)
            print(json.dumps(summary, indent=2))
        return True

    try:
        started = loop.run_until_complete(_run_daemon())
    except KeyboardInterrupt:
        print("\nShutting down...")
        loop.run_until_complete(scheduler.stop())
        started = True
    finally:
        loop.close()
    if not started:
        print("Scheduler could not start; check credentials.", file=sys.stderr)
        return 1
    print("Scheduler stopped.")
    return 0


def _cmd_checkpoints(args: argparse.Namespace) -> int:
    store = _checkpoint_store(load_settings())

    if args.action == "list":
        checkpoints = store.list_checkpoints()
        rows = [
            [cp.item_id, f"{cp.progress}%", cp.status_text(), cp.last_updated[:19]]
            for cp in checkpoints
        ]
        print(f"\n  Checkpoints  --  {len(checkpoints)}\n")
        print(_format_table(["Item", "Progress", "Status", "Updated"], rows))
        print()
        return 0

    if args.action == "show":
        if not args.item_id:
            print("--item-id is required", file=sys.stderr)
            return 1
        cp = store.load(args.item_id)
        if cp is None:
            print(f"No checkpoint for {args.item_id}", file=sys.stderr)
            return 1
        print(json.dumps(cp.to_dict(), indent=2, default=str))
        return 0

    # clear
    if args.all:
        print(f"Cleared {store.clear_all()} checkpoint(s).")
        return 0
    if not args.item_id:
        print("clear needs --item-id or --all", file=sys.stderr)
        return 1
    if store.clear(args.item_id):
        print(f"Cleared checkpoint for {args.item_id}.")
        return 0
    print(f"No checkpoint for {args.item_id}", file=sys.stderr)
    return 1


def _cmd_breakers(args: argparse.Namespace) -> int:
    registry = _breaker_registry(load_settings())

    if args.action == "reset":
        if args.name:
            if not registry.reset_breaker(args.name):
                print(f"No breaker named {args.name}", file=sys.stderr)
                return 1
        else:
            registry.reset_all()
        registry.save_state()
        print("Reset.")
        return 0

    stats = registry.get_stats()
    rows = [
        [
            name,
            s["state"],
            str(s["failure_count"]),
            str(s["total_calls"]),
            str(s["total_rejected"]),
        ]
        for name, s in stats["breakers"].items()
    ]
    summary = stats["summary"]
    print(
        f"\n  Circuit breakers  --  {summary['total_breakers']} tracked, "
        f"{summary['breakers_open']} open\n"
    )
    print(_format_table(["Service", "State", "Failures", "Calls", "Rejected"], rows))
    print()
    return 0


# ===================================================================
# ENTRY POINT
# ===================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="seo-autopilot",
        description="SEO Autopilot content generation and scheduling",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # batch
    sp_batch = subparsers.add_parser("batch", help="Generate every item in a file")
    sp_batch.add_argument("--items", required=True, help="Work items JSON file")
    sp_batch.add_argument("--publish", action="store_true", help="Publish each document")
    sp_batch.add_argument("--limit", type=int, default=None, help="Process at most N items")
    sp_batch.set_defaults(func=_cmd_batch)

    # resume
    sp_resume = subparsers.add_parser("resume", help="Re-run items with recoverable checkpoints")
    sp_resume.add_argument("--items", required=True, help="Work items JSON file")
    sp_resume.add_argument("--publish", action="store_true", help="Publish each document")
    sp_resume.set_defaults(func=_cmd_resume)

    # schedule
    sp_schedule = subparsers.add_parser("schedule", help="Run the autonomous scheduler")
    sp_schedule.add_argument("--items", required=True, help="Work items JSON file")
    sp_schedule.add_argument("--config", default=None, help="Scheduler config JSON file")
    sp_schedule.set_defaults(func=_cmd_schedule)

    # rank
    sp_rank = subparsers.add_parser("rank", help="Show candidate ranking")
    sp_rank.add_argument("--items", required=True, help="Work items JSON file")
    sp_rank.add_argument("--config", default=None, help="Scheduler config JSON file")
    sp_rank.add_argument("--limit", type=int, default=20, help="Rows to show (default: 20)")
    sp_rank.set_defaults(func=_cmd_rank)

    # checkpoints
    sp_cp = subparsers.add_parser("checkpoints", help="Inspect or clear checkpoints")
    sp_cp.add_argument("action", choices=["list", "show", "clear"])
    sp_cp.add_argument("--item-id", default=None, help="Work item id")
    sp_cp.add_argument("--all", action="store_true", help="With clear: remove every checkpoint")
    sp_cp.set_defaults(func=_cmd_checkpoints)

    # breakers
    sp_br = subparsers.add_parser("breakers", help="Inspect or reset circuit breakers")
    sp_br.add_argument("action", choices=["status", "reset"])
    sp_br.add_argument("--name", default=None, help="Service name (reset only)")
    sp_br.set_defaults(func=_cmd_breakers)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        for name in LOGGER_NAMES:
            logging.getLogger(name).setLevel(logging.DEBUG)

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
