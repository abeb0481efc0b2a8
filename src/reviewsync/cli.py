"""reviewsync command-line interface.

Usage:
    reviewsync serve                       # Run sync and analysis schedulers
    reviewsync sync                        # One incremental sync run
    reviewsync sync --change 12345         # Fetch a single change
    reviewsync sync --backfill-days 90     # Re-fetch a window, cursors untouched
    reviewsync analyze [--limit N]         # Analyze one batch
    reviewsync check                       # Gerrit and Ollama preflight
    reviewsync updates [--days N]          # Recent changes missing locally
    reviewsync mental-model [--focus X]    # Reviewer mental model over analyses
    reviewsync log [--ref R] [--limit N]   # Gitiles commit log
    reviewsync skills [--list]             # Write SKILL.md documents per category

Exit codes: 0 success, 1 failure, 2 invalid configuration or usage.
"""

import argparse
import asyncio
import logging
import signal
import sys

from pydantic import ValidationError

from .__version__ import __version__
from .config import ReviewSyncConfig, load_config
from .connectors.gerrit.client import GerritClient, GerritClientError
from .connectors.gerrit.sync import SyncService
from .connectors.gitiles.client import GitilesClient, GitilesClientError
from .llm.analyzer import Analyzer
from .llm.client import LLMError, OllamaClient
from .logging_config import configure_logging
from .models import AnalysisCategory, ChangeStatus
from .pipeline import AnalysisPipeline
from .rate_limiter import RateLimiter
from .retry import RetryExhaustedError, RetryPolicy
from .scheduler import build_scheduler
from .skills import SkillGenerator, list_skills
from .storage import SQLiteChangeStore

logger = logging.getLogger("reviewsync.cli")

__all__ = ["build_parser", "main"]

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def _gerrit_client(config: ReviewSyncConfig, cancel_event: asyncio.Event | None = None) -> GerritClient:
    username, password = config.gerrit_auth or ("", "")
    return GerritClient(
        config.gerrit_base_url,
        username=username,
        password=password,
        rate_limiter=RateLimiter(
            burst=config.gerrit_rate_limit_burst,
            rate_per_second=config.gerrit_rate_limit_per_second,
            name="gerrit",
        ),
        timeout=config.gerrit_timeout,
        cancel_event=cancel_event,
    )


def _ollama_client(config: ReviewSyncConfig) -> OllamaClient:
    return OllamaClient(config.ollama_base_url, config.ollama_model, timeout=config.llm_timeout)


def _analyzer(config: ReviewSyncConfig, ollama: OllamaClient) -> Analyzer:
    return Analyzer(
        ollama,
        timeout=config.llm_timeout,
        retry_policy=RetryPolicy(max_attempts=config.llm_max_retries),
    )


# ==============================================================================
# COMMANDS
# ==============================================================================


async def cmd_serve(config: ReviewSyncConfig, args: argparse.Namespace) -> int:
    """Run both schedulers until SIGINT/SIGTERM, then drain."""
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    async with SQLiteChangeStore(config.db_path) as store, _gerrit_client(
        config, cancel_event=shutdown
    ) as gerrit, _ollama_client(config) as ollama:
        sync_service = SyncService(config, gerrit, store)
        pipeline = AnalysisPipeline(config, store, ollama)

        schedulers = [
            build_scheduler(
                config.sync_schedule,
                sync_service.run_once,
                enabled=config.scheduler_enabled,
                name="sync",
            ),
            build_scheduler(
                config.analysis_schedule,
                pipeline.run_once,
                enabled=config.scheduler_enabled,
                name="analysis",
            ),
        ]
        logger.info(
            "reviewsync %s serving project=%s (sync=%s, analysis=%s, enabled=%s)",
            __version__,
            config.gerrit_project,
            config.sync_schedule,
            config.analysis_schedule,
            config.scheduler_enabled,
        )
        for scheduler in schedulers:
            await scheduler.start()

        await shutdown.wait()
        logger.info("Shutdown signal received, stopping schedulers...")
        for scheduler in schedulers:
            await scheduler.stop()

    logger.info("reviewsync stopped")
    return EXIT_SUCCESS


async def cmd_sync(config: ReviewSyncConfig, args: argparse.Namespace) -> int:
    """One sync run, a single change with --change, or a --backfill-days window."""
    async with SQLiteChangeStore(config.db_path) as store, _gerrit_client(config) as gerrit:
        service = SyncService(config, gerrit, store)
        if args.change:
            change = await service.sync_change(args.change)
            print(f"Synced {change.key}: [{change.status.value}] {change.subject}")
            return EXIT_SUCCESS
        if args.backfill_days:
            print(f"Backfilling {config.gerrit_project}: last {args.backfill_days} days...")
            result = await service.backfill(args.backfill_days)
            print(f"  Fetched: {result.changes_fetched}, Inserted: {result.changes_inserted}, "
                  f"Updated: {result.changes_updated}, Errors: {result.errors}")
            return EXIT_FAILURE if result.errors else EXIT_SUCCESS

        print(f"Syncing {config.gerrit_project} from {config.gerrit_base_url}...")
        result = await service.run_once()

    print(f"  Statuses synced: {', '.join(result.statuses_synced) or '-'}")
    if result.statuses_failed:
        print(f"  Statuses failed: {', '.join(result.statuses_failed)}")
    print(f"  Fetched: {result.changes_fetched}, Inserted: {result.changes_inserted}, "
          f"Updated: {result.changes_updated}, Details: {result.details_synced}")
    print(f"  Errors: {result.errors}, Duration: {result.duration_seconds:.1f}s")
    return EXIT_FAILURE if result.errors else EXIT_SUCCESS


async def cmd_analyze(config: ReviewSyncConfig, args: argparse.Namespace) -> int:
    """Analyze one batch of pending changes."""
    async with SQLiteChangeStore(config.db_path) as store, _ollama_client(config) as ollama:
        pipeline = AnalysisPipeline(config, store, ollama)
        result = await pipeline.run_once(limit=args.limit)

    print(f"Selected: {result.selected}, Analyzed: {result.analyzed} "
          f"(fallback: {result.fallbacks}), Failed: {result.failed}")
    if result.aborted:
        print("Batch aborted: Ollama became unreachable")
    return EXIT_FAILURE if result.failed else EXIT_SUCCESS


async def cmd_check(config: ReviewSyncConfig, args: argparse.Namespace) -> int:
    """Verify Gerrit and Ollama are reachable."""
    ok = True
    async with _gerrit_client(config) as gerrit:
        status = await gerrit.test_connection()
    if status["success"]:
        print(f"Gerrit:  OK ({config.gerrit_base_url}, version {status['version']})")
    else:
        print(f"Gerrit:  FAILED ({status['error']})")
        ok = False

    async with _ollama_client(config) as ollama:
        try:
            await ollama.check_connection()
            print(f"Ollama:  OK ({config.ollama_base_url}, model {config.ollama_model})")
        except LLMError as e:
            print(f"Ollama:  FAILED ({e})")
            ok = False
    return EXIT_SUCCESS if ok else EXIT_FAILURE


async def cmd_updates(config: ReviewSyncConfig, args: argparse.Namespace) -> int:
    """Report recently updated changes that are not stored yet."""
    async with SQLiteChangeStore(config.db_path) as store, _gerrit_client(config) as gerrit:
        result = await SyncService(config, gerrit, store).check_for_updates(days=args.days)

    print(f"Checked {result.checked} changes updated in the last {args.days} days")
    if result.has_updates:
        print(f"Missing locally ({len(result.missing)}): "
              + ", ".join(str(n) for n in result.missing))
    else:
        print("Store is up to date")
    return EXIT_SUCCESS


async def cmd_mental_model(config: ReviewSyncConfig, args: argparse.Namespace) -> int:
    """Cross-change mental model over stored analyses of merged changes."""
    category = AnalysisCategory.normalize(args.category) if args.category else None
    async with SQLiteChangeStore(config.db_path) as store:
        pairs = await store.list_analyses(config.gerrit_project, category=category, limit=args.limit)

    merged = [(c, a) for c, a in pairs if c.status == ChangeStatus.MERGED]
    if not merged:
        print("No analyzed merged changes found; run 'reviewsync sync' and 'reviewsync analyze' first")
        return EXIT_FAILURE

    changes_data = "\n\n".join(
        f"#{c.change_number} {c.subject} [{a.category.value}]\n{a.summary}\n{a.discussion}".strip()
        for c, a in merged
    )
    async with _ollama_client(config) as ollama:
        await ollama.check_connection()
        model = await _analyzer(config, ollama).analyze_mental_model(
            changes_data, analysis_type=args.focus or ""
        )

    print(model)
    return EXIT_SUCCESS


async def cmd_skills(config: ReviewSyncConfig, args: argparse.Namespace) -> int:
    """Write per-category skill documents, or list existing ones with --list."""
    output_dir = args.output_dir or config.skills_output_dir
    if args.list:
        names = list_skills(output_dir)
        if not names:
            print(f"No skills found in {output_dir}")
            return EXIT_FAILURE
        for name in names:
            print(name)
        return EXIT_SUCCESS

    days = args.days or config.skills_window_days
    async with SQLiteChangeStore(config.db_path) as store, _ollama_client(config) as ollama:
        await ollama.check_connection()
        generator = SkillGenerator(
            store, _analyzer(config, ollama), config.gerrit_project, output_dir
        )
        result = await generator.generate(days=days)

    if not result.generated:
        print(f"No analyses in the last {days} days; run 'reviewsync sync' and 'reviewsync analyze' first")
        return EXIT_FAILURE
    print(f"Wrote {len(result.generated)} skills to {output_dir} "
          f"from {result.analyses} analyses (template fallback: {len(result.templated)})")
    for name in result.generated:
        print(f"  {name}")
    return EXIT_SUCCESS


async def cmd_log(config: ReviewSyncConfig, args: argparse.Namespace) -> int:
    """Print a page of Gitiles commit log."""
    limiter = RateLimiter(
        burst=config.gerrit_rate_limit_burst,
        rate_per_second=config.gerrit_rate_limit_per_second,
        name="gitiles",
    )
    async with GitilesClient(
        config.gitiles_base_url, rate_limiter=limiter, timeout=config.gerrit_timeout
    ) as gitiles:
        page = await gitiles.get_log(
            config.gerrit_project, ref=args.ref, limit=args.limit, start=args.start
        )

    for commit in page.commits:
        when = commit.committer.time.strftime("%Y-%m-%d") if commit.committer.time else "????-??-??"
        print(f"{commit.commit[:12]} {when} {commit.author.name}: {commit.subject}")
    if page.next:
        print(f"\nMore: --start {page.next}")
    return EXIT_SUCCESS


COMMANDS = {
    "serve": cmd_serve,
    "sync": cmd_sync,
    "analyze": cmd_analyze,
    "check": cmd_check,
    "updates": cmd_updates,
    "mental-model": cmd_mental_model,
    "log": cmd_log,
    "skills": cmd_skills,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reviewsync",
        description="Sync Gerrit changes and analyze them with a local Ollama model",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", help="Override REVIEWSYNC_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run sync and analysis on their schedules")

    sync = sub.add_parser("sync", help="Run one incremental sync")
    sync.add_argument("--change", type=int, help="Fetch a single change by number")
    sync.add_argument(
        "--backfill-days", type=int, help="Re-fetch this many days without moving cursors"
    )

    analyze = sub.add_parser("analyze", help="Analyze one batch of pending changes")
    analyze.add_argument("--limit", type=int, help="Override analysis_batch_size")

    sub.add_parser("check", help="Check Gerrit and Ollama connectivity")

    updates = sub.add_parser("updates", help="List recent changes missing from the store")
    updates.add_argument("--days", type=int, default=30, help="Lookback in days (default: 30)")

    mental = sub.add_parser("mental-model", help="Summarize reviewer mental model")
    mental.add_argument("--focus", help="Focus area, e.g. 'error handling'")
    mental.add_argument("--category", help="Only use analyses in this category")
    mental.add_argument("--limit", type=int, default=30, help="Analyses to include (default: 30)")

    log = sub.add_parser("log", help="Show Gitiles commit log")
    log.add_argument("--ref", default="refs/heads/master", help="Ref to list (default: master)")
    log.add_argument("--limit", type=int, default=20, help="Commits per page (default: 20)")
    log.add_argument("--start", help="Continue from this commit")

    skills = sub.add_parser("skills", help="Write skill documents from stored analyses")
    skills.add_argument("--list", action="store_true", help="List generated skills and exit")
    skills.add_argument("--output-dir", help="Override skills_output_dir")
    skills.add_argument("--days", type=int, help="Override skills_window_days")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for the reviewsync console script."""
    args = build_parser().parse_args(argv)

    try:
        config = load_config()
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        return EXIT_USAGE

    configure_logging(level=args.log_level or config.log_level, log_format=config.log_format)

    try:
        return asyncio.run(COMMANDS[args.command](config, args))
    except KeyboardInterrupt:
        return EXIT_FAILURE
    except (GerritClientError, GitilesClientError, LLMError, RetryExhaustedError) as e:
        logger.error("%s failed: %s", args.command, e)
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILURE
