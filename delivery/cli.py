"""
Command-line entry point.

    python -m delivery deliver --key 7-1-login-form --branch story/7-1-login-form --body-file pr.md --auto-merge
    python -m delivery resolve --key 7-1-login-form
    python -m delivery escalations --limit 10
    python -m delivery worktrees --sync

Configuration comes from --config (YAML) or DELIVERY_* environment variables.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

import httpx

from . import __version__
from .config import DeliveryConfig
from .delivery_model import DeliveryCancelledError, DeliveryError, DescriptionInputs
from .delivery_store import EscalationLog
from .dependency_trigger import trigger_dependent_stories
from .git_ops import GitOperations
from .pr_automator import PRCreationAutomator
from .status_ledger import StatusLedger
from .workspace_manager import WorktreeManager

logger = logging.getLogger("delivery")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="delivery", description="Story PR delivery pipeline")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, help="YAML config file (default: DELIVERY_* env vars)")
    parser.add_argument("--project-root", type=Path, help="Repository root")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    deliver = sub.add_parser("deliver", help="Push, open the PR and optionally merge it")
    deliver.add_argument("--key", required=True, help="Story key, e.g. 7-1-login-form")
    deliver.add_argument("--branch", help="Branch to deliver (default: story/<key>)")
    deliver.add_argument("--body-file", type=Path, help="Pre-rendered PR description")
    deliver.add_argument("--title", help="PR title override")
    deliver.add_argument("--story-type", choices=["feature", "bug-fix", "enhancement"])
    deliver.add_argument("--auto-merge", action="store_true", default=None, help="Wait for CI and merge")

    resolve = sub.add_parser("resolve", help="List stories unblocked by a completed story")
    resolve.add_argument("--key", required=True)

    escalations = sub.add_parser("escalations", help="Show recent escalations")
    escalations.add_argument("--key", help="Only this story")
    escalations.add_argument("--limit", type=int, default=20)

    worktrees = sub.add_parser("worktrees", help="List active story worktrees")
    worktrees.add_argument("--sync", action="store_true", help="Forget worktrees git no longer knows about")

    return parser


def load_config(args: argparse.Namespace) -> DeliveryConfig:
    overrides = {
        "project_root": args.project_root,
        "auto_merge": getattr(args, "auto_merge", None),
    }
    if args.config:
        return DeliveryConfig.from_yaml(args.config, **overrides)
    return DeliveryConfig.from_env(**overrides)


async def run_deliver(args: argparse.Namespace, config: DeliveryConfig) -> int:
    body = args.body_file.read_text(encoding="utf-8") if args.body_file else ""
    inputs = DescriptionInputs(body=body, title=args.title, story_type=args.story_type)
    branch = args.branch or f"story/{args.key}"

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel_event.set)
        except NotImplementedError:
            # not available on Windows event loops
            pass

    automator = PRCreationAutomator.from_config(config, cancel_event=cancel_event)
    try:
        handle = await automator.deliver(branch, args.key, inputs)
    except DeliveryCancelledError:
        logger.warning(f"[{args.key}] Delivery cancelled")
        return 130
    except DeliveryError as e:
        logger.error(f"[{args.key}] Delivery failed: {e}")
        return 1
    except (httpx.HTTPError, OSError) as e:
        logger.error(f"[{args.key}] Delivery failed: {type(e).__name__}: {e}")
        return 1

    print(json.dumps(handle.to_dict(), indent=2))
    if config.auto_merge and not handle.is_merged:
        # escalated: PR open, human needed
        return 2
    return 0


def run_resolve(args: argparse.Namespace, config: DeliveryConfig) -> int:
    result = trigger_dependent_stories(StatusLedger(config.ledger_path), args.key)
    print(json.dumps({
        "ready": result.ready_keys,
        "blocked": result.missing_prerequisites,
        "cycles": result.cycles,
    }, indent=2))
    return 0


def run_escalations(args: argparse.Namespace, config: DeliveryConfig) -> int:
    records = EscalationLog(config.escalation_log).recent(limit=args.limit, work_item_key=args.key)
    if not records:
        print("No escalations recorded.")
        return 0
    for record in records:
        print(
            f"{record['created_at']}  {record['work_item_key']}  {record['escalation_type']}  "
            f"{record['pr_url']}\n    {record['detail']}\n    -> {record['remedy']}"
        )
    return 0


async def run_worktrees(args: argparse.Namespace, config: DeliveryConfig) -> int:
    manager = WorktreeManager(
        GitOperations(config.project_root),
        worktree_root=config.worktree_root,
        state_file=config.worktree_state_file,
        base_branch=config.base_branch,
        remote=config.remote,
    )
    if args.sync:
        dropped = await manager.sync_with_git()
        if dropped:
            logger.info(f"Dropped {len(dropped)} stale worktree(s): {', '.join(dropped)}")

    worktrees = manager.list_active_worktrees()
    if not worktrees:
        print("No active worktrees.")
        return 0
    for worktree in worktrees:
        print(f"{worktree.work_item_key}  {worktree.branch}  {worktree.status.value}  {worktree.path}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    try:
        config = load_config(args)
    except (OSError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    if args.command == "deliver":
        return asyncio.run(run_deliver(args, config))
    if args.command == "resolve":
        try:
            return run_resolve(args, config)
        except DeliveryError as e:
            logger.error(f"[{args.key}] {e}")
            return 1
    if args.command == "worktrees":
        try:
            return asyncio.run(run_worktrees(args, config))
        except DeliveryError as e:
            logger.error(f"Worktree sync failed: {e}")
            return 1
    return run_escalations(args, config)


if __name__ == "__main__":
    sys.exit(main())
