#!/usr/bin/env python3
"""Intune Bulk Assignment CLI.

Assigns apps, device configuration profiles or settings-catalog policies
to groups (or to All Users / All Devices) in bulk through Microsoft Graph.

Architecture:
    - GraphClient is the shared HTTP layer (auth, retry, $batch)
    - GraphBatchTransport / GraphAssignmentSource adapt it to the engine
    - AssignmentCache supplies known assignments and the post-run refresh
    - BulkAssignmentUseCase runs validation, batching, submission, verification

Environment Variables Required:
    - AZURE_TENANT_ID: Directory (tenant) id
    - AZURE_CLIENT_ID: App registration id
    - AZURE_CLIENT_SECRET: App registration secret
    - GRAPH_BASE_URL: Graph root (optional, default https://graph.microsoft.com/beta)
    - INTUNE_*: Engine tunables, see src/intune/assignment/config.py

Example Usage:
    $ python main.py --app APP_ID --group GROUP_ID --intent required
    $ python main.py --app A1 --app A2 --group G1 --group G2 --intent available
    $ python main.py --profile PROFILE_ID --all-devices
    $ python main.py --app APP_ID --all-users --filter-id F --filter-mode exclude --json
"""
import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import replace
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from src.intune.api import (
    CancellationToken,
    GraphClient,
    IntuneError,
    PartialFailureError,
    TokenManager,
    TransportUnavailableError,
)
from src.intune.assignment.adapters import (
    AssignmentCache,
    GraphAssignmentSource,
    GraphBatchTransport,
)
from src.intune.assignment.config import BulkAssignmentConfig
from src.intune.assignment.domain import (
    ArtifactKind,
    AssignmentFilter,
    FilterMode,
    Intent,
    ProgressSnapshot,
    RunResult,
    TargetType,
    WorkItem,
)
from src.intune.assignment.use_cases import BulkAssignmentUseCase

logger = logging.getLogger("intune.cli")


def build_work_items(args: argparse.Namespace) -> list[WorkItem]:
    """Cross-product of the selected artifacts and targets."""
    artifacts: list[tuple[str, ArtifactKind]] = (
        [(a, ArtifactKind.MOBILE_APP) for a in args.app or []]
        + [(p, ArtifactKind.DEVICE_CONFIGURATION) for p in args.profile or []]
        + [(p, ArtifactKind.CONFIGURATION_POLICY) for p in args.policy or []]
    )

    targets: list[tuple[str, TargetType]] = [(g, TargetType.GROUP) for g in args.group or []]
    targets += [(g, TargetType.EXCLUSION_GROUP) for g in args.exclude_group or []]
    if args.all_users:
        targets.append(("allUsers", TargetType.ALL_LICENSED_USERS))
    if args.all_devices:
        targets.append(("allDevices", TargetType.ALL_DEVICES))

    assignment_filter = None
    if args.filter_id:
        assignment_filter = AssignmentFilter(args.filter_id, FilterMode(args.filter_mode))

    items = []
    for artifact_id, kind in artifacts:
        # Configuration profiles have no install intent
        intent = Intent(args.intent) if kind == ArtifactKind.MOBILE_APP else Intent.APPLY
        for target_id, target_type in targets:
            items.append(
                WorkItem(
                    artifact_id=artifact_id,
                    target_id=target_id,
                    intent=intent,
                    artifact_kind=kind,
                    target_type=target_type,
                    filter=assignment_filter,
                )
            )
    return items


def print_progress(snapshot: ProgressSnapshot) -> None:
    print(
        f"\r[{snapshot.percent_complete:5.1f}%] {snapshot.completed} done, "
        f"{snapshot.failed} failed - {snapshot.message:<50}",
        end="",
        flush=True,
    )


def print_report(result: RunResult) -> None:
    print("\n" + "=" * 60)
    print("ASSIGNMENT REPORT")
    print("=" * 60)
    for row in result.report_rows():
        print(
            f"{row['status']:<10} {row['artifact']} -> {row['target']} "
            f"({row['intent']}) {row['message']}"
        )
    print("-" * 60)
    stats = result.statistics()
    print(
        f"Total: {stats['total']}  Completed: {stats['completed']} "
        f"(skipped {stats['skipped']})  Failed: {stats['failed']}  "
        f"Cancelled: {stats['cancelled']}"
    )
    for warning in result.warnings:
        print(f"Warning: {warning}")
    if result.refresh_succeeded is False:
        print("Note: refreshing assignment data failed; cached state may be stale")


async def run_assignment(args: argparse.Namespace) -> int:
    """Run one bulk assignment; returns the process exit code."""
    items = build_work_items(args)
    if not items:
        print("[Main] Nothing to do: select at least one artifact and one target")
        return 2

    try:
        config = BulkAssignmentConfig.from_env()
        if args.batch_size:
            config = replace(config, batch_limit=args.batch_size)
        if args.concurrency:
            config = replace(config, max_concurrent_batches=args.concurrency)
        token_manager = TokenManager()
    except IntuneError as e:
        print(f"[Main] Configuration error: {e}")
        return 2

    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "Interrupted")
        handles_sigint = True
    except (NotImplementedError, RuntimeError):
        handles_sigint = False

    try:
        result, exit_code = await _execute(args, items, config, token_manager, token)
    finally:
        if handles_sigint:
            loop.remove_signal_handler(signal.SIGINT)

    if result is not None:
        if args.json:
            print(json.dumps(result.to_dict(), indent=2))
        else:
            print_report(result)
        if result.was_cancelled and exit_code == 0:
            exit_code = 130
    return exit_code


async def _execute(
    args: argparse.Namespace,
    items: list[WorkItem],
    config: BulkAssignmentConfig,
    token_manager: TokenManager,
    token: CancellationToken,
) -> tuple[Optional[RunResult], int]:
    result: Optional[RunResult] = None
    exit_code = 0

    async with GraphClient(token_manager) as client:
        cache = AssignmentCache(GraphAssignmentSource(client))
        use_case = BulkAssignmentUseCase(
            transport=GraphBatchTransport(client),
            refresh=cache.refresh,
            config=config,
        )
        if not args.json:
            use_case.progress.subscribe(print_progress)

        known = None
        if not args.no_dedup:
            known = await cache.load(
                list(dict.fromkeys((i.artifact_id, i.artifact_kind) for i in items))
            )

        try:
            result = await use_case.execute(items, known_assignments=known, cancel_token=token)
        except PartialFailureError as e:
            result = e.result
            exit_code = 1
        except TransportUnavailableError as e:
            print(f"\n[Main] {e.message}: {e.cause}")
            result = e.result
            exit_code = 3

    return result, exit_code


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bulk-assign Intune apps and configuration profiles to groups",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --app APP --group G1 --group G2 --intent required
  python main.py --profile PROFILE --all-devices
  python main.py --policy POLICY --group G1 --exclude-group G2
  python main.py --app APP --all-users --intent available --json
        """,
    )

    artifact_group = parser.add_argument_group("Artifacts")
    artifact_group.add_argument("--app", action="append", metavar="ID", help="Mobile app id (repeatable)")
    artifact_group.add_argument(
        "--profile", action="append", metavar="ID", help="Device configuration profile id (repeatable)"
    )
    artifact_group.add_argument(
        "--policy", action="append", metavar="ID", help="Settings catalog policy id (repeatable)"
    )

    target_group = parser.add_argument_group("Targets")
    target_group.add_argument("--group", action="append", metavar="ID", help="Group id to include (repeatable)")
    target_group.add_argument(
        "--exclude-group", action="append", metavar="ID", help="Group id to exclude (repeatable)"
    )
    target_group.add_argument("--all-users", action="store_true", help="Assign to all licensed users")
    target_group.add_argument("--all-devices", action="store_true", help="Assign to all devices")

    options = parser.add_argument_group("Assignment Options")
    options.add_argument(
        "--intent",
        choices=[i.value for i in Intent if i != Intent.APPLY],
        default=Intent.REQUIRED.value,
        help="App assignment intent (default: required)",
    )
    options.add_argument("--filter-id", metavar="ID", help="Assignment filter id")
    options.add_argument(
        "--filter-mode",
        choices=[m.value for m in FilterMode],
        default=FilterMode.INCLUDE.value,
        help="Assignment filter mode (default: include)",
    )
    options.add_argument(
        "--no-dedup",
        action="store_true",
        help="Do not read existing assignments first; rely on 409 handling",
    )

    tuning = parser.add_argument_group("Tuning")
    tuning.add_argument("--batch-size", type=int, metavar="N", help="Sub-requests per $batch (1-20)")
    tuning.add_argument("--concurrency", type=int, metavar="N", help="Batches in flight at once")

    output_group = parser.add_argument_group("Output Options")
    output_group.add_argument("--json", action="store_true", help="Print the result as JSON")
    output_group.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: Optional[list[str]] = None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )

    sys.exit(asyncio.run(run_assignment(args)))


if __name__ == "__main__":
    main()
