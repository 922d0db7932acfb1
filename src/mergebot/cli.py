from __future__ import annotations

import argparse
from collections.abc import Mapping
import json
import logging
import os
from pathlib import Path

from mergebot.config import AppConfig, ConfigError, load_config, load_config_from_env
from mergebot.coordinator import MergeCoordinator
from mergebot.events import (
    BaseBranchTrigger,
    PullRequestTrigger,
    TriggerEvent,
    load_event_payload,
    parse_event,
)
from mergebot.github_gateway import GitHubGateway
from mergebot.merge_queue import classify, is_eligible, queue_order
from mergebot.observability import configure_logging, log_event


LOGGER = logging.getLogger("mergebot.cli")
_STATUS_PREFIX = "[MB]"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mergebot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Evaluate one trigger and advance at most one pull request"
    )
    _add_common_arguments(run_parser)
    run_parser.add_argument(
        "--event-name",
        type=str,
        help="Event name (defaults to $GITHUB_EVENT_NAME)",
    )
    run_parser.add_argument(
        "--event-path",
        type=Path,
        help="Path to the event payload JSON (defaults to $GITHUB_EVENT_PATH)",
    )
    target = run_parser.add_mutually_exclusive_group()
    target.add_argument("--pr", type=int, help="Evaluate this pull request directly")
    target.add_argument(
        "--base",
        action="store_true",
        help="Run the base-branch flow: update the first pull request in line",
    )

    queue_parser = subparsers.add_parser("queue", help="Print the current queue order")
    _add_common_arguments(queue_parser)
    queue_parser.add_argument("--json", action="store_true", help="Print the queue as JSON")

    classify_parser = subparsers.add_parser(
        "classify", help="Print eligibility and merge state for one pull request"
    )
    _add_common_arguments(classify_parser)
    classify_parser.add_argument("--pr", type=int, required=True)

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="TOML config file (defaults to GitHub Actions INPUT_* variables)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log every event to stderr, not just decisions and warnings",
    )


def main() -> None:
    args = build_parser().parse_args()
    configure_logging("high" if getattr(args, "verbose", False) else "low")
    environ = dict(os.environ)

    try:
        config = _load_app_config(args.config, environ)
        if args.command == "run":
            _cmd_run(config, args, environ)
            return
        if args.command == "queue":
            _cmd_queue(config, as_json=bool(args.json))
            return
        if args.command == "classify":
            _cmd_classify(config, pr_number=int(args.pr))
            return
    except (ConfigError, RuntimeError) as exc:
        log_event(
            LOGGER,
            "invocation_failed",
            command=args.command,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        # Workflow command understood by the Actions runner.
        print(f"::error::{_single_line(str(exc))}")
        raise SystemExit(1) from exc

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_run(config: AppConfig, args: argparse.Namespace, environ: Mapping[str, str]) -> None:
    trigger = _resolve_trigger(config, args, environ)
    coordinator = MergeCoordinator(config.queue, github=_build_gateway(config))
    decision = coordinator.handle_event(trigger)
    print(f"{_STATUS_PREFIX} {decision.status_line}")


def _cmd_queue(config: AppConfig, *, as_json: bool) -> None:
    github = _build_gateway(config)
    ordered = queue_order(github.list_open_pull_requests(config.queue.base_branch), config.queue)
    if as_json:
        payload = [
            {
                "position": index,
                "pr_number": pr.number,
                "title": pr.title,
                "created_at": pr.created_at.isoformat(),
                "head_ref": pr.head_ref,
                "html_url": pr.html_url,
            }
            for index, pr in enumerate(ordered, start=1)
        ]
        print(json.dumps(payload, indent=2))
        return

    if not ordered:
        print(f"{_STATUS_PREFIX} Queue for {config.queue.base_branch} is empty.")
        return
    for index, pr in enumerate(ordered, start=1):
        print(f"{index}. #{pr.number} {pr.title} (created {pr.created_at.isoformat()})")


def _cmd_classify(config: AppConfig, *, pr_number: int) -> None:
    pr = _build_gateway(config).get_pull_request(pr_number)
    print(f"pr_number={pr.number}")
    print(f"eligible={'true' if is_eligible(pr, config.queue) else 'false'}")
    print(f"state={classify(pr)}")
    print(f"labels={','.join(pr.labels) or '<none>'}")


def _resolve_trigger(
    config: AppConfig, args: argparse.Namespace, environ: Mapping[str, str]
) -> TriggerEvent:
    if args.pr is not None:
        return PullRequestTrigger(pr_number=int(args.pr), source="cli")
    if args.base:
        return BaseBranchTrigger(source="cli")

    event_name = args.event_name or environ.get("GITHUB_EVENT_NAME", "").strip()
    if not event_name:
        raise ConfigError("--event-name, --pr, or --base is required outside GitHub Actions")
    raw_path = args.event_path or environ.get("GITHUB_EVENT_PATH")
    payload = load_event_payload(Path(raw_path) if raw_path else None)
    return parse_event(event_name, payload, base_branch=config.queue.base_branch)


def _load_app_config(path: Path | None, environ: Mapping[str, str]) -> AppConfig:
    if path is not None:
        return load_config(path, environ)
    return load_config_from_env(environ)


def _build_gateway(config: AppConfig) -> GitHubGateway:
    return GitHubGateway(config.queue.owner, config.queue.name, token=config.token)


def _single_line(text: str) -> str:
    return " ".join(text.split()) or "<empty>"
