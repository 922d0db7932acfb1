from __future__ import annotations

from dataclasses import dataclass
import json
from pathlib import Path


_PULL_REQUEST_EVENTS = frozenset({"pull_request", "pull_request_target"})
_PULL_REQUEST_ACTIONS = frozenset(
    {"labeled", "unlabeled", "opened", "reopened", "synchronize", "ready_for_review"}
)
_BASE_BRANCH_EVENTS = frozenset({"workflow_dispatch", "schedule"})


@dataclass(frozen=True)
class PullRequestTrigger:
    pr_number: int
    source: str


@dataclass(frozen=True)
class BaseBranchTrigger:
    source: str


@dataclass(frozen=True)
class IgnoredTrigger:
    source: str
    reason: str


TriggerEvent = PullRequestTrigger | BaseBranchTrigger | IgnoredTrigger


def load_event_payload(path: Path | None) -> dict[str, object]:
    if path is None or not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as fh:
        payload = json.load(fh)
    if not isinstance(payload, dict):
        raise RuntimeError(f"Event payload at {path} is not a JSON object")
    return payload


def parse_event(event_name: str, payload: dict[str, object], *, base_branch: str) -> TriggerEvent:
    """Decide which flow an Actions event should drive."""
    action = payload.get("action")
    source = f"{event_name}.{action}" if isinstance(action, str) else event_name

    if event_name in _PULL_REQUEST_EVENTS:
        pull_request = _as_dict(payload.get("pull_request"))
        number = _pr_number(pull_request)
        if pull_request is None or number is None:
            return IgnoredTrigger(source=source, reason="payload has no pull request number")
        if action == "closed":
            base = _as_dict(pull_request.get("base"))
            merged_into_base = (
                pull_request.get("merged") is True
                and base is not None
                and base.get("ref") == base_branch
            )
            if merged_into_base:
                return BaseBranchTrigger(source=source)
            return IgnoredTrigger(source=source, reason="pull request closed without merging")
        if action in _PULL_REQUEST_ACTIONS:
            return PullRequestTrigger(pr_number=number, source=source)
        return IgnoredTrigger(source=source, reason=f"unhandled pull request action {action!r}")

    if event_name == "pull_request_review":
        pull_request = _as_dict(payload.get("pull_request"))
        number = _pr_number(pull_request)
        if number is None:
            return IgnoredTrigger(source=source, reason="payload has no pull request number")
        return PullRequestTrigger(pr_number=number, source=source)

    if event_name == "check_suite":
        numbers = _linked_pr_numbers(payload)
        if len(numbers) == 1:
            return PullRequestTrigger(pr_number=numbers[0], source=source)
        return IgnoredTrigger(
            source=source, reason=f"event is linked to {len(numbers)} pull requests"
        )

    if event_name == "push":
        ref = payload.get("ref")
        if ref == f"refs/heads/{base_branch}":
            return BaseBranchTrigger(source=source)
        return IgnoredTrigger(source=source, reason=f"push to {ref!r} is not the base branch")

    if event_name in _BASE_BRANCH_EVENTS:
        return BaseBranchTrigger(source=source)

    return IgnoredTrigger(source=source, reason=f"unsupported event {event_name!r}")


def _linked_pr_numbers(payload: dict[str, object]) -> list[int]:
    check_suite = _as_dict(payload.get("check_suite"))
    if check_suite is None:
        return []
    raw = check_suite.get("pull_requests")
    if not isinstance(raw, list):
        return []
    numbers: list[int] = []
    for item in raw:
        number = _pr_number(_as_dict(item))
        if number is not None and number not in numbers:
            numbers.append(number)
    return numbers


def _pr_number(pull_request: dict[str, object] | None) -> int | None:
    if pull_request is None:
        return None
    number = pull_request.get("number")
    if isinstance(number, bool) or not isinstance(number, int):
        return None
    return number


def _as_dict(value: object) -> dict[str, object] | None:
    if isinstance(value, dict):
        return value
    return None
