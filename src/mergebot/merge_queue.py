"""Label-driven queue rules: who is eligible, what state they are in, who goes next."""

from __future__ import annotations

from collections.abc import Iterable

from mergebot.config import QueueConfig
from mergebot.models import MergeState, PullRequestSnapshot


def is_eligible(pr: PullRequestSnapshot, config: QueueConfig) -> bool:
    if not pr.has_label(config.ready_label):
        return False
    if pr.has_label(config.error_label):
        return False
    if config.blocked_label is not None and pr.has_label(config.blocked_label):
        return False
    return True


def classify(pr: PullRequestSnapshot) -> MergeState:
    """Classify a PR; earlier checks win (a closed draft is ``not_open``)."""
    if pr.state != "open":
        return "not_open"
    if pr.draft:
        return "draft"
    if pr.mergeable is False:
        return "conflicted"
    if pr.mergeable is None:
        # GitHub computes mergeability in the background; wait for the next event.
        return "unknown"
    if pr.mergeable_state == "behind":
        return "behind"
    return "ready_to_merge"


def queue_order(
    open_prs: Iterable[PullRequestSnapshot], config: QueueConfig
) -> tuple[PullRequestSnapshot, ...]:
    eligible = [pr for pr in open_prs if is_eligible(pr, config)]
    return tuple(sorted(eligible, key=lambda pr: (pr.created_at, pr.number)))


def select_next(
    open_prs: Iterable[PullRequestSnapshot], config: QueueConfig
) -> PullRequestSnapshot | None:
    ordered = queue_order(open_prs, config)
    if not ordered:
        return None
    return ordered[0]
