from __future__ import annotations

from collections.abc import Callable
import logging
import time

from mergebot.config import QueueConfig
from mergebot.events import BaseBranchTrigger, IgnoredTrigger, PullRequestTrigger, TriggerEvent
from mergebot.github_gateway import GitHubApiError, GitHubGateway
from mergebot.merge_queue import classify, is_eligible, select_next
from mergebot.models import Decision, DecisionAction, PullRequestSnapshot
from mergebot.observability import log_event


LOGGER = logging.getLogger("mergebot.coordinator")
# 405: not mergeable right now (protection rules, already merged); 409: head moved under us.
_STALE_MERGE_STATUSES = frozenset({405, 409})


class MergeCoordinator:
    """Advance at most one pull request per invocation.

    All state lives on GitHub; every call re-reads it and nothing is cached
    between calls.
    """

    def __init__(self, config: QueueConfig, *, github: GitHubGateway) -> None:
        self._config = config
        self._github = github

    def handle_event(self, trigger: TriggerEvent) -> Decision:
        log_event(LOGGER, "trigger_received", trigger=type(trigger).__name__, source=trigger.source)
        if isinstance(trigger, IgnoredTrigger):
            return self._decide(None, "none", "ignored_event", f"Nothing to do: {trigger.reason}")

        self._wait_grace_delay()
        if isinstance(trigger, PullRequestTrigger):
            return self.process_pull_request(trigger.pr_number)
        if isinstance(trigger, BaseBranchTrigger):
            return self.process_base_branch()
        raise RuntimeError(f"Unknown trigger: {trigger!r}")

    def process_base_branch(self) -> Decision:
        open_prs = self._github.list_open_pull_requests(self._config.base_branch)
        candidate = select_next(open_prs, self._config)
        if candidate is None:
            log_event(LOGGER, "queue_empty", base_branch=self._config.base_branch)
            return self._decide(
                None,
                "none",
                "queue_empty",
                f'No open pull request labeled "{self._config.ready_label}" is waiting',
            )
        return self._attempt_update(candidate)

    def process_pull_request(self, pr_number: int) -> Decision:
        pr = self._github.get_pull_request(pr_number)
        if not is_eligible(pr, self._config):
            return self._decide(
                pr.number,
                "none",
                "not_labeled",
                f'PR #{pr.number} is not labeled "{self._config.ready_label}" '
                "or is marked blocked/errored",
            )
        if pr.base_ref != self._config.base_branch:
            return self._decide(
                pr.number,
                "none",
                "other_base",
                f"PR #{pr.number} targets {pr.base_ref}, not {self._config.base_branch}",
            )

        state = classify(pr)
        if state == "not_open":
            return self._decide(pr.number, "none", "not_open", f"PR #{pr.number} is not open")
        if state == "draft":
            return self._decide(pr.number, "none", "draft", f"PR #{pr.number} is a draft")
        if state == "conflicted":
            return self._decide(
                pr.number, "none", "not_mergeable", f"PR #{pr.number} is not mergeable"
            )
        if state == "unknown":
            return self._decide(
                pr.number,
                "none",
                "mergeability_unknown",
                f"PR #{pr.number} mergeability is still being computed, waiting for the next event",
            )
        if state == "behind":
            open_prs = self._github.list_open_pull_requests(self._config.base_branch)
            first = select_next(open_prs, self._config)
            if first is None or first.number != pr.number:
                ahead = f"PR #{first.number}" if first is not None else "another pull request"
                return self._decide(
                    pr.number,
                    "none",
                    "behind_not_first",
                    f"PR #{pr.number} is outdated but {ahead} is first in line, waiting",
                )
            return self._attempt_update(pr)
        return self._merge(pr)

    def _attempt_update(self, pr: PullRequestSnapshot) -> Decision:
        log_event(LOGGER, "pull_request_update_started", pr_number=pr.number)
        try:
            self._github.update_branch(pr.number)
        except GitHubApiError as exc:
            if exc.status_code == 422 and "no new commits" in exc.message.lower():
                return self._decide(
                    pr.number,
                    "none",
                    "already_up_to_date",
                    f"PR #{pr.number} is already up to date with {self._config.base_branch}",
                )
            if not self._still_open(pr):
                return self._decide(
                    pr.number,
                    "none",
                    "not_open",
                    f"PR #{pr.number} is no longer open, nothing to update",
                    detail=exc.message,
                )
            self._recover_from_failed_update(pr, exc)
            return self._decide(
                pr.number,
                "recovered",
                "update_failed",
                f'PR #{pr.number} could not be updated, labeled "{self._config.error_label}"',
                detail=exc.message,
            )
        log_event(LOGGER, "pull_request_updated", pr_number=pr.number)
        return self._decide(
            pr.number,
            "updated",
            "behind_updating",
            f"PR #{pr.number} is outdated and first in line, updating it with "
            f"{self._config.base_branch}",
        )

    def _still_open(self, pr: PullRequestSnapshot) -> bool:
        """Re-read the PR after a failed update; a queue snapshot can predate its merge."""
        try:
            fresh = self._github.get_pull_request(pr.number)
        except GitHubApiError as exc:
            log_event(
                LOGGER,
                "github_pull_request_reread_failed",
                pr_number=pr.number,
                status_code=exc.status_code,
                error=exc.message,
            )
            return True
        return fresh.state == "open"

    def _recover_from_failed_update(self, pr: PullRequestSnapshot, error: GitHubApiError) -> None:
        """Park the PR so the queue can move on; a human re-applies the ready label."""
        log_event(
            LOGGER,
            "update_recovery_started",
            pr_number=pr.number,
            status_code=error.status_code,
            error=error.message,
        )
        config = self._config
        self._best_effort(
            "github_label_remove_failed",
            pr.number,
            lambda: self._github.remove_label(pr.number, config.ready_label),
        )
        self._best_effort(
            "github_label_add_failed",
            pr.number,
            lambda: self._github.add_label(pr.number, config.error_label),
        )
        if config.comment_on_failure:
            self._best_effort(
                "github_issue_comment_failed",
                pr.number,
                lambda: self._github.post_issue_comment(
                    pr.number, _update_failure_comment(config, error)
                ),
            )

    def _merge(self, pr: PullRequestSnapshot) -> Decision:
        method = self._config.merge_method
        try:
            self._github.merge_pull_request(pr.number, method)
        except GitHubApiError as exc:
            if exc.status_code not in _STALE_MERGE_STATUSES:
                raise
            return self._decide(
                pr.number,
                "none",
                "merge_rejected",
                f"PR #{pr.number} was not merged by GitHub, waiting for the next event",
                detail=exc.message,
            )
        log_event(LOGGER, "pull_request_merged", pr_number=pr.number, merge_method=method)

        if self._config.delete_branch_after_merge and self._owns_head_branch(pr):
            self._best_effort(
                "github_branch_delete_failed",
                pr.number,
                lambda: self._github.delete_branch(pr.head_ref),
            )
        return self._decide(
            pr.number, "merged", "merging", f"PR #{pr.number} is ready, merging with {method}"
        )

    def _owns_head_branch(self, pr: PullRequestSnapshot) -> bool:
        if not pr.head_ref:
            return False
        return pr.head_repo_full_name in {None, self._config.full_name}

    def _wait_grace_delay(self) -> None:
        delay_ms = self._config.grace_delay_ms
        if delay_ms <= 0:
            return
        log_event(LOGGER, "grace_delay_started", delay_ms=delay_ms)
        time.sleep(delay_ms / 1000)

    def _best_effort(self, failure_event: str, pr_number: int, action: Callable[[], None]) -> None:
        try:
            action()
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                failure_event,
                pr_number=pr_number,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def _decide(
        self,
        pr_number: int | None,
        action: DecisionAction,
        reason: str,
        status_line: str,
        *,
        detail: str | None = None,
    ) -> Decision:
        log_event(
            LOGGER,
            "decision_made",
            pr_number=pr_number,
            action=action,
            reason=reason,
            detail=detail,
        )
        return Decision(
            pr_number=pr_number,
            action=action,
            reason=reason,
            status_line=status_line,
            detail=detail,
        )


def _update_failure_comment(config: QueueConfig, error: GitHubApiError) -> str:
    return (
        f"Updating this pull request with `{config.base_branch}` failed, so it has been "
        "taken out of the merge queue.\n\n"
        f"The `{config.ready_label}` label was removed and `{config.error_label}` was added. "
        f"Fix the branch and re-apply `{config.ready_label}` to queue it again.\n\n"
        f"GitHub responded: {error.message}"
    )
