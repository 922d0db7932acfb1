from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal


MergeMethod = Literal["merge", "rebase", "squash"]
MergeState = Literal["not_open", "draft", "conflicted", "unknown", "behind", "ready_to_merge"]
DecisionAction = Literal["none", "updated", "merged", "recovered"]


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    title: str
    state: str
    draft: bool
    mergeable: bool | None
    mergeable_state: str
    labels: tuple[str, ...]
    created_at: datetime
    head_ref: str
    base_ref: str
    html_url: str = ""
    head_repo_full_name: str | None = None

    def has_label(self, name: str) -> bool:
        return name in self.labels


@dataclass(frozen=True)
class Decision:
    pr_number: int | None
    action: DecisionAction
    reason: str
    status_line: str
    detail: str | None = None
