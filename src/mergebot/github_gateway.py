from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import json
import logging
from typing import cast
from urllib.parse import quote, urlencode

from mergebot.models import MergeMethod, PullRequestSnapshot
from mergebot.observability import log_event
from mergebot.shell import run


LOGGER = logging.getLogger("mergebot.github_gateway")
_PAGE_SIZE = 100


class GitHubApiError(RuntimeError):
    """A GitHub REST call returned a non-2xx status (or never got a response)."""

    def __init__(self, status_code: int | None, message: str, *, path: str = "") -> None:
        self.status_code = status_code
        self.message = message
        self.path = path
        status = status_code if status_code is not None else "no response"
        super().__init__(f"GitHub API request failed ({status}) for {path}: {message}")


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    token: str | None = field(default=None, repr=False, compare=False)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        payload = _as_object_dict(self._api_json("GET", path))
        if payload is None:
            raise RuntimeError("Unexpected GitHub response: expected object for pull request")
        snapshot = _parse_pull_request(payload)
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            pr_number=snapshot.number,
            mergeable=snapshot.mergeable,
            mergeable_state=snapshot.mergeable_state,
        )
        return snapshot

    def list_open_pull_requests(self, base: str) -> tuple[PullRequestSnapshot, ...]:
        """List open PRs targeting ``base``, oldest first."""
        pulls: list[PullRequestSnapshot] = []
        page = 1
        while True:
            query = urlencode(
                {
                    "state": "open",
                    "base": base,
                    "sort": "created",
                    "direction": "asc",
                    "per_page": _PAGE_SIZE,
                    "page": page,
                }
            )
            payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}/pulls?{query}")
            if not isinstance(payload, list):
                raise RuntimeError("Unexpected GitHub response: expected list for pull requests")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                pulls.append(_parse_pull_request(item_obj))
            if len(payload) < _PAGE_SIZE:
                break
            page += 1

        log_event(LOGGER, "github_read", endpoint="pull_requests", base=base, count=len(pulls))
        return tuple(sorted(pulls, key=lambda pr: (pr.created_at, pr.number)))

    def update_branch(self, pr_number: int) -> None:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/update-branch"
        try:
            self._api_json("PUT", path, payload={})
        except GitHubApiError as exc:
            log_event(
                LOGGER,
                "github_update_branch_failed",
                pr_number=pr_number,
                status_code=exc.status_code,
                error=exc.message,
            )
            raise
        log_event(LOGGER, "github_update_branch_requested", pr_number=pr_number)

    def merge_pull_request(self, pr_number: int, method: MergeMethod) -> None:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/merge"
        try:
            self._api_json("PUT", path, payload={"merge_method": method})
        except GitHubApiError as exc:
            log_event(
                LOGGER,
                "github_merge_failed",
                pr_number=pr_number,
                merge_method=method,
                status_code=exc.status_code,
                error=exc.message,
            )
            raise
        log_event(LOGGER, "github_pr_merged", pr_number=pr_number, merge_method=method)

    def delete_branch(self, ref: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/git/refs/heads/{quote(ref, safe='/')}"
        self._api_json("DELETE", path)
        log_event(LOGGER, "github_branch_deleted", ref=ref)

    def add_label(self, issue_number: int, label: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/labels"
        self._api_json("POST", path, payload={"labels": [label]})
        log_event(LOGGER, "github_label_added", issue_number=issue_number, label=label)

    def remove_label(self, issue_number: int, label: str) -> None:
        path = (
            f"/repos/{self.owner}/{self.name}/issues/{issue_number}/labels/"
            f"{quote(label, safe='')}"
        )
        self._api_json("DELETE", path)
        log_event(LOGGER, "github_label_removed", issue_number=issue_number, label=label)

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments"
        self._api_json("POST", path, payload={"body": body})
        log_event(LOGGER, "github_issue_comment_posted", issue_number=issue_number)

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        cmd = ["gh", "api", "--method", method_upper, "--include", path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        env = {"GH_TOKEN": self.token} if self.token else None

        result = run(cmd, input_text=stdin_payload, env=env)
        raw = result.stdout
        try:
            status_code, _headers, body = _parse_http_response(raw)
        except RuntimeError as exc:
            # No HTTP response at all: gh itself failed (auth, network, usage).
            result.raise_for_exit_code()
            log_event(
                LOGGER,
                "github_request_failed",
                method=method_upper,
                path=path,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise GitHubApiError(None, str(exc), path=path) from exc

        if status_code < 200 or status_code >= 300:
            message = _error_message(body)
            log_event(
                LOGGER,
                "github_request_failed",
                method=method_upper,
                path=path,
                status_code=status_code,
                error=message,
            )
            raise GitHubApiError(status_code, message, path=path)

        if not body.strip():
            return None
        return json.loads(body)


def _parse_pull_request(payload: dict[str, object]) -> PullRequestSnapshot:
    head = _as_object_dict(payload.get("head"))
    base = _as_object_dict(payload.get("base"))
    if head is None or base is None:
        raise RuntimeError("Unexpected GitHub response: missing pull request head/base")
    head_repo = _as_object_dict(head.get("repo"))
    head_repo_full_name = _as_string(head_repo.get("full_name")) if head_repo else ""

    label_names: list[str] = []
    labels_obj = payload.get("labels")
    if isinstance(labels_obj, list):
        for entry in labels_obj:
            entry_obj = _as_object_dict(entry)
            if entry_obj is None:
                continue
            name = entry_obj.get("name")
            if isinstance(name, str):
                label_names.append(name)

    return PullRequestSnapshot(
        number=_as_int(payload.get("number"), field="number"),
        title=_as_string(payload.get("title")),
        state=_as_string(payload.get("state")).strip().lower(),
        draft=bool(payload.get("draft")),
        mergeable=_as_optional_bool(payload.get("mergeable"), field="mergeable"),
        mergeable_state=_as_string(payload.get("mergeable_state")).strip().lower() or "unknown",
        labels=tuple(label_names),
        created_at=_as_datetime(payload.get("created_at"), field="created_at"),
        head_ref=_as_string(head.get("ref")),
        base_ref=_as_string(base.get("ref")),
        html_url=_as_string(payload.get("html_url")),
        head_repo_full_name=head_repo_full_name or None,
    )


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _error_message(body: str) -> str:
    stripped = body.strip()
    if not stripped:
        return "<empty>"
    try:
        decoded = json.loads(stripped)
    except ValueError:
        return stripped
    decoded_obj = _as_object_dict(decoded)
    if decoded_obj is not None and isinstance(decoded_obj.get("message"), str):
        return str(decoded_obj["message"])
    return stripped


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")


def _as_optional_bool(value: object, *, field: str) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    raise RuntimeError(f"Unexpected GitHub response type for {field}")


def _as_datetime(value: object, *, field: str) -> datetime:
    if not isinstance(value, str) or not value:
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
