from __future__ import annotations

from datetime import datetime, timezone
import json
from urllib.parse import parse_qs, urlparse

import pytest

from mergebot import github_gateway
from mergebot.github_gateway import (
    GitHubApiError,
    GitHubGateway,
    _as_int,
    _as_optional_bool,
    _error_message,
    _parse_http_response,
    _parse_pull_request,
    _preview_for_log,
)
from mergebot.observability import configure_logging
from mergebot.shell import CommandError, CommandResult


def _pull_payload(number: int, **overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "number": number,
        "title": f"PR {number}",
        "state": "open",
        "draft": False,
        "mergeable": True,
        "mergeable_state": "clean",
        "labels": [{"name": "ready-to-merge"}, "skip", {"name": "docs"}],
        "created_at": "2024-03-01T10:00:00Z",
        "html_url": f"https://example/pr/{number}",
        "head": {"ref": f"feature-{number}", "repo": {"full_name": "o/r"}},
        "base": {"ref": "main"},
    }
    payload.update(overrides)
    return payload


def test_get_pull_request_parses_snapshot(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway = GitHubGateway("o", "r")

    def fake_api(
        self: GitHubGateway, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        _ = self, payload
        assert method == "GET"
        assert path == "/repos/o/r/pulls/9"
        return _pull_payload(9, mergeable=None, mergeable_state="unknown")

    monkeypatch.setattr(GitHubGateway, "_api_json", fake_api)

    pr = gateway.get_pull_request(9)
    assert pr.number == 9
    assert pr.state == "open"
    assert pr.mergeable is None
    assert pr.mergeable_state == "unknown"
    assert pr.labels == ("ready-to-merge", "docs")
    assert pr.created_at == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)
    assert pr.head_ref == "feature-9"
    assert pr.base_ref == "main"
    assert pr.head_repo_full_name == "o/r"


def test_get_pull_request_rejects_non_object(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway = GitHubGateway("o", "r")
    monkeypatch.setattr(GitHubGateway, "_api_json", lambda self, method, path, payload=None: [])

    with pytest.raises(RuntimeError, match="expected object for pull request"):
        gateway.get_pull_request(1)


def test_parse_pull_request_handles_missing_fields() -> None:
    pr = _parse_pull_request(
        _pull_payload(3, mergeable_state=None, labels=None, head={"ref": "x", "repo": None})
    )
    assert pr.mergeable_state == "unknown"
    assert pr.labels == ()
    assert pr.head_repo_full_name is None

    with pytest.raises(RuntimeError, match="missing pull request head/base"):
        _parse_pull_request(_pull_payload(3, head=None))
    with pytest.raises(RuntimeError, match="created_at"):
        _parse_pull_request(_pull_payload(3, created_at="yesterday"))
    with pytest.raises(RuntimeError, match="mergeable"):
        _parse_pull_request(_pull_payload(3, mergeable="yes"))


def test_list_open_pull_requests_paginates_and_sorts(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway = GitHubGateway("o", "r")
    pages: list[dict[str, list[str]]] = []

    def fake_api(
        self: GitHubGateway, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        _ = self, payload
        assert method == "GET"
        parsed = urlparse(path)
        assert parsed.path == "/repos/o/r/pulls"
        params = parse_qs(parsed.query)
        pages.append(params)
        if params["page"] == ["1"]:
            return [
                _pull_payload(100 + index, created_at=f"2024-03-01T10:{index % 60:02d}:00Z")
                for index in range(100)
            ]
        return [_pull_payload(5, created_at="2024-02-01T00:00:00Z"), "skip"]

    monkeypatch.setattr(GitHubGateway, "_api_json", fake_api)

    prs = gateway.list_open_pull_requests("main")

    assert len(prs) == 101
    assert prs[0].number == 5
    assert [params["page"] for params in pages] == [["1"], ["2"]]
    assert pages[0]["base"] == ["main"]
    assert pages[0]["state"] == ["open"]
    assert pages[0]["sort"] == ["created"]
    assert pages[0]["direction"] == ["asc"]
    assert all(a.created_at <= b.created_at for a, b in zip(prs, prs[1:]))


def test_list_open_pull_requests_rejects_non_list(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway = GitHubGateway("o", "r")
    monkeypatch.setattr(
        GitHubGateway, "_api_json", lambda self, method, path, payload=None: {"bad": "shape"}
    )

    with pytest.raises(RuntimeError, match="expected list for pull requests"):
        gateway.list_open_pull_requests("main")


def test_write_operations_use_expected_endpoints(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway = GitHubGateway("o", "r")
    calls: list[tuple[str, str, dict[str, object] | None]] = []

    def fake_api(
        self: GitHubGateway, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        _ = self
        calls.append((method, path, payload))
        return None

    monkeypatch.setattr(GitHubGateway, "_api_json", fake_api)

    gateway.update_branch(7)
    gateway.merge_pull_request(7, "squash")
    gateway.delete_branch("team/feature-7")
    gateway.add_label(7, "merge-failed")
    gateway.remove_label(7, "ready to merge")
    gateway.post_issue_comment(7, "hello")

    assert calls == [
        ("PUT", "/repos/o/r/pulls/7/update-branch", {}),
        ("PUT", "/repos/o/r/pulls/7/merge", {"merge_method": "squash"}),
        ("DELETE", "/repos/o/r/git/refs/heads/team/feature-7", None),
        ("POST", "/repos/o/r/issues/7/labels", {"labels": ["merge-failed"]}),
        ("DELETE", "/repos/o/r/issues/7/labels/ready%20to%20merge", None),
        ("POST", "/repos/o/r/issues/7/comments", {"body": "hello"}),
    ]


def test_update_and_merge_failures_emit_events(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    gateway = GitHubGateway("o", "r")
    configure_logging(verbose=True)

    def fake_api(
        self: GitHubGateway, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        _ = self, method, payload
        if path.endswith("/update-branch"):
            raise GitHubApiError(422, "merge conflict", path=path)
        raise GitHubApiError(405, "not mergeable", path=path)

    monkeypatch.setattr(GitHubGateway, "_api_json", fake_api)

    with pytest.raises(GitHubApiError, match="merge conflict") as update_exc:
        gateway.update_branch(7)
    assert update_exc.value.status_code == 422
    with pytest.raises(GitHubApiError, match="not mergeable"):
        gateway.merge_pull_request(7, "merge")

    stderr = capsys.readouterr().err
    assert "event=github_update_branch_failed" in stderr
    assert "event=github_merge_failed" in stderr
    assert "status_code=405" in stderr


def _gh_result(stdout: str, *, exit_code: int = 0, stderr: str = "") -> CommandResult:
    return CommandResult(argv=("gh", "api"), exit_code=exit_code, stdout=stdout, stderr=stderr)


def test_api_json_parses_success_and_passes_token(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, object] = {}

    def fake_run(
        argv: list[str],
        *,
        input_text: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        seen.update(argv=argv, input_text=input_text, env=env)
        return _gh_result(
            'HTTP/2.0 200 OK\r\nContent-Type: application/json\r\n\r\n{"merged": true}'
        )

    monkeypatch.setattr(github_gateway, "run", fake_run)
    gateway = GitHubGateway("o", "r", token="tok")

    result = gateway._api_json(
        "PUT", "/repos/o/r/pulls/1/merge", payload={"merge_method": "merge"}
    )

    assert result == {"merged": True}
    assert seen["argv"] == [
        "gh",
        "api",
        "--method",
        "PUT",
        "--include",
        "/repos/o/r/pulls/1/merge",
        "--input",
        "-",
    ]
    assert json.loads(str(seen["input_text"])) == {"merge_method": "merge"}
    assert seen["env"] == {"GH_TOKEN": "tok"}


def test_api_json_returns_none_for_empty_body(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        github_gateway, "run", lambda argv, **kwargs: _gh_result("HTTP/2.0 204 No Content\n\n")
    )
    gateway = GitHubGateway("o", "r")
    assert gateway._api_json("DELETE", "/repos/o/r/git/refs/heads/x") is None


def test_api_json_error_status_wins_over_exit_code(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        github_gateway,
        "run",
        lambda argv, **kwargs: _gh_result(
            "HTTP/2.0 422 Unprocessable Entity\n"
            "Content-Type: application/json\n\n"
            '{"message": "There are no new commits on the base branch."}',
            exit_code=1,
            stderr="gh: There are no new commits on the base branch. (HTTP 422)",
        ),
    )
    gateway = GitHubGateway("o", "r")

    with pytest.raises(GitHubApiError) as exc_info:
        gateway._api_json("PUT", "/repos/o/r/pulls/1/update-branch", payload={})

    assert exc_info.value.status_code == 422
    assert exc_info.value.message == "There are no new commits on the base branch."
    assert exc_info.value.path == "/repos/o/r/pulls/1/update-branch"


def test_api_json_raises_command_error_when_gh_fails_without_response(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging("low")
    monkeypatch.setattr(
        github_gateway,
        "run",
        lambda argv, **kwargs: _gh_result(
            "", exit_code=4, stderr="gh: To use GitHub CLI in automation, set GH_TOKEN"
        ),
    )
    gateway = GitHubGateway("o", "r")

    with pytest.raises(CommandError, match="gh exited with 4: gh: To use GitHub CLI") as exc_info:
        gateway._api_json("GET", "/repos/o/r/pulls/1")

    assert exc_info.value.exit_code == 4
    assert "event=command_failed command=gh api exit_code=4" in capsys.readouterr().err


def test_api_json_garbled_output_with_clean_exit_is_api_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(github_gateway, "run", lambda argv, **kwargs: _gh_result("not http"))
    gateway = GitHubGateway("o", "r")

    with pytest.raises(GitHubApiError, match="no response") as exc_info:
        gateway._api_json("GET", "/repos/o/r/pulls/1")
    assert exc_info.value.status_code is None


def test_token_is_hidden_from_repr() -> None:
    assert "tok" not in repr(GitHubGateway("o", "r", token="tok"))
    assert GitHubGateway("o", "r").full_name == "o/r"


def test_parse_http_response_uses_last_status_line() -> None:
    raw = "HTTP/1.1 100 Continue\n\nHTTP/2.0 201 Created\nETag: abc\n\n{}"
    status, headers, body = _parse_http_response(raw)
    assert status == 201
    assert headers == {"etag": "abc"}
    assert body == "{}"

    with pytest.raises(RuntimeError, match="missing HTTP status line"):
        _parse_http_response("oops")
    with pytest.raises(RuntimeError, match="status line"):
        _parse_http_response("HTTP/2.0 abc")


def test_small_helpers() -> None:
    assert _error_message("") == "<empty>"
    assert _error_message("plain text") == "plain text"
    assert _error_message('{"message": "Not Found"}') == "Not Found"
    assert _error_message('{"errors": []}') == '{"errors": []}'
    assert _preview_for_log("") == "<empty>"
    assert _preview_for_log("x" * 10, limit=4) == "xxxx..."
    assert _as_int("12", field="number") == 12
    assert _as_optional_bool(None, field="mergeable") is None
    with pytest.raises(RuntimeError):
        _as_int(True, field="number")
    with pytest.raises(RuntimeError):
        _as_int("x", field="number")
