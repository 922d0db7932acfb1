from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import logging
from pathlib import Path
import tomllib
from typing import cast

from mergebot.models import MergeMethod
from mergebot.observability import warn_event


LOGGER = logging.getLogger("mergebot.config")
_MERGE_METHODS: frozenset[str] = frozenset({"merge", "rebase", "squash"})
_DEFAULT_TOKEN_ENV = "GITHUB_TOKEN"


@dataclass(frozen=True)
class QueueConfig:
    owner: str
    name: str
    base_branch: str
    ready_label: str
    error_label: str
    blocked_label: str | None = None
    merge_method: MergeMethod = "merge"
    grace_delay_ms: int = 0
    comment_on_failure: bool = True
    delete_branch_after_merge: bool = True

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class AppConfig:
    queue: QueueConfig
    token: str = field(repr=False)


class ConfigError(ValueError):
    pass


def map_merge_method(raw: str | None) -> MergeMethod:
    """Map a configured merge method onto one GitHub accepts.

    Anything unrecognized falls back to ``merge`` with a warning rather than
    failing the run.
    """
    normalized = (raw or "").strip().lower()
    if normalized in _MERGE_METHODS:
        return cast(MergeMethod, normalized)
    warn_event(
        LOGGER,
        "merge_method_unrecognized",
        merge_method=raw,
        fallback="merge",
    )
    return "merge"


def load_config(path: Path, environ: Mapping[str, str] | None = None) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    repo_data = _require_table(data, "repo")
    queue_data = _require_table(data, "queue")
    auth_data = _optional_table(data, "auth") or {}

    queue = QueueConfig(
        owner=_require_str(repo_data, "owner"),
        name=_require_str(repo_data, "name"),
        base_branch=_require_str(repo_data, "base_branch"),
        ready_label=_require_str(queue_data, "ready_label"),
        error_label=_require_str(queue_data, "error_label"),
        blocked_label=_optional_str(queue_data, "blocked_label"),
        merge_method=_merge_method_with_default(queue_data, "merge_method"),
        grace_delay_ms=_int_with_default(queue_data, "grace_delay_ms", 0),
        comment_on_failure=_bool_with_default(queue_data, "comment_on_failure", True),
        delete_branch_after_merge=_bool_with_default(
            queue_data, "delete_branch_after_merge", True
        ),
    )
    _validate_queue(queue)

    token_env = _str_with_default(auth_data, "token_env", _DEFAULT_TOKEN_ENV)
    env = environ if environ is not None else {}
    token = env.get(token_env, "").strip()
    if not token:
        raise ConfigError(f"GitHub token is required; set the {token_env} environment variable")

    return AppConfig(queue=queue, token=token)


def load_config_from_env(environ: Mapping[str, str]) -> AppConfig:
    """Build configuration from GitHub Actions inputs (``INPUT_*`` variables)."""
    repository = _require_env(environ, "GITHUB_REPOSITORY")
    owner, sep, name = repository.partition("/")
    if not sep or not owner or not name or "/" in name:
        raise ConfigError(f"GITHUB_REPOSITORY must look like owner/name, got {repository!r}")

    raw_delay = _input(environ, "delay")
    grace_delay_ms = 0
    if raw_delay is not None:
        try:
            grace_delay_ms = int(raw_delay)
        except ValueError as exc:
            raise ConfigError(
                f"delay must be an integer number of milliseconds: {raw_delay!r}"
            ) from exc

    queue = QueueConfig(
        owner=owner,
        name=name,
        base_branch=_require_input(environ, "base_branch"),
        ready_label=_require_input(environ, "ready_label"),
        error_label=_require_input(environ, "error_label"),
        blocked_label=_input(environ, "blocked_label"),
        merge_method=map_merge_method(_input(environ, "merge_method") or "merge"),
        grace_delay_ms=grace_delay_ms,
        comment_on_failure=_input_bool(environ, "comment_on_failure", True),
        delete_branch_after_merge=_input_bool(environ, "delete_branch_after_merge", True),
    )
    _validate_queue(queue)

    token = _input(environ, "github_token") or environ.get(_DEFAULT_TOKEN_ENV, "").strip()
    if not token:
        raise ConfigError("GitHub token is required; set the github_token input or GITHUB_TOKEN")
    return AppConfig(queue=queue, token=token)


def _validate_queue(queue: QueueConfig) -> None:
    if queue.grace_delay_ms < 0:
        raise ConfigError("grace_delay_ms must be >= 0")
    if queue.ready_label == queue.error_label:
        raise ConfigError("ready_label and error_label must differ")
    if queue.blocked_label is not None and queue.blocked_label == queue.ready_label:
        raise ConfigError("blocked_label must differ from ready_label")


def _input(environ: Mapping[str, str], name: str) -> str | None:
    # Actions exposes `with:` inputs as INPUT_<NAME> with spaces replaced by underscores.
    value = environ.get(f"INPUT_{name.replace(' ', '_').upper()}")
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _require_input(environ: Mapping[str, str], name: str) -> str:
    value = _input(environ, name)
    if value is None:
        raise ConfigError(f"Input required and not supplied: {name}")
    return value


def _input_bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    value = _input(environ, name)
    if value is None:
        return default
    normalized = value.lower()
    if normalized in {"true", "yes", "1"}:
        return True
    if normalized in {"false", "no", "0"}:
        return False
    raise ConfigError(f"Input {name} must be a boolean, got {value!r}")


def _require_env(environ: Mapping[str, str], key: str) -> str:
    value = environ.get(key, "").strip()
    if not value:
        raise ConfigError(f"{key} is required in the environment")
    return value


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value.strip()


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value.strip()


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string")
    return value.strip()


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _merge_method_with_default(data: dict[str, object], key: str) -> MergeMethod:
    value = data.get(key, "merge")
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string")
    return map_merge_method(value)
