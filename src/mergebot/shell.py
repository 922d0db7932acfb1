from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import subprocess


LOGGER = logging.getLogger("mergebot.shell")
_PREVIEW_LIMIT = 200


class CommandError(RuntimeError):
    """A command could not start, or exited non-zero without usable output."""

    def __init__(self, argv: list[str], *, exit_code: int | None, stderr: str) -> None:
        self.argv = tuple(argv)
        self.exit_code = exit_code
        self.stderr = stderr
        outcome = f"exited with {exit_code}" if exit_code is not None else "could not be started"
        super().__init__(f"{argv[0]} {outcome}: {_preview(stderr)}")


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str

    def raise_for_exit_code(self) -> None:
        if self.exit_code == 0:
            return
        _log_failure(list(self.argv), self.exit_code, self.stderr)
        raise CommandError(list(self.argv), exit_code=self.exit_code, stderr=self.stderr)


def run(
    argv: list[str],
    *,
    input_text: str | None = None,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run ``argv`` and capture its output without judging the exit code.

    ``gh api --include`` exits non-zero for 4xx/5xx responses while still
    printing the response, so callers decide what a failure is. ``env``
    entries are layered over the current process environment.
    """
    try:
        proc = subprocess.run(
            argv,
            input=input_text,
            text=True,
            capture_output=True,
            check=False,
            env={**os.environ, **env} if env else None,
        )
    except OSError as exc:
        _log_failure(argv, None, str(exc))
        raise CommandError(argv, exit_code=None, stderr=str(exc)) from exc
    return CommandResult(
        argv=tuple(argv),
        exit_code=proc.returncode,
        stdout=proc.stdout,
        stderr=proc.stderr,
    )


def _log_failure(argv: list[str], exit_code: int | None, stderr: str) -> None:
    # argv only; credentials travel in env.
    LOGGER.error(
        "event=command_failed command=%s exit_code=%s stderr=%s",
        " ".join(argv),
        exit_code if exit_code is not None else "null",
        _preview(stderr),
    )


def _preview(text: str) -> str:
    compact = " ".join(text.split())
    if not compact:
        return "<empty>"
    if len(compact) <= _PREVIEW_LIMIT:
        return compact
    return f"{compact[:_PREVIEW_LIMIT]}..."
