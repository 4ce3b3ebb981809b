from __future__ import annotations

import logging
import os
import subprocess

from prloop.observability import log_warning_event


class CommandError(RuntimeError):
    def __init__(
        self, message: str, *, argv: tuple[str, ...], exit_code: int, stderr: str
    ) -> None:
        super().__init__(message)
        self.argv = argv
        self.exit_code = exit_code
        self.stderr = stderr


LOGGER = logging.getLogger("prloop.shell")

# gh must never block on an interactive prompt while prloop is polling.
_NON_INTERACTIVE_ENV = {"GH_PROMPT_DISABLED": "1", "GH_NO_UPDATE_NOTIFIER": "1"}


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _redacted_command(argv: list[str]) -> str:
    # Long arguments such as jq filters are noise in a failure log line.
    parts: list[str] = []
    for arg in argv:
        if len(arg) > 80:
            parts.append(f"{arg[:20]}...")
        else:
            parts.append(arg)
    return " ".join(parts)


def run(
    argv: list[str],
    *,
    input_text: str | None = None,
    check: bool = True,
) -> str:
    env = dict(os.environ)
    env.update(_NON_INTERACTIVE_ENV)
    proc = subprocess.run(
        argv,
        input=input_text,
        text=True,
        capture_output=True,
        check=False,
        env=env,
    )
    if check and proc.returncode != 0:
        command = _redacted_command(argv)
        log_warning_event(
            LOGGER,
            "command_failed",
            command=command,
            exit_code=proc.returncode,
            stderr=_preview(proc.stderr),
            stdout=_preview(proc.stdout),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {command}\n"
            f"exit: {proc.returncode}\n"
            f"stdout:\n{proc.stdout}\n"
            f"stderr:\n{proc.stderr}",
            argv=tuple(argv),
            exit_code=proc.returncode,
            stderr=proc.stderr,
        )
    return proc.stdout
