from __future__ import annotations

import subprocess

import pytest

from prloop.observability import configure_logging
from prloop.shell import CommandError, _preview, _redacted_command, run


def test_run_success(monkeypatch: pytest.MonkeyPatch) -> None:
    called: dict[str, object] = {}

    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        called["args"] = args
        called["kwargs"] = kwargs
        return subprocess.CompletedProcess(args=["echo"], returncode=0, stdout="ok", stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)

    out = run(["echo", "hello"], input_text="hi")

    assert out == "ok"
    kwargs = called["kwargs"]
    assert isinstance(kwargs, dict)
    assert kwargs["input"] == "hi"
    assert kwargs["check"] is False
    env = kwargs["env"]
    assert isinstance(env, dict)
    assert env["GH_PROMPT_DISABLED"] == "1"


def test_run_failure_raises(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args, kwargs
        return subprocess.CompletedProcess(args=["bad"], returncode=2, stdout="out", stderr="err")

    monkeypatch.setattr(subprocess, "run", fake_run)
    configure_logging(verbose=True)

    with pytest.raises(CommandError, match="Command failed") as exc_info:
        run(["bad"])
    assert exc_info.value.exit_code == 2
    assert exc_info.value.argv == ("bad",)
    assert exc_info.value.stderr == "err"
    stderr = capsys.readouterr().err
    assert "event=command_failed command=bad exit_code=2" in stderr
    assert "stderr=err" in stderr
    assert "stdout=out" in stderr
    configure_logging(verbose=False)


def test_run_failure_tolerated_when_not_checked(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(*args: object, **kwargs: object) -> subprocess.CompletedProcess[str]:
        _ = args, kwargs
        return subprocess.CompletedProcess(
            args=["gh"], returncode=1, stdout="HTTP/2.0 404", stderr=""
        )

    monkeypatch.setattr(subprocess, "run", fake_run)

    assert run(["gh", "api", "/missing"], check=False) == "HTTP/2.0 404"


def test_preview_handles_empty_and_truncation() -> None:
    assert _preview("") == "<empty>"
    assert _preview("x" * 10, limit=4) == "xxxx..."
    assert _preview("a\nb") == "a\\nb"


def test_redacted_command_shortens_long_arguments() -> None:
    command = _redacted_command(["gh", "api", "--jq", "q" * 100, "graphql"])
    assert command.startswith("gh api --jq qqqq")
    assert command.endswith("... graphql")
    assert _redacted_command(["gh", "pr", "view", "7"]) == "gh pr view 7"
    assert "q" * 50 not in command
