import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from foreman.backends import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    CommandBackend,
    ResilientBackend,
    RetryPolicy,
)
from foreman.errors import OperationCancelledError
from foreman.processes import CancelToken


class FlakyBackend(AgentBackend):
    def __init__(self, failures: int, *, retriable: bool = True) -> None:
        self.failures = failures
        self.retriable = retriable
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        token: CancelToken | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, token
        self.calls += 1
        if self.calls <= self.failures:
            raise BackendExecutionError("boom", backend="fake", retriable=self.retriable)
        yield "o"
        yield "k"


class SlowBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        token: CancelToken | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, token
        await asyncio.sleep(1)
        yield "late"


def _script(tmp_path: Path, body: str) -> CommandBackend:
    script = tmp_path / "model.sh"
    script.write_text(body, encoding="utf-8")
    return CommandBackend(command="sh", args=[str(script)], working_directory=tmp_path)


def test_build_command_fills_placeholders_and_drops_empty_model() -> None:
    args = ["-p", "{prompt}", "--model", "{model}", "--system-prompt-file", "{system_prompt_file}"]

    without_model = CommandBackend(args=args).build_command("hi", "/tmp/system.md")
    with_model = CommandBackend(args=args, model="sonnet").build_command("hi", "/tmp/system.md")

    assert without_model == ["claude", "-p", "hi", "--system-prompt-file", "/tmp/system.md"]
    assert with_model[3:5] == ["--model", "sonnet"]


def test_extract_content_handles_event_shapes() -> None:
    extract = CommandBackend._extract_content

    assert extract({"content": "a"}) == "a"
    assert extract({"content": [{"type": "text", "text": "b"}, {"type": "tool"}]}) == "b"
    assert extract({"delta": "c"}) == "c"
    assert extract({"type": "result", "result": "d"}) == "d"
    assert extract({"type": "system"}) == ""


def test_command_backend_streams_json_and_plain_lines(tmp_path: Path) -> None:
    backend = _script(
        tmp_path,
        "cat > prompt.txt\n"
        "echo '{\"type\": \"assistant\", \"content\": \"Hel\"}'\n"
        "echo '{\"delta\": \"lo\"}'\n"
        "echo 'plain tail'\n",
    )

    reply = asyncio.run(backend.complete("system rules", "user ask", {"model": "x"}))

    assert reply == "Helloplain tail"
    sent = (tmp_path / "prompt.txt").read_text(encoding="utf-8")
    assert sent.startswith("system rules")
    assert "user ask" in sent
    assert "Context JSON:" in sent


def test_command_backend_reports_exit_code(tmp_path: Path) -> None:
    backend = _script(tmp_path, "cat > /dev/null\necho 'quota exceeded' >&2\nexit 2\n")

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(backend.complete("s", "u"))

    assert excinfo.value.exit_code == 2
    assert "quota exceeded" in str(excinfo.value)


def test_command_backend_missing_binary_is_not_retriable(tmp_path: Path) -> None:
    backend = CommandBackend(command="foreman-missing-model-cli", working_directory=tmp_path)

    with pytest.raises(BackendProcessError) as excinfo:
        asyncio.run(backend.complete("s", "u"))

    assert excinfo.value.retriable is False


def test_command_backend_kills_process_on_cancel(tmp_path: Path) -> None:
    backend = _script(tmp_path, "cat > /dev/null\nexec sleep 30\n")

    async def scenario() -> None:
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.2, token.cancel, "operator")
        await backend.complete("s", "u", token=token)

    with pytest.raises(OperationCancelledError):
        asyncio.run(scenario())


def test_resilient_backend_retries_then_succeeds() -> None:
    events: list[dict[str, Any]] = []
    inner = FlakyBackend(failures=1)
    backend = ResilientBackend(
        "fake", inner, RetryPolicy(max_retries=2, backoff_seconds=0.0), event_hook=events.append
    )

    assert asyncio.run(backend.complete("s", "u")) == "ok"
    assert inner.calls == 2
    assert [event["event"] for event in events] == ["backend_attempt_failed", "backend_retry"]


def test_resilient_backend_gives_up_after_policy() -> None:
    inner = FlakyBackend(failures=10)
    backend = ResilientBackend("fake", inner, RetryPolicy(max_retries=2, backoff_seconds=0.0))

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(backend.complete("s", "u"))

    assert inner.calls == 3
    assert excinfo.value.retriable is False
    assert "All backend attempts failed" in str(excinfo.value)


def test_resilient_backend_skips_retry_for_permanent_errors() -> None:
    inner = FlakyBackend(failures=10, retriable=False)
    backend = ResilientBackend("fake", inner, RetryPolicy(max_retries=3, backoff_seconds=0.0))

    with pytest.raises(BackendExecutionError):
        asyncio.run(backend.complete("s", "u"))

    assert inner.calls == 1


def test_resilient_backend_times_out_attempts() -> None:
    backend = ResilientBackend(
        "slow",
        SlowBackend(),
        RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=0.05),
    )

    with pytest.raises(BackendExecutionError, match="timed out"):
        asyncio.run(backend.complete("s", "u"))
