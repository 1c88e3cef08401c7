"""Tests for draftcraft.runner: real pseudo-terminal runs of small shell commands."""

import asyncio
import os

import pytest

from draftcraft.runner import (
    ProcessRunner,
    build_agent_env,
    format_exit_code,
    render_command,
    strip_terminal,
    timestamp,
)

pytestmark = pytest.mark.skipif(not hasattr(os, "openpty"), reason="needs a pseudo-terminal")


def _start(runner, workdir, template, **kwargs):
    return runner.start(
        agent_name="codex",
        command_template=template,
        prompt=kwargs.pop("prompt", "say hello"),
        prompt_file_path=kwargs.pop("prompt_file_path", "/tmp/prompt.md"),
        owner_id="U1",
        channel_id="C1",
        workdir=str(workdir),
        **kwargs,
    )


class TestHelpers:
    def test_strip_terminal(self):
        raw = "\x1b[1;32mgreen\x1b[0m\r\nline\rnext\x1b]0;title\x07\x07done\x1b(B"
        assert strip_terminal(raw) == "green\nline\nnextdone"

    def test_strip_keeps_tabs_and_newlines(self):
        assert strip_terminal("a\tb\nc") == "a\tb\nc"

    def test_render_command_is_literal(self):
        command = render_command(
            "run {PROMPT_FILE} --c {CHANNEL_ID} --o {OWNER_ID} --w {WORKDIR} {UNKNOWN}",
            prompt_file_path="/p.md",
            channel_id="C1",
            owner_id="U1",
            workdir="/w",
        )
        assert command == "run /p.md --c C1 --o U1 --w /w {UNKNOWN}"

    def test_agent_env(self):
        env = build_agent_env(
            prompt="p", prompt_file_path="/p.md", owner_id="U1", channel_id="C1", workdir="/w",
        )
        assert env["DRAFTCRAFT_PROMPT"] == "p"
        assert env["DRAFTCRAFT_PROMPT_FILE"] == "/p.md"
        assert env["DRAFTCRAFT_OWNER_ID"] == "U1"
        assert env["DRAFTCRAFT_CHANNEL_ID"] == "C1"
        assert env["DRAFTCRAFT_WORKDIR"] == "/w"
        assert "TERM" in env

    def test_timestamp_is_filesystem_safe(self):
        ts = timestamp()
        assert ":" not in ts and "." not in ts

    def test_format_exit_code(self):
        assert format_exit_code(None) == "null"
        assert format_exit_code(3) == "3"


class TestProcessRunner:
    @pytest.mark.asyncio
    async def test_streams_output_and_logs(self, tmp_path):
        runner = ProcessRunner(tmp_path / "outputs")
        chunks = []
        exits = []

        handle = _start(
            runner, tmp_path, "printf 'hello\\r\\n\\033[31mred\\033[0m\\n'",
            on_stream_chunk=chunks.append, on_exit=exits.append,
        )
        assert handle.log_file_path.exists()
        code = await handle.wait()

        assert code == 0
        assert exits == [0]
        assert handle.exit_code == 0
        streamed = "".join(chunks)
        assert "hello\n" in streamed
        assert "red" in streamed
        assert "\x1b" not in streamed and "\r" not in streamed

        log = handle.log_file_path.read_bytes()
        assert log.startswith(b"$ printf")
        assert b"\x1b[31mred" in log
        assert log.rstrip().endswith(b"[exit code] 0")

    @pytest.mark.asyncio
    async def test_log_file_name(self, tmp_path):
        runner = ProcessRunner(tmp_path / "outputs")
        handle = _start(runner, tmp_path, "true")
        await handle.wait()
        assert handle.log_file_path.parent == tmp_path / "outputs" / "logs"
        assert handle.log_file_path.name.startswith("codex-")
        assert handle.log_file_path.name.endswith(f"-{handle.run_id}.log")
        assert handle.run_id.startswith("C1-")

    @pytest.mark.asyncio
    async def test_environment_and_placeholders(self, tmp_path):
        runner = ProcessRunner(tmp_path / "outputs")
        chunks = []
        handle = _start(
            runner, tmp_path,
            'echo "$DRAFTCRAFT_PROMPT|$DRAFTCRAFT_CHANNEL_ID|{OWNER_ID}|$(pwd)"',
            prompt="make tea",
            on_stream_chunk=chunks.append,
        )
        await handle.wait()
        assert f"make tea|C1|U1|{tmp_path}" in "".join(chunks)

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, tmp_path):
        runner = ProcessRunner(tmp_path / "outputs")
        exits = []
        handle = _start(runner, tmp_path, "exit 3", on_exit=exits.append)
        assert await handle.wait() == 3
        assert exits == [3]
        assert b"[exit code] 3" in handle.log_file_path.read_bytes()

    @pytest.mark.asyncio
    async def test_signal_exit_is_none(self, tmp_path):
        runner = ProcessRunner(tmp_path / "outputs")
        handle = _start(runner, tmp_path, "kill -9 $$")
        assert await handle.wait() is None
        assert b"[exit code] null" in handle.log_file_path.read_bytes()

    @pytest.mark.asyncio
    async def test_spawn_failure_single_none_exit(self, tmp_path):
        runner = ProcessRunner(tmp_path / "outputs")
        exits = []
        handle = _start(runner, tmp_path / "missing-dir", "echo hi", on_exit=exits.append)

        assert await handle.wait() is None
        await asyncio.sleep(0.05)
        assert exits == [None]
        log = handle.log_file_path.read_text()
        assert "[spawn error]" in log
        assert "[exit code] null" in log

    @pytest.mark.asyncio
    async def test_async_exit_callback(self, tmp_path):
        runner = ProcessRunner(tmp_path / "outputs")
        seen = []

        async def on_exit(code):
            await asyncio.sleep(0)
            seen.append(code)

        handle = _start(runner, tmp_path, "true", on_exit=on_exit)
        await handle.wait()
        assert seen == [0]

    @pytest.mark.asyncio
    async def test_exit_callback_error_is_logged(self, tmp_path):
        runner = ProcessRunner(tmp_path / "outputs")
        calls = []

        def on_exit(code):
            calls.append(code)
            raise RuntimeError("callback exploded")

        handle = _start(runner, tmp_path, "true", on_exit=on_exit)
        assert await handle.wait() == 0
        assert calls == [0]
        assert "[exit callback error] callback exploded" in handle.log_file_path.read_text()

    @pytest.mark.asyncio
    async def test_stream_callback_error_does_not_stop_run(self, tmp_path):
        runner = ProcessRunner(tmp_path / "outputs")

        def on_chunk(_chunk):
            raise ValueError("bad sink")

        handle = _start(runner, tmp_path, "echo hi", on_stream_chunk=on_chunk)
        assert await handle.wait() == 0
        assert b"hi" in handle.log_file_path.read_bytes()

    @pytest.mark.asyncio
    async def test_timeout_kills_run(self, tmp_path):
        runner = ProcessRunner(tmp_path / "outputs", timeout_seconds=0.5)
        handle = _start(runner, tmp_path, "sleep 30")
        assert await asyncio.wait_for(handle.wait(), timeout=15) is None
        log = handle.log_file_path.read_text()
        assert "[timeout]" in log
        assert "[exit code] null" in log

    @pytest.mark.asyncio
    async def test_trailing_partial_utf8_is_streamed(self, tmp_path):
        runner = ProcessRunner(tmp_path / "outputs")
        chunks = []
        handle = _start(runner, tmp_path, r"printf 'ok\342\202'", on_stream_chunk=chunks.append)
        assert await handle.wait() == 0
        assert "".join(chunks).endswith("ok\ufffd")

    @pytest.mark.asyncio
    async def test_unexpected_error_still_reports_exit(self, tmp_path, monkeypatch):
        runner = ProcessRunner(tmp_path / "outputs")

        async def broken_execute(*args):
            raise OSError("disk full")

        monkeypatch.setattr(runner, "_execute", broken_execute)
        exits = []
        handle = _start(runner, tmp_path, "true", on_exit=exits.append)

        assert await handle.wait() is None
        assert exits == [None]
        log = handle.log_file_path.read_text()
        assert "[run error] disk full" in log
        assert "[exit code] null" in log

    @pytest.mark.asyncio
    async def test_cancelled_run_reports_exit_once(self, tmp_path):
        runner = ProcessRunner(tmp_path / "outputs")
        exits = []
        handle = _start(runner, tmp_path, "sleep 30", on_exit=exits.append)
        await asyncio.sleep(0.2)

        handle.task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(handle.task, timeout=15)

        assert exits == [None]
        assert "[cancelled]" in handle.log_file_path.read_text()

    @pytest.mark.asyncio
    async def test_terminal_geometry(self, tmp_path):
        runner = ProcessRunner(tmp_path / "outputs")
        chunks = []
        handle = _start(runner, tmp_path, "stty size", on_stream_chunk=chunks.append)
        await handle.wait()
        assert "40 120" in "".join(chunks)

    @pytest.mark.asyncio
    async def test_stats(self, tmp_path):
        runner = ProcessRunner(tmp_path / "outputs")
        handle = _start(runner, tmp_path, "true")
        assert runner.get_stats()["active"] == 1
        await handle.wait()
        await asyncio.sleep(0)
        stats = runner.get_stats()
        assert stats["started"] == 1
        assert stats["active"] == 0
