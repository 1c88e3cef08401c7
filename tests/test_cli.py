"""Tests for the CLI session loop and the setup wizard."""

import io

import pytest
from click.testing import CliRunner
from rich.console import Console

from draftcraft import setup_wizard
from draftcraft.cli import SLASH_COMMANDS, ChatRepl, cli, matching_commands
from draftcraft.engine import DraftEngine
from draftcraft.executor import ExecutorMode
from draftcraft.setup_wizard import (
    SetupCancelled,
    build_env_text,
    has_inline_config,
    run_setup,
    to_env_value,
)
from conftest import FakeRunner, StubChat


@pytest.fixture
def repl_parts(config):
    chat = StubChat()
    engine = DraftEngine(config, chat, FakeRunner(config.outputs_dir))
    session = engine.new_session("cli-session", "cli-user")
    buffer = io.StringIO()
    out = Console(file=buffer, force_terminal=False, width=200)
    return ChatRepl(engine, session, out=out), chat, buffer


class TestMatchingCommands:
    def test_prefix(self):
        assert matching_commands("/re") == ["/reset"]
        assert matching_commands("/e") == ["/engine", "/exit"]

    def test_no_match_lists_all(self):
        assert matching_commands("/zzz") == list(SLASH_COMMANDS)
        assert matching_commands("/") == list(SLASH_COMMANDS)


class TestChatRepl:
    @pytest.mark.asyncio
    async def test_help_and_candidates(self, repl_parts):
        repl, chat, buffer = repl_parts
        assert await repl.handle_line("?")
        assert await repl.handle_line("/")
        output = buffer.getvalue()
        assert "/finalize" in output
        assert "/engine X" in output
        assert chat.call_count == 0

    @pytest.mark.asyncio
    async def test_blank_line_ignored(self, repl_parts):
        repl, chat, buffer = repl_parts
        assert await repl.handle_line("   ")
        assert buffer.getvalue() == ""
        assert chat.call_count == 0

    @pytest.mark.asyncio
    async def test_exit(self, repl_parts):
        repl, _, _ = repl_parts
        assert await repl.handle_line("/exit") is False

    @pytest.mark.asyncio
    async def test_engine_command(self, repl_parts):
        repl, _, buffer = repl_parts
        await repl.handle_line("/engine auto")
        assert repl.session.executor_mode is ExecutorMode.AUTO
        await repl.handle_line("/engine vim")
        assert repl.session.executor_mode is ExecutorMode.AUTO
        assert "Invalid mode" in buffer.getvalue()

    @pytest.mark.asyncio
    async def test_chat_turn_and_reset(self, repl_parts):
        repl, chat, buffer = repl_parts
        chat.responses = ["Which repository?"]
        await repl.handle_line("fix the tests")
        assert "assistant> Which repository?" in buffer.getvalue()
        assert len(repl.session.history) == 3

        await repl.handle_line("/reset")
        assert len(repl.session.history) == 1
        assert "Conversation cleared." in buffer.getvalue()

    @pytest.mark.asyncio
    async def test_finalize_without_history(self, repl_parts):
        repl, chat, buffer = repl_parts
        await repl.handle_line("/finalize")
        assert "Could not build the final instruction" in buffer.getvalue()
        assert chat.call_count == 0

    @pytest.mark.asyncio
    async def test_finalize_prints_and_saves(self, repl_parts):
        repl, chat, buffer = repl_parts
        chat.responses = ["ok", "Rename the module."]
        await repl.handle_line("rename it")
        await repl.handle_line("/finalize")
        output = buffer.getvalue()
        assert "Rename the module." in output
        assert "Saved to:" in output
        assert repl.session.latest_prompt_text == "Rename the module."

    @pytest.mark.asyncio
    async def test_run_streams_and_explains(self, repl_parts):
        repl, chat, buffer = repl_parts
        chat.responses = ["ok", "Do it.", "Summary:\n- it ran"]
        await repl.handle_line("do the thing")
        await repl.handle_line("/run")
        output = buffer.getvalue()
        assert "agent output" in output
        assert "exit code" in output
        assert "Summary:\n- it ran" in output
        assert not repl.session.finalizing


class TestSetupWizard:
    @pytest.mark.parametrize("value,expected", [
        ("codex", "codex"),
        ("codex exec {PROMPT_FILE}", "'codex exec {PROMPT_FILE}'"),
        ("it's", "'it\\'s'"),
        ("", "''"),
        ("a\nb", "'a b'"),
    ])
    def test_to_env_value(self, value, expected):
        assert to_env_value(value) == expected

    def test_build_env_text_keeps_custom_keys(self):
        text = build_env_text(
            {"FOO": "bar", "SLACK_BOT_TOKEN": "xoxb-1", "LLM_MODEL": "old"},
            {"LLM_PROVIDER": "ollama", "LLM_MODEL": "new"},
        )
        lines = text.splitlines()
        assert lines[0] == "# DraftCraft settings"
        assert "LLM_MODEL=new" in lines
        assert "LLM_MODEL=old" not in lines
        assert "SLACK_BOT_TOKEN=xoxb-1" in lines
        assert lines[-2:] == ["# Existing custom keys", "FOO=bar"]

    def test_has_inline_config(self):
        assert has_inline_config({"LLM_MODEL": "m", "CODEX_COMMAND_TEMPLATE": "codex"})
        assert has_inline_config({"OLLAMA_MODEL": "m", "CLAUDE_COMMAND_TEMPLATE": "claude"})
        assert not has_inline_config({"LLM_MODEL": "m"})
        assert not has_inline_config({"CODEX_COMMAND_TEMPLATE": "codex"})

    def test_run_setup_accepts_defaults(self, tmp_path, monkeypatch):
        env_path = tmp_path / ".env"
        env_path.write_text("LLM_MODEL=mine\nFOO=bar\n", encoding="utf-8")
        monkeypatch.setattr(setup_wizard.click, "prompt", lambda text, default=None, **kw: default)
        monkeypatch.setattr(setup_wizard.click, "confirm", lambda text, default=None: True)

        environ = {}
        run_setup(env_path, environ)

        written = env_path.read_text(encoding="utf-8").splitlines()
        assert "LLM_PROVIDER=ollama" in written
        assert "LLM_MODEL=mine" in written
        assert "MAX_HISTORY_MESSAGES=30" in written
        assert "FOO=bar" in written
        assert environ["LLM_MODEL"] == "mine"
        assert environ["EXECUTOR_MODE"] == "auto"

    def test_run_setup_cancelled(self, tmp_path, monkeypatch):
        env_path = tmp_path / ".env"
        monkeypatch.setattr(setup_wizard.click, "prompt", lambda text, default=None, **kw: default)
        monkeypatch.setattr(setup_wizard.click, "confirm", lambda text, default=None: False)
        with pytest.raises(SetupCancelled):
            run_setup(env_path, {})
        assert not env_path.exists()


class TestConfigCommand:
    def test_prints_masked_config(self, base_env, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        for key, value in base_env.items():
            monkeypatch.setenv(key, value)
        monkeypatch.setenv("OPENAI_API_KEY", "sk-very-secret")

        result = CliRunner().invoke(cli, ["config"])

        assert result.exit_code == 0, result.output
        assert "test-model" in result.output
        assert "very-secret" not in result.output
