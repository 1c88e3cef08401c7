"""Shared test fixtures for the DraftCraft test suite."""

import asyncio
import inspect
from pathlib import Path

import pytest

from draftcraft.config import DraftConfig
from draftcraft.runner import RunHandle


class StubChat:
    """Chat client returning scripted replies and recording every call."""

    def __init__(self, responses=None, error: Exception | None = None):
        self.responses = list(responses or [])
        self.error = error
        self.calls: list[list] = []
        self.gate: asyncio.Event | None = None

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def chat(self, messages):
        self.calls.append(list(messages))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.responses:
            return self.responses.pop(0)
        return "ok"


class FakeRunner:
    """Records starts; each run writes a log, streams once and exits on the next tick."""

    def __init__(self, outputs_dir: Path, exit_code: int | None = 0, output: str = "agent output\n"):
        self.outputs_dir = Path(outputs_dir)
        self.exit_code = exit_code
        self.output = output
        self.starts: list[dict] = []
        self.exits: list[int | None] = []

    def start(self, **kwargs) -> RunHandle:
        self.starts.append(kwargs)
        run_id = f"{kwargs['channel_id']}-{len(self.starts)}"
        log_path = self.outputs_dir / "logs" / f"{kwargs['agent_name']}-{run_id}.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text(f"$ {kwargs['command_template']}\n\n{self.output}", encoding="utf-8")

        async def finish():
            await asyncio.sleep(0)
            if kwargs.get("on_stream_chunk"):
                kwargs["on_stream_chunk"](self.output)
            self.exits.append(self.exit_code)
            if kwargs.get("on_exit"):
                result = kwargs["on_exit"](self.exit_code)
                if inspect.isawaitable(result):
                    await result
            return self.exit_code

        task = asyncio.get_running_loop().create_task(finish())
        return RunHandle(
            run_id=run_id,
            log_file_path=log_path,
            command=kwargs["command_template"],
            task=task,
        )

    def get_stats(self) -> dict:
        return {"started": len(self.starts)}


@pytest.fixture
def tmp_dir(tmp_path):
    """Provide a temporary directory for test files."""
    return tmp_path


@pytest.fixture
def base_env(tmp_path):
    """Minimal valid environment: one model, the codex template."""
    workdir = tmp_path / "work"
    workdir.mkdir()
    return {
        "LLM_MODEL": "test-model",
        "CODEX_COMMAND_TEMPLATE": "codex exec {PROMPT_FILE}",
        "CODEX_WORKDIR": str(workdir),
        "DRAFTCRAFT_OUTPUTS_DIR": str(tmp_path / "outputs"),
    }


@pytest.fixture
def make_config(base_env):
    """Build a DraftConfig from the base environment plus overrides."""

    def _make(**overrides) -> DraftConfig:
        env = {**base_env, **overrides}
        return DraftConfig.load(env={k: v for k, v in env.items() if v is not None})

    return _make


@pytest.fixture
def config(make_config):
    return make_config(CLAUDE_COMMAND_TEMPLATE="claude -p {PROMPT_FILE}")


@pytest.fixture
def stub_chat():
    return StubChat()


@pytest.fixture
def fake_runner(config):
    return FakeRunner(config.outputs_dir)
