"""Supervised agent runs on a pseudo-terminal.

Each run:
- substitutes identity placeholders into the launch template
- creates its log file and writes the command line before spawning
- runs the command through the host shell with a pty as stdin/stdout/stderr
- appends raw pty bytes to the log, streams cleaned text to a callback
- reports exactly one exit code, then closes the log

The caller gets a RunHandle back immediately. Failures after that point
(including a failed spawn) are only observable through the exit code and
the log: a spawn failure is logged as ``[spawn error]`` and reported as a
``None`` exit code, as are unexpected errors and cancellation.
"""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import inspect
import logging
import os
import re
import signal
import struct
import termios
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from draftcraft.errors import SpawnFailure

logger = logging.getLogger(__name__)

TERMINAL_ROWS = 40
TERMINAL_COLS = 120
READ_SIZE = 4096
DRAIN_GRACE_SECONDS = 2.0  # max wait for pty EOF after the child exits
KILL_GRACE_SECONDS = 5.0

StreamCallback = Callable[[str], None]
ExitCallback = Callable[[int | None], "Awaitable[None] | None"]

# CSI, OSC, then other escapes (charset selection, keypad modes); leftover C0
# controls are dropped separately (newline and tab survive)
ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)?"
    r"|\x1b[ -/]*[0-~]"
)
CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")


def timestamp() -> str:
    """Filesystem-safe UTC timestamp, e.g. 2026-01-02T03-04-05-678Z."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"


def strip_terminal(text: str) -> str:
    """Remove terminal control sequences and normalize carriage returns."""
    text = ANSI_RE.sub("", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return CONTROL_RE.sub("", text)


def format_exit_code(code: int | None) -> str:
    return "null" if code is None else str(code)


def render_command(
    template: str,
    *,
    prompt_file_path: str,
    channel_id: str,
    owner_id: str,
    workdir: str,
) -> str:
    """Literal placeholder substitution. Templates are trusted configuration."""
    return (
        template
        .replace("{PROMPT_FILE}", prompt_file_path)
        .replace("{CHANNEL_ID}", channel_id)
        .replace("{OWNER_ID}", owner_id)
        .replace("{WORKDIR}", workdir)
    )


def build_agent_env(
    *,
    prompt: str,
    prompt_file_path: str,
    owner_id: str,
    channel_id: str,
    workdir: str,
) -> dict[str, str]:
    env = dict(os.environ)
    env.setdefault("TERM", "xterm-256color")
    env.update({
        "DRAFTCRAFT_PROMPT": prompt,
        "DRAFTCRAFT_PROMPT_FILE": prompt_file_path,
        "DRAFTCRAFT_OWNER_ID": owner_id,
        "DRAFTCRAFT_CHANNEL_ID": channel_id,
        "DRAFTCRAFT_WORKDIR": workdir,
    })
    return env


def _set_window_size(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


class RunLog:
    """Append-only transcript of one run."""

    def __init__(self, path: Path):
        self.path = path
        path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = open(path, "ab", buffering=0)

    def append_bytes(self, data: bytes) -> None:
        self._fh.write(data)

    def append_text(self, text: str) -> None:
        self._fh.write(text.encode("utf-8"))

    def close(self) -> None:
        self._fh.close()


@dataclass
class RunHandle:
    """A started run. ``task`` resolves exactly once, to the exit code."""

    run_id: str
    log_file_path: Path
    command: str
    task: asyncio.Future

    async def wait(self) -> int | None:
        return await asyncio.shield(self.task)

    @property
    def done(self) -> bool:
        return self.task.done()

    @property
    def exit_code(self) -> int | None:
        if not self.task.done():
            raise RuntimeError(f"Run {self.run_id} has not exited yet")
        return self.task.result()


class ProcessRunner:
    """Starts external agents on a pseudo-terminal and supervises them."""

    def __init__(
        self,
        outputs_dir: str | Path,
        *,
        timeout_seconds: float | None = None,
        rows: int = TERMINAL_ROWS,
        cols: int = TERMINAL_COLS,
    ):
        self.outputs_dir = Path(outputs_dir)
        self.timeout_seconds = timeout_seconds
        self.rows = rows
        self.cols = cols
        self._active: dict[str, RunHandle] = {}
        self._started = 0

    @property
    def logs_dir(self) -> Path:
        return self.outputs_dir / "logs"

    def start(
        self,
        *,
        agent_name: str,
        command_template: str,
        prompt: str,
        prompt_file_path: str,
        owner_id: str,
        channel_id: str,
        workdir: str,
        on_stream_chunk: StreamCallback | None = None,
        on_exit: ExitCallback | None = None,
    ) -> RunHandle:
        """Start a run and return its handle without waiting for it.

        Must be called from inside a running event loop.
        """
        loop = asyncio.get_running_loop()
        run_id = f"{channel_id}-{time.monotonic_ns()}"
        log_path = self.logs_dir / f"{agent_name}-{timestamp()}-{run_id}.log"
        command = render_command(
            command_template,
            prompt_file_path=prompt_file_path,
            channel_id=channel_id,
            owner_id=owner_id,
            workdir=workdir,
        )

        log = RunLog(log_path)
        log.append_text(f"$ {command}\n\n")

        env = build_agent_env(
            prompt=prompt,
            prompt_file_path=prompt_file_path,
            owner_id=owner_id,
            channel_id=channel_id,
            workdir=workdir,
        )
        task = loop.create_task(
            self._supervise(run_id, log, command, env, workdir, on_stream_chunk, on_exit),
            name=f"draftcraft-run-{run_id}",
        )
        handle = RunHandle(run_id=run_id, log_file_path=log_path, command=command, task=task)
        self._active[run_id] = handle
        self._started += 1
        task.add_done_callback(lambda _t: self._active.pop(run_id, None))
        logger.info("Run %s started (%s): %s", run_id, agent_name, command)
        return handle

    async def _supervise(
        self,
        run_id: str,
        log: RunLog,
        command: str,
        env: dict[str, str],
        workdir: str,
        on_stream_chunk: StreamCallback | None,
        on_exit: ExitCallback | None,
    ) -> int | None:
        cancelled = False
        try:
            try:
                exit_code = await self._execute(log, command, env, workdir, on_stream_chunk)
            except SpawnFailure as e:
                logger.warning("Run %s failed to spawn: %s", run_id, e)
                self._note(log, f"\n[spawn error] {e}\n")
                exit_code = None
            except asyncio.CancelledError:
                logger.warning("Run %s cancelled", run_id)
                self._note(log, "\n[cancelled]\n")
                exit_code = None
                cancelled = True
            except Exception as e:
                logger.exception("Run %s failed", run_id)
                self._note(log, f"\n[run error] {e}\n")
                exit_code = None

            self._note(log, f"\n[exit code] {format_exit_code(exit_code)}\n")
            logger.info("Run %s exited: %s", run_id, format_exit_code(exit_code))

            if on_exit is not None:
                try:
                    result = on_exit(exit_code)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.exception("Exit callback for run %s failed", run_id)
                    self._note(log, f"\n[exit callback error] {e}\n")
            if cancelled:
                raise asyncio.CancelledError
            return exit_code
        finally:
            log.close()

    @staticmethod
    def _note(log: RunLog, text: str) -> None:
        try:
            log.append_text(text)
        except OSError as e:
            logger.warning("Could not write to %s: %s", log.path, e)

    async def _execute(
        self,
        log: RunLog,
        command: str,
        env: dict[str, str],
        workdir: str,
        on_stream_chunk: StreamCallback | None,
    ) -> int | None:
        loop = asyncio.get_running_loop()
        try:
            master_fd, slave_fd = os.openpty()
        except OSError as e:
            raise SpawnFailure(f"could not open a pseudo-terminal: {e}") from e

        try:
            _set_window_size(slave_fd, self.rows, self.cols)
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=workdir,
                env=env,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            os.close(master_fd)
            raise SpawnFailure(str(e)) from e
        finally:
            os.close(slave_fd)

        eof = asyncio.Event()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        def stream(data: bytes, final: bool = False) -> None:
            if on_stream_chunk is None:
                return
            text = strip_terminal(decoder.decode(data, final))
            if text:
                try:
                    on_stream_chunk(text)
                except Exception:
                    logger.exception("Stream callback failed")

        def on_readable() -> None:
            try:
                data = os.read(master_fd, READ_SIZE)
            except OSError:
                # EIO: every slave end is closed
                data = b""
            if not data:
                loop.remove_reader(master_fd)
                # a trailing partial UTF-8 sequence becomes U+FFFD
                stream(b"", final=True)
                eof.set()
                return
            log.append_bytes(data)
            stream(data)

        loop.add_reader(master_fd, on_readable)
        try:
            try:
                returncode = await asyncio.wait_for(proc.wait(), timeout=self.timeout_seconds)
            except asyncio.TimeoutError:
                log.append_text(f"\n[timeout] exceeded {self.timeout_seconds:g}s\n")
                await self._terminate(proc)
                returncode = None
            except asyncio.CancelledError:
                await self._terminate(proc)
                raise

            try:
                await asyncio.wait_for(eof.wait(), timeout=DRAIN_GRACE_SECONDS)
            except asyncio.TimeoutError:
                logger.debug("pty still open after child exit (orphaned descendant?)")
        finally:
            loop.remove_reader(master_fd)
            os.close(master_fd)

        if returncode is None or returncode < 0:
            return None
        return returncode

    @staticmethod
    async def _terminate(proc: asyncio.subprocess.Process) -> None:
        """SIGTERM the run's process group, SIGKILL if it lingers."""
        for sig in (signal.SIGTERM, signal.SIGKILL):
            try:
                os.killpg(proc.pid, sig)
            except ProcessLookupError:
                return
            try:
                await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE_SECONDS)
                return
            except asyncio.TimeoutError:
                continue

    def active_runs(self) -> list[RunHandle]:
        return list(self._active.values())

    def get_stats(self) -> dict:
        return {
            "started": self._started,
            "active": len(self._active),
            "timeout_seconds": self.timeout_seconds,
        }
