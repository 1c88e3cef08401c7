"""Slack front end for DraftCraft: one private work channel per draft, via Socket Mode.

Supports:
- Slash commands: /draft-new, /draft-finalize, /draft-reset, /draft-engine, /draft-close
- Owner messages in a work channel drive the refinement conversation
- Finalize/Close buttons (Block Kit)
- Agent output streamed back as code blocks, followed by exit status and a
  plain-language explanation

Work channels carry their owner in the topic (``draftcraft-owner:<user>``), so
sessions are rebuilt for channels seen again after a restart.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import TYPE_CHECKING

try:
    from slack_bolt.async_app import AsyncApp
    from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler

    HAS_SLACK = True
except ImportError:
    HAS_SLACK = False

from draftcraft.engine import DraftEngine
from draftcraft.errors import DraftCraftError, GuardRejected
from draftcraft.executor import parse_executor_mode
from draftcraft.llm import LlmClient
from draftcraft.runner import format_exit_code
from draftcraft.session import Session, SessionRegistry
from draftcraft.streaming import StreamFlusher

if TYPE_CHECKING:
    from draftcraft.config import DraftConfig

logger = logging.getLogger(__name__)

OWNER_TOPIC_PREFIX = "draftcraft-owner:"
FINALIZE_ACTION_ID = "draftcraft_finalize"
CLOSE_ACTION_ID = "draftcraft_close"
MAX_MESSAGE_CHARS = 1900
MAX_CODE_BLOCK_CHARS = 1700


def _require_slack():
    if not HAS_SLACK:
        raise ImportError(
            "slack-bolt and slack-sdk are required for the Slack bot. "
            "Install with: pip install 'draftcraft[slack]'"
        )


def chunk_text(text: str, max_length: int = MAX_MESSAGE_CHARS) -> list[str]:
    """Split ``text`` into pieces of at most ``max_length`` characters."""
    if len(text) <= max_length:
        return [text]
    return [text[i:i + max_length] for i in range(0, len(text), max_length)]


def code_block_chunks(text: str, max_length: int = MAX_CODE_BLOCK_CHARS) -> list[str]:
    """Wrap ``text`` in code blocks; embedded fences are neutralized."""
    safe = text.replace("```", "'''")
    return [f"```\n{chunk}\n```" for chunk in chunk_text(safe, max_length)]


def extract_owner_id(topic: str | None) -> str | None:
    if not topic or not topic.startswith(OWNER_TOPIC_PREFIX):
        return None
    owner_id = topic[len(OWNER_TOPIC_PREFIX):].strip()
    return owner_id or None


def work_channel_name(user_id: str) -> str:
    """Slack channel names: lowercase, at most 80 chars, [a-z0-9_-]."""
    slug = re.sub(r"[^a-z0-9_-]", "-", user_id.lower())
    return f"draft-{slug}-{int(time.time())}"[:80]


class DraftSlackBot:
    """Slack bot using Socket Mode (no public URL needed)."""

    def __init__(self, config: DraftConfig, engine: DraftEngine, app=None):
        if app is None:
            _require_slack()
            app = AsyncApp(token=config.slack.bot_token)
        self._config = config
        self._engine = engine
        self._app = app
        self._client = app.client
        self._handler = None
        self.sessions = SessionRegistry()
        self._tasks: set[asyncio.Task] = set()

        self._register_commands()
        self._register_events()
        self._register_actions()

    # --- Registration ---

    def _register_commands(self):
        @self._app.command("/draft-new")
        async def handle_new(ack, respond, command):
            await ack()
            try:
                channel_id = await self.create_work_channel(command["user_id"])
            except Exception as e:
                logger.exception("Creating a work channel failed")
                await respond(text=f"Could not create a work channel: {e}")
                return
            await respond(text=f"Work channel created: <#{channel_id}>")

        @self._app.command("/draft-finalize")
        async def handle_finalize(ack, respond, command):
            await ack()
            session = await self._owned_session(command["channel_id"], command["user_id"], respond)
            if session:
                self._spawn(self.finalize_and_run(session, command["channel_id"], command["user_id"]))

        @self._app.command("/draft-reset")
        async def handle_reset(ack, respond, command):
            await ack()
            session = await self._owned_session(command["channel_id"], command["user_id"], respond)
            if session:
                session.reset()
                await respond(text="Conversation cleared.")

        @self._app.command("/draft-engine")
        async def handle_engine(ack, respond, command):
            await ack()
            session = await self._owned_session(command["channel_id"], command["user_id"], respond)
            if session:
                await respond(text=self.change_engine(session, command.get("text", "")))

        @self._app.command("/draft-close")
        async def handle_close(ack, respond, command):
            await ack()
            session = await self._owned_session(command["channel_id"], command["user_id"], respond)
            if session:
                await respond(text="Closing this work channel.")
                await self.close_work_channel(command["channel_id"])

    def _register_events(self):
        @self._app.event("message")
        async def handle_message(event):
            if event.get("bot_id") or event.get("subtype"):
                return
            text = (event.get("text") or "").strip()
            channel_id = event.get("channel")
            user_id = event.get("user")
            if not text or not channel_id or not user_id:
                return
            session = await self.ensure_session(channel_id)
            if session is None or session.owner_id != user_id:
                return
            self._spawn(self.respond(session, channel_id, text))

        @self._app.event("channel_archive")
        async def handle_archive(event):
            self.sessions.remove(event.get("channel", ""))

    def _register_actions(self):
        @self._app.action(FINALIZE_ACTION_ID)
        async def handle_finalize_button(ack, body, respond):
            await ack()
            channel_id = body["channel"]["id"]
            user_id = body["user"]["id"]
            session = await self._owned_session(channel_id, user_id, respond)
            if session:
                self._spawn(self.finalize_and_run(session, channel_id, user_id))

        @self._app.action(CLOSE_ACTION_ID)
        async def handle_close_button(ack, body, respond):
            await ack()
            channel_id = body["channel"]["id"]
            session = await self._owned_session(channel_id, body["user"]["id"], respond)
            if session:
                await self.close_work_channel(channel_id)

    # --- Sessions ---

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def ensure_session(self, channel_id: str) -> Session | None:
        """Session for a work channel, rebuilt from the channel topic if needed."""
        session = self.sessions.get(channel_id)
        if session is not None:
            return session
        try:
            info = await self._client.conversations_info(channel=channel_id)
        except Exception as e:
            logger.warning(f"Could not look up channel {channel_id}: {e}")
            return None
        topic = ((info.get("channel") or {}).get("topic") or {}).get("value")
        owner_id = extract_owner_id(topic)
        if owner_id is None:
            return None
        return self.sessions.ensure(channel_id, lambda: self._engine.new_session(channel_id, owner_id))

    async def _owned_session(self, channel_id: str, user_id: str, respond) -> Session | None:
        session = await self.ensure_session(channel_id)
        if session is None:
            await respond(text="This channel is not a DraftCraft work channel.")
            return None
        if session.owner_id != user_id:
            await respond(text="Only the owner of this work channel can do that.")
            return None
        return session

    async def create_work_channel(self, user_id: str) -> str:
        created = await self._client.conversations_create(
            name=work_channel_name(user_id), is_private=True,
        )
        channel_id = created["channel"]["id"]
        await self._client.conversations_setTopic(
            channel=channel_id, topic=f"{OWNER_TOPIC_PREFIX}{user_id}",
        )
        await self._client.conversations_invite(channel=channel_id, users=user_id)
        self.sessions.ensure(channel_id, lambda: self._engine.new_session(channel_id, user_id))
        await self._client.chat_postMessage(
            channel=channel_id,
            text="Describe what you want done. Finalize when the instruction is ready.",
            blocks=self._build_panel_blocks(user_id),
        )
        return channel_id

    async def close_work_channel(self, channel_id: str):
        self.sessions.remove(channel_id)
        await self._client.conversations_archive(channel=channel_id)
        logger.info("Work channel %s closed", channel_id)

    def change_engine(self, session: Session, arg: str) -> str:
        arg = arg.strip()
        if not arg:
            return f"Executor mode: `{session.executor_mode.value}`"
        mode = parse_executor_mode(arg)
        if mode is None:
            return "Invalid mode. Use `/draft-engine codex|claude|auto`."
        session.executor_mode = mode
        return f"Executor mode set to `{mode.value}`."

    # --- Conversation ---

    async def send_long_message(self, channel_id: str, text: str):
        for chunk in chunk_text(text):
            await self._client.chat_postMessage(channel=channel_id, text=chunk)

    async def respond(self, session: Session, channel_id: str, text: str):
        """Run one chat turn and post the reply."""
        try:
            turn = await self._engine.respond(session, text)
        except GuardRejected as e:
            await self._client.chat_postMessage(channel=channel_id, text=str(e))
            return
        except DraftCraftError as e:
            await self._client.chat_postMessage(channel=channel_id, text=f":x: Chat request failed.\n{e}")
            return
        except Exception as e:
            logger.exception("Chat turn failed in %s", channel_id)
            await self._client.chat_postMessage(channel=channel_id, text=f":x: Chat request failed.\n{e}")
            return

        if turn.resolved_projects:
            await self._client.chat_postMessage(
                channel=channel_id,
                text=f"_Using project notes on {', '.join(turn.resolved_projects)}._",
            )
        await self.send_long_message(channel_id, turn.reply or "No response generated.")

    async def finalize_and_run(self, session: Session, channel_id: str, user_id: str):
        """Finalize, run the agent with streamed output, then explain the result."""

        async def emit(text: str):
            if not text.strip():
                return
            for block in code_block_chunks(text):
                await self._client.chat_postMessage(channel=channel_id, text=block)

        flusher = StreamFlusher(emit)

        async def on_exit(exit_code: int | None):
            await flusher.close()

        try:
            start = await self._engine.finalize_and_run(
                session,
                user_id,
                on_stream_chunk=flusher.feed,
                on_exit=on_exit,
                channel_id=channel_id,
            )
        except DraftCraftError as e:
            await self._client.chat_postMessage(channel=channel_id, text=f":x: Finalize failed.\n{e}")
            return
        except Exception as e:
            logger.exception("Finalize failed in %s", channel_id)
            await self._client.chat_postMessage(channel=channel_id, text=f":x: Finalize failed.\n{e}")
            return

        await self._client.chat_postMessage(
            channel=channel_id,
            text="\n".join([
                f"<@{user_id}> {start.selection.label} started ({start.selection.reason}).",
                f"run id: `{start.run_id}`",
                f"prompt: `{start.prompt_path}`",
            ]),
        )

        exit_code = await start.handle.wait()
        await self._client.chat_postMessage(
            channel=channel_id,
            text="\n".join([
                f"{start.selection.label} run finished.",
                f"exit code: `{format_exit_code(exit_code)}`",
                f"log: `{start.log_file_path}`",
            ]),
        )
        explanation = await self._engine.explain(start.selection, exit_code, start.log_file_path)
        await self.send_long_message(channel_id, explanation)

    # --- Block Kit builders ---

    @staticmethod
    def _build_panel_blocks(user_id: str) -> list[dict]:
        return [
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": (
                        f"<@{user_id}> this is your DraftCraft work channel.\n"
                        "Describe the work; press *Finalize* to build the instruction and run it."
                    ),
                },
            },
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "Finalize"},
                        "style": "primary",
                        "action_id": FINALIZE_ACTION_ID,
                    },
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "Close"},
                        "style": "danger",
                        "action_id": CLOSE_ACTION_ID,
                    },
                ],
            },
        ]

    # --- Lifecycle ---

    async def start(self):
        """Start the Slack bot in Socket Mode (runs until stopped)."""
        _require_slack()
        self._handler = AsyncSocketModeHandler(self._app, self._config.slack.app_token)
        logger.info("Slack bot starting in Socket Mode")
        await self._handler.start_async()

    async def stop(self):
        if self._handler:
            await self._handler.close_async()
            logger.info("Slack bot stopped")


async def run_bot(config: DraftConfig):
    """Build the engine and run the bot until interrupted."""
    config.require_slack()
    _require_slack()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    engine = DraftEngine(config, LlmClient(config.llm))
    bot = DraftSlackBot(config, engine)
    try:
        await bot.start()
    finally:
        await bot.stop()
