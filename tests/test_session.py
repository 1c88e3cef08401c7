"""Tests for draftcraft.session: history trimming, guards and the registry."""

import pytest

from draftcraft.errors import AlreadyFinalizing, Busy, EmptyHistory
from draftcraft.executor import ExecutorMode
from draftcraft.llm import ChatMessage, Role
from draftcraft.session import Session, SessionRegistry


def _session(**kwargs) -> Session:
    return Session(session_id="C1", owner_id="U1", system_prompt="be helpful", **kwargs)


class TestHistory:
    def test_starts_with_system_message(self):
        session = _session()
        assert len(session.history) == 1
        assert session.history[0].role is Role.SYSTEM
        assert session.history[0].content == "be helpful"

    def test_rejects_history_without_leading_system(self):
        with pytest.raises(ValueError):
            _session(history=[ChatMessage.user("hi")])

    def test_no_trim_at_limit(self):
        session = _session()
        for i in range(10):
            session.append_and_trim(ChatMessage.user(f"m{i}"), 10)
        assert len(session.history) == 11

    @pytest.mark.parametrize("max_messages,count", [(10, 11), (10, 57), (30, 31), (1, 5), (0, 3)])
    def test_trim_keeps_system_and_most_recent(self, max_messages, count):
        session = _session()
        for i in range(count):
            role = ChatMessage.user if i % 2 == 0 else ChatMessage.assistant
            session.append_and_trim(role(f"m{i}"), max_messages)
            assert session.history[0].role is Role.SYSTEM
            assert all(m.role is not Role.SYSTEM for m in session.history[1:])

        assert len(session.history) == max_messages + 1
        kept = [m.content for m in session.history[1:]]
        assert kept == [f"m{i}" for i in range(count - max_messages, count)]

    def test_negative_limit_rejected(self):
        session = _session()
        with pytest.raises(ValueError):
            session.append_and_trim(ChatMessage.user("hi"), -1)
        assert len(session.history) == 1

    def test_format_history_for_finalizer(self):
        session = _session()
        session.append_and_trim(ChatMessage.user("add login"), 30)
        session.append_and_trim(ChatMessage.assistant("which provider?"), 30)
        assert session.format_history_for_finalizer() == "User: add login\n\nAssistant: which provider?"

    def test_format_empty_history_raises(self):
        with pytest.raises(EmptyHistory):
            _session().format_history_for_finalizer()

    def test_reset(self):
        session = _session()
        session.append_and_trim(ChatMessage.user("hello"), 30)
        session.latest_prompt_text = "do it"
        session.latest_prompt_path = "/tmp/p.md"
        old_cache = session.probe_cache

        session.reset()

        assert [m.role for m in session.history] == [Role.SYSTEM]
        assert session.probe_cache is not old_cache
        assert len(session.probe_cache) == 0
        assert session.latest_prompt_text is None
        assert session.latest_prompt_path is None

    def test_reset_keeps_executor_mode(self):
        session = _session(executor_mode=ExecutorMode.AUTO)
        session.reset()
        assert session.executor_mode is ExecutorMode.AUTO


class TestGuards:
    def test_turn_guard_rejects_second_turn(self):
        session = _session()
        session.begin_turn()
        with pytest.raises(Busy):
            session.begin_turn()
        session.end_turn()
        session.begin_turn()
        assert session.busy

    def test_turn_context_manager_releases_on_error(self):
        session = _session()
        with pytest.raises(RuntimeError):
            with session.turn():
                assert session.busy
                raise RuntimeError("boom")
        assert not session.busy

    def test_finalize_guard(self):
        session = _session()
        with session.finalizing_guard():
            with pytest.raises(AlreadyFinalizing):
                session.begin_finalize()
        assert not session.finalizing

    def test_guards_are_independent(self):
        session = _session()
        session.begin_turn()
        session.begin_finalize()
        assert session.busy and session.finalizing


class TestSessionRegistry:
    def test_create_get_remove(self):
        registry = SessionRegistry()
        session = registry.create(_session())
        assert "C1" in registry
        assert len(registry) == 1
        assert registry.get("C1") is session
        assert registry.remove("C1") is session
        assert "C1" not in registry
        assert registry.remove("C1") is None

    def test_create_duplicate_raises(self):
        registry = SessionRegistry()
        registry.create(_session())
        with pytest.raises(KeyError):
            registry.create(_session())

    def test_ensure_uses_factory_once(self):
        registry = SessionRegistry()
        calls = []

        def factory():
            calls.append(1)
            return _session()

        first = registry.ensure("C1", factory)
        second = registry.ensure("C1", factory)
        assert first is second
        assert len(calls) == 1

    def test_registries_are_independent(self):
        a, b = SessionRegistry(), SessionRegistry()
        a.create(_session())
        assert "C1" not in b
