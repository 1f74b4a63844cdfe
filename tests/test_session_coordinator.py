import asyncio
from datetime import datetime, timezone

from src.realty_assistant.domain.chat_models import ChatMessage
from src.realty_assistant.services.session_coordinator import SessionCoordinator, new_session_token
from .utils import ExplodingPersistence, ScriptedPersistence


def _conversation(prefix: str, n: int):
    out = []
    for i in range(n):
        out.append(ChatMessage.user(f"{prefix} question {i}"))
        out.append(ChatMessage.assistant(f"{prefix} answer {i}"))
    return out


def test_first_recorded_canonical_id_wins():
    coord = SessionCoordinator(ScriptedPersistence())
    assert coord.record_canonical_id("conv_u1_1", "id-A") == "id-A"
    assert coord.record_canonical_id("conv_u1_1", "id-B") == "id-A"
    assert coord.canonical_id_for("conv_u1_1") == "id-A"


def test_concurrent_saves_keep_first_mapping():
    coord = SessionCoordinator(ScriptedPersistence())

    async def record(cid, delay):
        await asyncio.sleep(delay)
        return coord.record_canonical_id("conv_u1_2", cid)

    async def run():
        return await asyncio.gather(record("fast", 0), record("slow", 0.01))

    results = asyncio.run(run())
    assert results == ["fast", "fast"]
    assert coord.canonical_id_for("conv_u1_2") == "fast"


def test_switching_session_replaces_cache():
    t1_history = _conversation("T1", 2)
    t2_history = _conversation("T2", 1)
    persistence = ScriptedPersistence({"T1": t1_history, "T2": t2_history})
    coord = SessionCoordinator(persistence)

    async def run():
        await coord.resolve_and_restore("u1", "T1")
        await coord.append_and_get_context("u1", ChatMessage.user("T1 follow-up"))
        await coord.resolve_and_restore("u1", "T2")
        return await coord.snapshot("u1")

    cache = asyncio.run(run())
    assert [m.content for m in cache] == [m.content for m in t2_history]
    assert coord.loaded_token("u1") == "T2"


def test_switching_to_unknown_session_clears_cache():
    persistence = ScriptedPersistence({"T1": _conversation("T1", 1)})
    coord = SessionCoordinator(persistence)

    async def run():
        await coord.resolve_and_restore("u1", "T1")
        await coord.resolve_and_restore("u1", "T-new")
        return await coord.snapshot("u1")

    assert asyncio.run(run()) == []
    assert coord.loaded_token("u1") == "T-new"


def test_restore_uses_canonical_id_when_known():
    persistence = ScriptedPersistence({"canon-1": _conversation("C", 1)})
    coord = SessionCoordinator(persistence)
    coord.record_canonical_id("conv_u1_3", "canon-1")

    cache = asyncio.run(_restore_and_snapshot(coord, "u1", "conv_u1_3"))
    assert persistence.load_calls == ["canon-1"]
    assert len(cache) == 2


async def _restore_and_snapshot(coord, user, token):
    await coord.resolve_and_restore(user, token)
    return await coord.snapshot(user)


def test_same_loaded_token_skips_persistence():
    persistence = ScriptedPersistence({"T1": _conversation("T1", 1)})
    coord = SessionCoordinator(persistence)

    async def run():
        await coord.resolve_and_restore("u1", "T1")
        await coord.resolve_and_restore("u1", "T1")
        await coord.resolve_and_restore("u1", "T1")

    asyncio.run(run())
    assert persistence.load_calls == ["T1"]


def test_missing_token_is_synthesized_without_restore():
    persistence = ScriptedPersistence()
    coord = SessionCoordinator(persistence)

    token = asyncio.run(coord.resolve_and_restore("u1", None))
    assert token.startswith("conv_u1_")
    assert len(token) == len("conv_u1_") + 18
    assert persistence.load_calls == []
    assert coord.loaded_token("u1") == token


def test_missing_token_starts_empty_conversation():
    persistence = ScriptedPersistence({"T1": _conversation("T1", 2)})
    coord = SessionCoordinator(persistence)

    async def run():
        await coord.resolve_and_restore("u1", "T1")
        token = await coord.resolve_and_restore("u1", None)
        context = await coord.append_and_get_context("u1", ChatMessage.user("Fresh question"))
        return token, context

    token, context = asyncio.run(run())
    assert coord.loaded_token("u1") == token
    assert [m.content for m in context] == ["Fresh question"]


def test_new_session_token_format():
    now = datetime(2024, 3, 5, 14, 7, 9, 123456, tzinfo=timezone.utc)
    assert new_session_token("alice", now) == "conv_alice_202403051407091234"


def test_restore_failure_keeps_current_cache():
    coord = SessionCoordinator(ExplodingPersistence())

    async def run():
        await coord.append_and_get_context("u1", ChatMessage.user("kept"))
        token = await coord.resolve_and_restore("u1", "T9")
        return token, await coord.snapshot("u1")

    token, cache = asyncio.run(run())
    assert token == "T9"
    assert [m.content for m in cache] == ["kept"]


def test_context_is_last_ten_in_order():
    coord = SessionCoordinator(ScriptedPersistence())
    sent = [ChatMessage.user(f"message {i}") for i in range(15)]

    async def run():
        context = []
        for msg in sent:
            context = await coord.append_and_get_context("u1", msg)
        return context, await coord.snapshot("u1")

    context, full = asyncio.run(run())
    assert [m.content for m in context] == [f"message {i}" for i in range(5, 15)]
    assert len(full) == 15


def test_users_do_not_share_caches():
    coord = SessionCoordinator(ScriptedPersistence())

    async def run():
        await coord.append_and_get_context("u1", ChatMessage.user("from u1"))
        await coord.append_and_get_context("u2", ChatMessage.user("from u2"))
        return await coord.snapshot("u1"), await coord.snapshot("u2")

    first, second = asyncio.run(run())
    assert [m.content for m in first] == ["from u1"]
    assert [m.content for m in second] == ["from u2"]


def test_follow_up_sees_partial_reply_and_reply_lands_after_its_question():
    coord = SessionCoordinator(ScriptedPersistence())

    async def run():
        q1 = ChatMessage.user("What is the rent?")
        await coord.append_and_get_context("u1", q1)
        buf = await coord.begin_reply("u1", "T1", q1)
        buf.append("The rent is ")
        q2 = ChatMessage.user("And the deposit?")
        context = await coord.append_and_get_context("u1", q2)
        buf.append("$4,000 per month.")
        result = await coord.finish_reply(buf)
        return context, result, await coord.snapshot("u1")

    context, result, cache = asyncio.run(run())
    assert [(m.role, m.content) for m in context] == [
        ("user", "What is the rent?"),
        ("assistant", "The rent is "),
        ("user", "And the deposit?"),
    ]
    assert result.committed
    assert [m.content for m in cache] == ["What is the rent?", "The rent is $4,000 per month.", "And the deposit?"]


def test_two_streams_commit_in_question_order():
    coord = SessionCoordinator(ScriptedPersistence())

    async def run():
        q1 = ChatMessage.user("q1")
        await coord.append_and_get_context("u1", q1)
        b1 = await coord.begin_reply("u1", "T1", q1)
        q2 = ChatMessage.user("q2")
        await coord.append_and_get_context("u1", q2)
        b2 = await coord.begin_reply("u1", "T1", q2)
        await coord.finish_reply(b2, "a2")
        await coord.finish_reply(b1, "a1")
        return await coord.snapshot("u1")

    assert [m.content for m in asyncio.run(run())] == ["q1", "a1", "q2", "a2"]


def test_reply_is_not_written_into_a_different_conversation():
    persistence = ScriptedPersistence({"T2": _conversation("T2", 1)})
    coord = SessionCoordinator(persistence)

    async def run():
        await coord.resolve_and_restore("u1", "T1")
        q = ChatMessage.user("slow question")
        await coord.append_and_get_context("u1", q)
        buf = await coord.begin_reply("u1", "T1", q)
        await coord.resolve_and_restore("u1", "T2")
        result = await coord.finish_reply(buf, "late answer")
        return result, await coord.snapshot("u1")

    result, cache = asyncio.run(run())
    assert not result.committed
    assert [m.content for m in result.transcript] == ["slow question", "late answer"]
    assert "late answer" not in [m.content for m in cache]


def test_empty_reply_is_not_committed():
    coord = SessionCoordinator(ScriptedPersistence())

    async def run():
        q = ChatMessage.user("hello")
        await coord.append_and_get_context("u1", q)
        buf = await coord.begin_reply("u1", "T1", q)
        result = await coord.finish_reply(buf)
        return result, await coord.snapshot("u1")

    result, cache = asyncio.run(run())
    assert result.reply is None
    assert [m.content for m in cache] == ["hello"]


def test_forget_session_clears_loaded_cache_but_keeps_mapping():
    coord = SessionCoordinator(ScriptedPersistence())
    coord.record_canonical_id("T1", "canon-1")

    async def run():
        await coord.resolve_and_restore("u1", "T1")
        await coord.append_and_get_context("u1", ChatMessage.user("hi"))
        await coord.forget_session("u1", ["T1", "canon-1"])
        return await coord.snapshot("u1")

    assert asyncio.run(run()) == []
    assert coord.loaded_token("u1") is None
    assert coord.canonical_id_for("T1") == "canon-1"
