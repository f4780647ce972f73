import asyncio

import pytest

from core.errors import UsageError
from core.events import RunEventType, RunState, ToolDef
from core.options import RunOptions
from orchestrator.chat import ChatSession, next_chat
from orchestrator.run import Run
from state.persistence import ChatStateDB

from fakes import DONE, ScriptedTransport, TransportQueue


def run_async(coro):
    return asyncio.run(coro)


def chat_turn(token, content):
    stdout = {"done": token is None, "content": content}
    if token is not None:
        stdout["state"] = token
    return ScriptedTransport([
        ("body", {"run": {"type": "runStart"}}),
        ("body", {"run": {"type": "runFinish", "output": content}}),
        ("body", {"stdout": stdout}),
        ("body", DONE),
    ])


def test_session_threads_tokens_across_turns():
    factory = TransportQueue(
        chat_turn("tok1", "Hi, who are you?"),
        chat_turn("tok2", "Nice to meet you, Ada."),
        chat_turn(None, "Bye."),
    )
    starts = []

    async def scenario():
        run = Run("evaluate", tools=[ToolDef(chat=True, instructions="chat")], transport_factory=factory)
        session = ChatSession(run)
        session.on(RunEventType.RUN_START, starts.append)

        assert await session.reply() == "Hi, who are you?"
        assert session.chat_state == "tok1"
        assert session.current is run

        assert await session.reply("I am Ada") == "Nice to meet you, Ada."
        assert session.chat_state == "tok2"
        assert session.current is not run

        assert await session.reply("bye") == "Bye."
        return session

    session = run_async(scenario())
    assert session.state == RunState.FINISHED
    assert len(session.turns) == 3
    assert len(starts) == 3
    requests = [t.request.options for t in factory.created]
    assert [o.chat_state for o in requests] == [None, "tok1", "tok2"]
    assert [o.input for o in requests] == ["", "I am Ada", "bye"]


def test_send_after_finish_is_usage_error():
    factory = TransportQueue(chat_turn(None, "done"))

    async def scenario():
        session = ChatSession(Run("evaluate", tools=[ToolDef()], transport_factory=factory))
        await session.reply("hi")
        with pytest.raises(UsageError):
            session.send("again")

    run_async(scenario())
    assert len(factory.created) == 1


def test_next_chat_rejects_running_run():
    transport = ScriptedTransport([("body", {"type": "runStart"})], hold=True)

    async def scenario():
        run = Run("evaluate", tools=[ToolDef()], transport_factory=TransportQueue(transport)).start()
        while run.state != RunState.RUNNING:
            await asyncio.sleep(0)
        with pytest.raises(UsageError):
            next_chat(run, "too soon")
        run.close()
        await run.wait()

    run_async(scenario())


def test_session_persists_and_resumes(tmp_path):
    store_path = tmp_path / "chat.db"
    tools = [ToolDef(name="bot", chat=True, instructions="be nice")]

    async def first_process():
        store = ChatStateDB(store_path)
        run = Run("evaluate", tools=tools, transport_factory=TransportQueue(chat_turn("tok1", "hello")))
        session = ChatSession(run, session_id="chat-1", store=store)
        await session.reply("hi")
        await store.close()

    async def second_process():
        store = ChatStateDB(store_path)
        resumed = ScriptedTransport([("body", {"stdout": {"done": True, "content": "welcome back"}})])
        session = await ChatSession.resume(
            "chat-1", store, TransportQueue(resumed), options=RunOptions(disable_cache=True)
        )
        assert session.current.state == RunState.CREATING
        answer = await session.reply("I'm back")
        row = await store.get("chat-1")
        await store.close()
        return resumed, answer, row

    run_async(first_process())
    resumed, answer, row = run_async(second_process())

    assert answer == "welcome back"
    request = resumed.request
    assert request.options.chat_state == "tok1"
    assert request.options.input == "I'm back"
    assert request.options.disable_cache is True
    assert request.tools[0].instructions == "be nice"
    assert row["chat_state"] is None


def test_resume_unknown_session(tmp_path):
    async def scenario():
        store = ChatStateDB(tmp_path / "chat.db")
        try:
            with pytest.raises(KeyError):
                await ChatSession.resume("missing", store, TransportQueue())
        finally:
            await store.close()

    run_async(scenario())
