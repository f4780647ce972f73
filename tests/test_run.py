import asyncio

import pytest

from core.errors import RunError, UsageError
from core.events import CallFrame, RunEventType, RunState, ToolDef
from core.options import GlobalOptions, RunOptions
from engines.protocol import TransportExit
from orchestrator.run import ABORTED, INCOMPLETE, Run

from fakes import DONE, ScriptedTransport, TransportQueue, sse


def run_async(coro):
    return asyncio.run(coro)


def make_run(*transports, options=None, tools=None):
    return Run(
        "evaluate",
        tools=tools or [ToolDef(instructions="echo hi")],
        options=options or RunOptions(),
        global_options=GlobalOptions(),
        transport_factory=TransportQueue(*transports),
    )


async def until_running(run):
    while run.state == RunState.CREATING:
        await asyncio.sleep(0)


def test_single_shot_success():
    transport = ScriptedTransport([
        ("body", {"run": {"type": "runStart", "id": "r1"}}),
        ("body", {"run": {"type": "runFinish", "id": "r1", "output": "hi"}}),
        ("body", DONE),
    ])

    async def scenario():
        run = make_run(transport, options=RunOptions(disable_cache=True))
        run.start()
        assert await run.text() == "hi"
        return run

    run = run_async(scenario())
    assert run.state == RunState.FINISHED
    body = transport.request.body()
    assert body["toolDefs"][0]["instructions"] == "echo hi"
    assert body["disableCache"] is True


def test_json_decodes_output():
    transport = ScriptedTransport([
        ("body", {"type": "runFinish", "output": '{"answer": 42}'}),
    ])

    async def scenario():
        run = make_run(transport).start()
        return await run.json()

    assert run_async(scenario()) == {"answer": 42}


def test_chat_turn_reaches_continue_and_threads_token():
    first = ScriptedTransport([
        ("body", {"run": {"type": "runStart", "id": "r1"}}),
        ("body", {"stdout": {"done": False, "state": "tok1", "content": "hello", "toolID": "t-1"}}),
        ("body", DONE),
    ])
    second = ScriptedTransport([
        ("body", {"stdout": {"done": True, "content": "bye"}}),
        ("body", DONE),
    ])
    factory = TransportQueue(first, second)

    async def scenario():
        run = Run("evaluate", tools=[ToolDef(chat=True)], transport_factory=factory).start()
        assert await run.text() == "hello"
        assert run.state == RunState.CONTINUE
        assert run.current_chat_state() == "tok1"
        assert run.responding_tool_id == "t-1"

        following = run.next_chat("next")
        assert following is not run
        assert following.options.chat_state == "tok1"
        assert following.options.input == "next"
        assert await following.text() == "bye"
        return run, following

    run, following = run_async(scenario())
    assert run.state == RunState.CONTINUE
    assert following.state == RunState.FINISHED
    assert following.current_chat_state() is None
    assert second.request.options.chat_state == "tok1"
    assert second.request.options.input == "next"


def test_structured_chat_state_is_reencoded():
    transport = ScriptedTransport([
        ("body", {"stdout": {"done": False, "state": {"messages": [1, 2]}}}),
    ])

    async def scenario():
        run = make_run(transport).start()
        await run.text()
        return run

    run = run_async(scenario())
    assert run.current_chat_state() == '{"messages": [1, 2]}'


def test_run_finish_with_chat_state_continues():
    transport = ScriptedTransport([
        ("body", {"run": {"type": "runFinish", "output": "q?", "chatState": "tok9"}}),
    ])

    async def scenario():
        run = make_run(transport).start()
        await run.text()
        return run

    run = run_async(scenario())
    assert run.state == RunState.CONTINUE
    assert run.chat_state == "tok9"
    assert run.output == "q?"


def test_close_aborts_run_once_transport_reports():
    transport = ScriptedTransport([("body", {"type": "runStart"})], hold=True)

    async def scenario():
        run = make_run(transport).start()
        await until_running(run)
        run.close()
        assert run.state == RunState.RUNNING
        with pytest.raises(RunError) as exc:
            await run.text()
        run.close()
        return run, exc.value

    run, error = run_async(scenario())
    assert run.state == RunState.ERROR
    assert run.err == ABORTED
    assert error.message == ABORTED
    assert transport.cancel_calls == 1


def test_prompt_without_permission_fails_and_cancels_once():
    transport = ScriptedTransport([
        ("body", {"run": {"type": "runStart"}}),
        ("body", {"prompt": {"type": "prompt", "id": "p1", "message": "Name?", "fields": ["name"]}}),
        ("body", {"prompt": {"type": "prompt", "id": "p2", "message": "Again?"}}),
    ], hold=True)
    seen = []

    async def scenario():
        run = make_run(transport)
        run.on(RunEventType.PROMPT, seen.append)
        run.start()
        with pytest.raises(RunError):
            await run.text()
        await run.wait()
        return run

    run = run_async(scenario())
    assert run.state == RunState.ERROR
    assert run.err.startswith("prompt occurred when prompt was not allowed: Message: Name?")
    assert "Fields: ['name']" in run.err
    assert transport.cancel_calls == 1
    assert seen == []


def test_prompt_delivered_when_allowed():
    transport = ScriptedTransport([
        ("body", {"type": "prompt", "id": "p1", "message": "Name?", "fields": ["name"], "sensitive": True}),
        ("body", {"type": "runFinish", "output": "ok"}),
    ])
    seen = []

    async def scenario():
        run = make_run(transport, options=RunOptions(prompt=True))
        run.on(RunEventType.PROMPT, seen.append)
        run.start()
        return await run.text()

    assert run_async(scenario()) == "ok"
    assert len(seen) == 1
    assert seen[0].fields == ["name"]
    assert seen[0].sensitive is True
    assert transport.cancel_calls == 0


def test_state_never_changes_after_finished():
    transport = ScriptedTransport([
        ("body", {"type": "runFinish", "output": "done"}),
        ("body", {"stdout": {"done": True, "content": "done"}}),
        ("body", {"stdout": {"done": False, "state": "late"}}),
        ("body", {"type": "runFinish", "error": "boom"}),
        ("body", {"prompt": {"type": "prompt", "id": "p1"}}),
    ], exit=TransportExit(aborted=True))

    async def scenario():
        run = make_run(transport).start()
        await run.wait()
        return run

    run = run_async(scenario())
    assert run.state == RunState.FINISHED
    assert run.output == "done"
    assert run.err == ""
    assert run.current_chat_state() is None
    assert transport.cancel_calls == 0


def test_chat_state_after_run_finish_continues():
    first = ScriptedTransport([
        ("body", {"run": {"type": "runStart", "id": "r1"}}),
        ("body", {"run": {"type": "runFinish", "id": "r1", "output": "hello"}}),
        ("body", {"stdout": {"done": False, "state": "tok1", "content": "hello"}}),
        ("body", DONE),
    ])
    second = ScriptedTransport([("body", {"type": "runFinish", "output": "ok"})])
    factory = TransportQueue(first, second)

    async def scenario():
        run = Run("evaluate", tools=[ToolDef(chat=True)], transport_factory=factory).start()
        text = await run.text()
        following = run.next_chat("more")
        await following.text()
        return run, text

    run, text = run_async(scenario())
    assert text == "hello"
    assert run.state == RunState.CONTINUE
    assert run.current_chat_state() == "tok1"
    assert second.request.options.chat_state == "tok1"


def test_run_finish_after_chat_state_keeps_continue():
    transport = ScriptedTransport([
        ("body", {"run": {"type": "runStart", "id": "r1"}}),
        ("body", {"stdout": {"done": False, "state": "tok1", "content": "reply"}}),
        ("body", {"run": {"type": "runFinish", "id": "r1", "output": "reply"}}),
        ("body", DONE),
    ])

    async def scenario():
        run = make_run(transport).start()
        return run, await run.text()

    run, text = run_async(scenario())
    assert text == "reply"
    assert run.state == RunState.CONTINUE
    assert run.current_chat_state() == "tok1"


def test_run_finish_output_wins_over_plain_stdout():
    transport = ScriptedTransport([
        ("events", sse({"type": "runFinish", "output": '{"answer": 1}'})),
        ("stdout", b"answer: 1\n"),
    ])

    async def scenario():
        run = make_run(transport).start()
        return run, await run.json()

    run, result = run_async(scenario())
    assert result == {"answer": 1}
    assert run.state == RunState.FINISHED


class RecordingLog:
    def __init__(self):
        self.events = []

    def info(self, event, **context):
        self.events.append(event)

    warning = info


def test_duplicate_run_finish_is_ignored():
    transport = ScriptedTransport([
        ("body", {"type": "runFinish", "output": "first"}),
        ("body", {"type": "runFinish", "output": "second"}),
    ])
    log = RecordingLog()

    async def scenario():
        run = make_run(transport)
        run.trace.log = log
        run.start()
        return await run.text()

    assert run_async(scenario()) == "first"
    assert log.events.count("run.usage") == 1


def test_state_never_changes_after_error():
    transport = ScriptedTransport([
        ("body", {"type": "runFinish", "error": "boom"}),
        ("body", {"type": "runFinish", "output": "recovered"}),
        ("body", {"stdout": {"done": True, "content": "late"}}),
    ])

    async def scenario():
        run = make_run(transport).start()
        await run.wait()
        return run

    run = run_async(scenario())
    assert run.state == RunState.ERROR
    assert run.err == "boom"


def test_call_frames_merge_by_id():
    transport = ScriptedTransport([
        ("events", sse({"type": "callStart", "id": "c1", "tool": {"name": "greet"}, "input": "hi"})),
        ("events", sse({"type": "callStart", "id": "c2", "parentID": "c1", "tool": {"name": "sub"}})),
        ("events", sse({"type": "callProgress", "id": "c1", "output": [{"content": "partial"}]})),
        ("events", sse({"type": "callFinish", "id": "c1", "output": [{"content": "final"}],
                        "usage": {"promptTokens": 3, "completionTokens": 4, "totalTokens": 7}})),
    ])

    async def scenario():
        run = make_run(transport).start()
        await run.wait()
        return run

    run = run_async(scenario())
    assert sorted(run.calls) == ["c1", "c2"]
    root = run.parent_call_frame()
    assert isinstance(root, CallFrame)
    assert root.id == "c1"
    assert root.type == "callFinish"
    assert root.tool.name == "greet"
    assert root.input == "hi"
    assert root.output[0].content == "final"
    assert run.calls["c2"].parent_id == "c1"
    assert run.usage.total_tokens == 7


def test_fan_out_order_and_failing_handler():
    transport = ScriptedTransport([
        ("body", {"type": "runStart"}),
        ("body", {"type": "callStart", "id": "c1"}),
        ("body", {"type": "runFinish", "output": "x"}),
    ])
    calls = []

    def broken(frame):
        raise ValueError("handler bug")

    async def scenario():
        run = make_run(transport)
        run.on(RunEventType.CALL_START, lambda f: calls.append(("typed", f.type)))
        run.on(RunEventType.EVENT, lambda f: calls.append(("all", f.type)))
        run.on(RunEventType.EVENT, broken)
        run.start()
        return await run.text()

    assert run_async(scenario()) == "x"
    assert calls == [
        ("all", "runStart"),
        ("all", "callStart"),
        ("typed", "callStart"),
        ("all", "runFinish"),
    ]


def test_accessors_before_start_are_usage_errors():
    run = make_run(ScriptedTransport())
    with pytest.raises(UsageError):
        run.text()
    with pytest.raises(UsageError):
        run.json()
    with pytest.raises(UsageError):
        run.close()
    assert run.current_chat_state() is None
    assert run.parent_call_frame() is None


def test_next_chat_on_finished_run_is_usage_error():
    factory = TransportQueue(ScriptedTransport([("body", {"type": "runFinish", "output": "ok"})]))

    async def scenario():
        run = Run("evaluate", tools=[ToolDef()], transport_factory=factory).start()
        await run.text()
        with pytest.raises(UsageError):
            run.next_chat("again")
        return run

    run_async(scenario())
    assert len(factory.created) == 1


def test_next_chat_on_unstarted_run_submits_in_place():
    transport = ScriptedTransport([("body", {"type": "runFinish", "output": "ok"})])

    async def scenario():
        run = make_run(transport, options=RunOptions(chat_state="stored"))
        same = run.next_chat("first")
        assert same is run
        await run.text()
        return run

    run_async(scenario())
    assert transport.request.options.chat_state == "stored"
    assert transport.request.options.input == "first"


def test_next_chat_after_error_starts_fresh():
    first = ScriptedTransport([("body", {"type": "runFinish", "error": "tool failed"})])
    second = ScriptedTransport([("body", {"type": "runFinish", "output": "ok"})])

    async def scenario():
        run = make_run(first, second, options=RunOptions(chat_state="old")).start()
        await run.wait()
        assert run.state == RunState.ERROR
        retry = run.next_chat("retry")
        await retry.text()

    run_async(scenario())
    assert second.request.options.chat_state is None


def test_incomplete_stream_is_an_error():
    transport = ScriptedTransport([
        ("body", {"type": "runStart"}),
        ("body", b'data: {"type": "callSt'),
    ])

    async def scenario():
        run = make_run(transport).start()
        await run.wait()
        return run

    run = run_async(scenario())
    assert run.state == RunState.ERROR
    assert run.err == INCOMPLETE


def test_stream_end_without_terminal_record_finishes():
    transport = ScriptedTransport([
        ("events", sse({"type": "runStart"})),
        ("stdout", b"hello "),
        ("stdout", b"world\n"),
    ])

    async def scenario():
        run = make_run(transport).start()
        return run, await run.text()

    run, text = run_async(scenario())
    assert text == "hello world"
    assert run.state == RunState.FINISHED


def test_failed_exit_carries_diagnostics():
    transport = ScriptedTransport(
        [("stderr", b"bad "), ("stderr", b"things\n")],
        exit=TransportExit(error="exit status 2", code=2),
    )

    async def scenario():
        run = make_run(transport).start()
        await run.wait()
        return run

    run = run_async(scenario())
    assert run.state == RunState.ERROR
    assert run.err == "exit status 2: bad things"


def test_transport_start_failure():
    transport = ScriptedTransport(fail_start=True)

    async def scenario():
        run = make_run(transport).start()
        with pytest.raises(RunError) as exc:
            await run.text()
        return run, exc.value

    run, error = run_async(scenario())
    assert run.state == RunState.ERROR
    assert "connection refused" in error.message


def test_diagnostic_records_accumulate():
    transport = ScriptedTransport([
        ("body", {"stderr": "warn 1;"}),
        ("body", {"stderr": "warn 2"}),
        ("body", {"type": "runFinish", "output": "ok"}),
    ])

    async def scenario():
        run = make_run(transport).start()
        await run.text()
        return run

    assert run_async(scenario()).stderr == "warn 1;warn 2"
