import asyncio

import pytest

from mindstrike.local_llm.errors import (
    InvalidRequest,
    ModelNotLoaded,
    RuntimeFailure,
    StreamInterrupted,
)
from mindstrike.local_llm.models import (
    CancellationToken,
    ChatMessage,
    GenerationOptions,
    LoadState,
)
from mindstrike.local_llm.response_service import split_prompt

from .fakes import FakeRuntime, make_orchestrator, write_model

TINY = "tiny-1B-Q4_K_M.gguf"


def _user(text):
    return {"role": "user", "content": text}


def _assistant(text):
    return {"role": "assistant", "content": text}


def _joined_history(history, prompt):
    return " | ".join(m.content for m in history if m.role != "system")


async def _until_unloading(orchestrator, timeout: float = 2.0) -> None:
    model = await orchestrator.discovery.require_model(TINY)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while orchestrator.loader.get_state(model.id) != LoadState.UNLOADING:
        if loop.time() > deadline:
            raise AssertionError("unload never started")
        await asyncio.sleep(0.005)


def _loaded(tmp_path, runtime=None, **overrides):
    write_model(tmp_path / "models", TINY)
    orchestrator = make_orchestrator(tmp_path, runtime=runtime, **overrides)
    asyncio.run(orchestrator.load_model(TINY))
    return orchestrator


def test_split_prompt_uses_last_user_message():
    history, prompt = split_prompt(
        [_user("a"), _assistant("b"), _user("c"), _assistant("")]
    )
    assert prompt == "c"
    assert history == [ChatMessage("user", "a"), ChatMessage("assistant", "b")]
    with pytest.raises(InvalidRequest):
        split_prompt([_assistant("only")])


def test_generate_response_returns_completion(tmp_path):
    runtime = FakeRuntime()
    orchestrator = _loaded(tmp_path, runtime)

    content = asyncio.run(
        orchestrator.generate_response(
            TINY,
            [_user("hi")],
            GenerationOptions(temperature=0.3, max_tokens=64),
        )
    )

    assert content == "echo: hi"
    assert runtime.last_options == {
        "tools_enabled": True,
        "temperature": 0.3,
        "max_tokens": 64,
    }
    model_id = orchestrator.registry.active_ids()[0]
    assert orchestrator.registry.get_usage_stats(model_id).total_prompts == 1


def test_disable_functions_is_forwarded(tmp_path):
    runtime = FakeRuntime()
    orchestrator = _loaded(tmp_path, runtime)
    asyncio.run(
        orchestrator.generate_response(
            TINY, [_user("hi")], GenerationOptions(disable_functions=True)
        )
    )
    assert runtime.last_options["tools_enabled"] is False


def test_generation_requires_a_loaded_model_and_user_message(tmp_path):
    write_model(tmp_path / "models", TINY)
    orchestrator = make_orchestrator(tmp_path)

    with pytest.raises(ModelNotLoaded):
        asyncio.run(orchestrator.generate_response(TINY, [_user("hi")]))
    with pytest.raises(InvalidRequest):
        asyncio.run(orchestrator.generate_response(TINY, [_assistant("hi")]))


def test_stream_yields_runtime_chunks(tmp_path):
    runtime = FakeRuntime()
    orchestrator = _loaded(tmp_path, runtime)

    async def _run():
        return [c async for c in orchestrator.generate_stream_response(TINY, [_user("hi")])]

    assert asyncio.run(_run()) == ["Hel", "lo", " there"]
    assert runtime.streams_closed == 1
    assert runtime.chats[0].history[-1] == ChatMessage("assistant", "Hello there")


def test_cancelled_stream_stops_and_session_stays_usable(tmp_path):
    runtime = FakeRuntime(tokens=[f"t{i} " for i in range(50)])
    orchestrator = _loaded(tmp_path, runtime)

    async def _run():
        token = CancellationToken()
        received = []
        stream = orchestrator.generate_stream_response(
            TINY, [_user("long story")], GenerationOptions(thread_id="t1", cancel=token)
        )
        async for chunk in stream:
            received.append(chunk)
            if len(received) == 2:
                token.cancel("user stop")
        follow_up = await orchestrator.generate_response(
            TINY, [_user("long story"), _user("again")], GenerationOptions(thread_id="t1")
        )
        return received, follow_up

    received, follow_up = asyncio.run(_run())

    assert received == ["t0 ", "t1 "]
    assert runtime.tokens_produced <= 3
    assert runtime.streams_closed == 1
    assert follow_up == "echo: again"
    thread_chat = runtime.chats[-1]
    assert all(m.content != "t0 t1 " for m in thread_chat.history)


def test_consumer_closing_stream_early_releases_runtime(tmp_path):
    runtime = FakeRuntime()
    orchestrator = _loaded(tmp_path, runtime)

    async def _run():
        stream = orchestrator.generate_stream_response(TINY, [_user("hi")])
        first = await stream.__anext__()
        await stream.aclose()
        # The thread lock was released, so a second call proceeds.
        second = await orchestrator.generate_response(TINY, [_user("next")])
        return first, second

    first, second = asyncio.run(_run())
    assert first == "Hel"
    assert second == "echo: next"
    assert runtime.streams_closed == 1


def test_stream_failure_after_chunks_is_truncation(tmp_path):
    orchestrator = _loaded(tmp_path, FakeRuntime(fail_stream_after=2))
    received = []

    async def _run():
        async for chunk in orchestrator.generate_stream_response(TINY, [_user("hi")]):
            received.append(chunk)

    with pytest.raises(StreamInterrupted) as excinfo:
        asyncio.run(_run())

    assert received == ["Hel", "lo"]
    assert excinfo.value.partial == "Hello"
    assert excinfo.value.chunks_delivered == 2
    assert excinfo.value.to_dict()["error"]["truncated"] is True


def test_stream_failure_before_first_chunk_is_runtime_failure(tmp_path):
    orchestrator = _loaded(tmp_path, FakeRuntime(fail_stream_after=0))

    async def _run():
        return [c async for c in orchestrator.generate_stream_response(TINY, [_user("hi")])]

    with pytest.raises(RuntimeFailure) as excinfo:
        asyncio.run(_run())
    assert not isinstance(excinfo.value, StreamInterrupted)


def test_updated_history_is_used_by_next_generation(tmp_path):
    orchestrator = _loaded(tmp_path, FakeRuntime(reply=_joined_history))
    options = GenerationOptions(thread_id="t1")

    async def _run():
        updated = await orchestrator.update_session_history(
            TINY, "t1", [_user("a"), _assistant("b")]
        )
        first = await orchestrator.generate_response(
            TINY, [_user("a"), _assistant("b"), _user("c")], options
        )
        await orchestrator.update_session_history(
            TINY, "t1", [_user("x"), _assistant("y")]
        )
        second = await orchestrator.generate_response(
            TINY, [_user("x"), _assistant("y"), _user("z")], options
        )
        return updated, first, second

    updated, first, second = asyncio.run(_run())
    assert updated is True
    assert first == "a | b"
    assert second == "x | y"


def test_history_update_for_unloaded_model_is_skipped(tmp_path):
    write_model(tmp_path / "models", TINY)
    orchestrator = make_orchestrator(tmp_path)
    assert (
        asyncio.run(orchestrator.update_session_history(TINY, "t1", [_user("a")]))
        is False
    )


def test_history_provider_fills_missing_messages(tmp_path):
    orchestrator = _loaded(tmp_path, FakeRuntime(reply=_joined_history))
    requested = []

    async def provider(thread_id):
        requested.append(thread_id)
        return [_user("from store"), _assistant("ok")]

    orchestrator.responses.history_provider = provider

    async def _run():
        updated = await orchestrator.update_session_history(TINY, "t9")
        reply = await orchestrator.generate_response(
            TINY,
            [_user("from store"), _assistant("ok"), _user("next")],
            GenerationOptions(thread_id="t9"),
        )
        return updated, reply

    updated, reply = asyncio.run(_run())
    assert updated is True
    assert requested == ["t9"]
    assert reply == "from store | ok"


def test_disable_chat_history_leaves_history_untouched(tmp_path):
    runtime = FakeRuntime()
    orchestrator = _loaded(tmp_path, runtime)
    main_chat = runtime.chats[0]

    async def _run():
        await orchestrator.generate_response(
            TINY, [_user("hi")], GenerationOptions(disable_chat_history=True)
        )
        stateless = list(main_chat.history)
        await orchestrator.generate_response(TINY, [_user("hi")])
        return stateless, list(main_chat.history)

    stateless, stateful = asyncio.run(_run())
    assert stateless == []
    assert stateful == [ChatMessage("user", "hi"), ChatMessage("assistant", "echo: hi")]


def test_threads_get_separate_sessions(tmp_path):
    runtime = FakeRuntime()
    orchestrator = _loaded(tmp_path, runtime)

    async def _run():
        return await asyncio.gather(
            orchestrator.generate_response(
                TINY, [_user("one")], GenerationOptions(thread_id="a")
            ),
            orchestrator.generate_response(
                TINY, [_user("two")], GenerationOptions(thread_id="b")
            ),
        )

    assert asyncio.run(_run()) == ["echo: one", "echo: two"]
    # main session from load plus one per thread
    assert len(runtime.chats) == 3


def test_unload_stops_running_stream_before_disposing(tmp_path):
    runtime = FakeRuntime(tokens=["a", "b", "c", "d"])
    write_model(tmp_path / "models", TINY)
    orchestrator = make_orchestrator(tmp_path, runtime=runtime)

    async def _run():
        await orchestrator.load_model(TINY)
        stream = orchestrator.generate_stream_response(
            TINY, [_user("go")], GenerationOptions(thread_id="t1")
        )
        first = await stream.__anext__()
        unloading = asyncio.create_task(orchestrator.unload_model(TINY))
        await _until_unloading(orchestrator)
        disposed_early = list(runtime.disposed)
        with pytest.raises(StreamInterrupted) as info:
            await stream.__anext__()
        unloaded = await unloading
        return first, disposed_early, info.value, unloaded

    first, disposed_early, error, unloaded = asyncio.run(_run())
    assert first == "a"
    assert disposed_early == []
    assert error.partial == "a"
    assert unloaded
    assert runtime.streams_closed == 1
    assert runtime.disposed_while_streaming == 0
    assert runtime.disposed == runtime.created
    assert all(chat.closed for chat in runtime.chats)


def test_requests_waiting_on_unload_see_model_gone(tmp_path):
    runtime = FakeRuntime(tokens=["a", "b", "c"])
    write_model(tmp_path / "models", TINY)
    orchestrator = make_orchestrator(tmp_path, runtime=runtime)

    async def _run():
        await orchestrator.load_model(TINY)
        stream = orchestrator.generate_stream_response(
            TINY, [_user("go")], GenerationOptions(thread_id="t1")
        )
        await stream.__anext__()
        unloading = asyncio.create_task(orchestrator.unload_model(TINY))
        await _until_unloading(orchestrator)
        chats_before = len(runtime.chats)
        updated = await orchestrator.update_session_history(TINY, "t2", [_user("x")])
        with pytest.raises(ModelNotLoaded):
            await orchestrator.generate_response(
                TINY, [_user("y")], GenerationOptions(thread_id="t3")
            )
        await stream.aclose()
        await unloading
        return chats_before, updated

    chats_before, updated = asyncio.run(_run())
    assert updated is False
    assert len(runtime.chats) == chats_before
    assert runtime.disposed_while_streaming == 0
    assert len(orchestrator.registry) == 0
