from mindstrike.local_llm.models import LoadedModelRuntime
from mindstrike.local_llm.registry import ModelRegistry


def _runtime(model_id: str, last_used: float = 0.0) -> LoadedModelRuntime:
    runtime = LoadedModelRuntime(
        model_id=model_id,
        native_handle=object(),
        model_path=f"/models/{model_id}.gguf",
        gpu_layers=0,
        context_size=4096,
        batch_size=512,
    )
    runtime.last_used_at = last_used
    return runtime


def test_set_get_remove():
    registry = ModelRegistry()
    registry.set(_runtime("a"))

    assert "a" in registry
    assert registry.has("a")
    assert len(registry) == 1
    assert registry.active_ids() == ["a"]
    assert registry.remove("a").model_id == "a"
    assert registry.remove("a") is None
    assert registry.get("a") is None


def test_runtime_info_touches_last_used():
    registry = ModelRegistry()
    registry.set(_runtime("a", last_used=1.0))
    assert registry.get_model_runtime_info("a").last_used_at > 1.0
    assert registry.get_model_runtime_info("b") is None


def test_thread_association():
    registry = ModelRegistry()
    registry.set(_runtime("a"))
    registry.set(_runtime("b"))

    registry.associate_thread("a", "t1")
    registry.associate_thread("missing", "t2")

    assert registry.get_by_thread("t1").model_id == "a"
    assert registry.get_by_thread("t2") is None
    assert registry.unassociated_ids() == ["b"]
    registry.disassociate_thread("t1")
    assert registry.get_by_thread("t1") is None


def test_usage_and_lru():
    registry = ModelRegistry()
    registry.set(_runtime("old", last_used=1.0))
    registry.set(_runtime("new", last_used=5.0))

    registry.record_prompt_usage("old", 12)
    registry.record_prompt_usage("old", 3)
    registry.record_prompt_usage("unknown", 7)

    stats = registry.get_usage_stats("old")
    assert (stats.total_prompts, stats.total_tokens) == (2, 15)
    assert registry.get_usage_stats("unknown") is None
    assert registry.least_recently_used() == "old"
    assert ModelRegistry().least_recently_used() is None
