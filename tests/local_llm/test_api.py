import json
import time

from fastapi.testclient import TestClient

from mindstrike.local_llm.api import create_app
from mindstrike.local_llm.models import RemoteModelInfo

from .fakes import (
    FakeCatalog,
    FakeRuntime,
    make_orchestrator,
    mock_downloads,
    write_model,
)

TINY = "tiny-1B-Q4_K_M.gguf"
PAYLOAD = b"\0" * 2048


def _client(tmp_path, **kwargs) -> TestClient:
    write_model(tmp_path / "models", TINY)
    orchestrator = make_orchestrator(tmp_path, **kwargs)
    return TestClient(create_app(mock_downloads(orchestrator, PAYLOAD)))


def _events(body: str):
    return [
        line[len("data: ") :]
        for line in body.splitlines()
        if line.startswith("data: ")
    ]


def test_list_local_models(tmp_path):
    with _client(tmp_path) as client:
        r = client.get("/v1/local-models")
    assert r.status_code == 200
    data = r.json()
    assert data["object"] == "list"
    [model] = data["data"]
    assert model["filename"] == TINY
    assert model["context_length"] == 4096


def test_available_and_search(tmp_path):
    catalog = FakeCatalog(
        [RemoteModelInfo(filename="remote-7B-Q4_K_M.gguf", url="https://hf.test/r")]
    )
    with _client(tmp_path, catalog=catalog) as client:
        available = client.get("/v1/local-models/available").json()
        found = client.get("/v1/local-models/search", params={"q": "tiny"}).json()
    assert len(available["local"]) == 1
    assert available["remote"][0]["filename"] == "remote-7B-Q4_K_M.gguf"
    assert [m["filename"] for m in found["local"]] == [TINY]
    assert found["remote"] == []


def test_unknown_model_maps_to_404_error_body(tmp_path):
    with _client(tmp_path) as client:
        r = client.get("/v1/local-models/nope/settings")
    assert r.status_code == 404
    error = r.json()["error"]
    assert error["type"] == "model_not_found"
    assert error["code"] == 404
    assert "nope" in error["message"]


def test_settings_round_trip_and_validation(tmp_path):
    with _client(tmp_path) as client:
        bad = client.put(f"/v1/local-models/{TINY}/settings", json={"batch_size": 0})
        ok = client.put(
            f"/v1/local-models/{TINY}/settings",
            json={"gpu_layers": 10, "context_size": 2048},
        )
        settings = client.get(f"/v1/local-models/{TINY}/settings").json()
        optimal = client.post(
            f"/v1/local-models/{TINY}/settings/optimal", json={"context_size": 1024}
        ).json()
        cleared = client.post("/v1/cache/context/clear")

    assert bad.status_code == 422
    assert ok.json() == {"status": "ok"}
    assert settings["gpu_layers"] == 10
    assert settings["context_size"] == 2048
    assert optimal["context_size"] == 1024
    assert cleared.json() == {"status": "ok"}


def test_load_status_runtime_unload(tmp_path):
    with _client(tmp_path) as client:
        before = client.get(f"/v1/local-models/{TINY}/status").json()
        loaded = client.post(f"/v1/local-models/{TINY}/load", params={"thread_id": "t1"})
        runtime = client.get(f"/v1/local-models/{TINY}/runtime")
        unloaded = client.post(f"/v1/local-models/{TINY}/unload").json()

    assert before == {"loaded": False, "loading": False, "state": "unloaded"}
    assert loaded.status_code == 200
    assert loaded.json()["state"] == "loaded"
    assert loaded.json()["context_size"] == 4096
    assert unloaded == {"unloaded": True}
    assert runtime.json()["gpu_type"] == "cpu"
    assert runtime.json()["actual_gpu_layers"] == 0


def test_generate_requires_loaded_model(tmp_path):
    body = {"messages": [{"role": "user", "content": "hi"}], "stream": True}
    with _client(tmp_path) as client:
        r = client.post(f"/v1/local-models/{TINY}/generate", json=body)
    assert r.status_code == 404
    assert r.json()["error"]["type"] == "model_not_loaded"


def test_generate_without_user_message_is_400(tmp_path):
    body = {"messages": [{"role": "assistant", "content": "hi"}]}
    with _client(tmp_path) as client:
        client.post(f"/v1/local-models/{TINY}/load")
        r = client.post(f"/v1/local-models/{TINY}/generate", json=body)
    assert r.status_code == 400
    assert r.json()["error"]["type"] == "invalid_request"


def test_generate_blocking_and_history(tmp_path):
    with _client(tmp_path) as client:
        client.post(f"/v1/local-models/{TINY}/load")
        history = client.put(
            f"/v1/local-models/{TINY}/threads/t1/history",
            json={"messages": [{"role": "user", "content": "a"}]},
        ).json()
        r = client.post(
            f"/v1/local-models/{TINY}/generate",
            json={"messages": [{"role": "user", "content": "hi"}], "thread_id": "t1"},
        )
    assert history == {"updated": True}
    assert r.json() == {"content": "echo: hi"}


def test_generate_stream_emits_sse_chunks(tmp_path):
    body = {"messages": [{"role": "user", "content": "hi"}], "stream": True}
    with _client(tmp_path) as client:
        client.post(f"/v1/local-models/{TINY}/load")
        r = client.post(f"/v1/local-models/{TINY}/generate", json=body)

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    events = _events(r.text)
    assert events[-1] == "[DONE]"
    chunks = [json.loads(e)["chunk"] for e in events[:-1]]
    assert "".join(chunks) == "Hello there"


def test_interrupted_stream_reports_truncation(tmp_path):
    body = {"messages": [{"role": "user", "content": "hi"}], "stream": True}
    with _client(tmp_path, runtime=FakeRuntime(fail_stream_after=1)) as client:
        client.post(f"/v1/local-models/{TINY}/load")
        r = client.post(f"/v1/local-models/{TINY}/generate", json=body)

    events = _events(r.text)
    assert json.loads(events[0]) == {"chunk": "Hel"}
    final = json.loads(events[-1])
    assert final["truncated"] is True
    assert final["error"]["type"] == "stream_interrupted"
    assert "[DONE]" not in events


def test_download_runs_in_background(tmp_path):
    with _client(tmp_path) as client:
        r = client.post(
            "/v1/downloads",
            json={"filename": "fresh-Q4_K_M.gguf", "url": "https://hf.test/fresh"},
        )
        target = tmp_path / "models" / "fresh-Q4_K_M.gguf"
        deadline = time.monotonic() + 5
        while not target.exists() and time.monotonic() < deadline:
            time.sleep(0.02)
        missing = client.get("/v1/downloads/fresh-Q4_K_M.gguf")
        cancelled = client.delete("/v1/downloads/fresh-Q4_K_M.gguf").json()

    assert r.status_code == 202
    assert r.json()["filename"] == "fresh-Q4_K_M.gguf"
    assert target.read_bytes() == PAYLOAD
    assert missing.status_code == 404
    assert missing.json()["detail"]["error"]["type"] == "not_found"
    assert cancelled == {"cancelled": False}


def test_download_of_existing_file_conflicts(tmp_path):
    with _client(tmp_path) as client:
        r = client.post("/v1/downloads", json={"filename": TINY, "url": "https://hf.test/t"})
    assert r.status_code == 409
    assert r.json()["error"]["type"] == "already_exists"


def test_delete_model(tmp_path):
    with _client(tmp_path) as client:
        r = client.delete(f"/v1/local-models/{TINY}")
        again = client.delete(f"/v1/local-models/{TINY}")
    assert r.json()["filename"] == TINY
    assert again.status_code == 404
    assert not (tmp_path / "models" / TINY).exists()
