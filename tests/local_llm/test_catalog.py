import asyncio

import httpx
import pytest

from mindstrike.local_llm.catalog import HuggingFaceCatalog
from mindstrike.local_llm.errors import IOFailure

BASE = "https://hf.test"

LISTING = [
    {"id": "TheBloke/Mistral-7B-Instruct-v0.2-GGUF", "downloads": 500, "likes": 9},
    {"id": "org/split-only-GGUF", "downloads": 900},
    {"id": "org/Phi-3B-GGUF", "downloads": 700},
]

DETAILS = {
    "TheBloke/Mistral-7B-Instruct-v0.2-GGUF": {
        "siblings": [
            {"rfilename": "README.md"},
            {"rfilename": "mistral-7b-instruct-v0.2.Q8_0.gguf", "size": 7_700_000_000},
            {
                "rfilename": "mistral-7b-instruct-v0.2.Q4_K_M.gguf",
                "size": 4_370_000_000,
                "lfs": {"sha256": "ab" * 32},
            },
        ],
        "gguf": {"context_length": 32768},
        "gated": False,
    },
    "org/split-only-GGUF": {
        "siblings": [
            {"rfilename": "big-Q4_K_M-00001-of-00002.gguf", "size": 9_000_000_000},
            {"rfilename": "big-Q4_K_M-00002-of-00002.gguf", "size": 9_000_000_000},
        ]
    },
    "org/Phi-3B-GGUF": {
        "siblings": [
            {"rfilename": "phi-3b.Q5_K_M.gguf", "size": 2_000_000_000},
            {"rfilename": "phi-3b.F16.gguf", "size": 16_000_000_000},
        ],
        "gated": "manual",
    },
}


def _handler(calls):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        path = request.url.path
        if path == "/api/models":
            return httpx.Response(200, json=LISTING)
        repo = path[len("/api/models/") :]
        return httpx.Response(200, json=DETAILS[repo])

    return handler


def _catalog(handler, **kwargs) -> HuggingFaceCatalog:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HuggingFaceCatalog(BASE, client=client, **kwargs)


def test_list_available_picks_preferred_single_file():
    calls = []
    catalog = _catalog(_handler(calls))

    models = asyncio.run(catalog.list_available())

    assert [m.model_id for m in models] == [
        "org/Phi-3B-GGUF",
        "TheBloke/Mistral-7B-Instruct-v0.2-GGUF",
    ]
    phi, mistral = models
    assert phi.filename == "phi-3b.Q5_K_M.gguf"
    assert phi.catalog_metadata["gated"] == "manual"
    assert mistral.filename == "mistral-7b-instruct-v0.2.Q4_K_M.gguf"
    assert mistral.url == (
        f"{BASE}/TheBloke/Mistral-7B-Instruct-v0.2-GGUF/resolve/main/"
        "mistral-7b-instruct-v0.2.Q4_K_M.gguf"
    )
    assert mistral.quantization == "Q4_K_M"
    assert mistral.parameter_count == "7B"
    assert mistral.trained_context_length == 32768
    assert mistral.catalog_metadata["sha256"] == "ab" * 32
    assert mistral.name == "Mistral 7B Instruct v0.2 Q4_K_M"
    listing_call = calls[0]
    assert listing_call.url.params["filter"] == "gguf"


def test_listing_is_cached():
    calls = []
    catalog = _catalog(_handler(calls))

    async def _run():
        await catalog.list_available()
        count = len(calls)
        await catalog.list_available()
        assert len(calls) == count
        catalog.clear_cache()
        await catalog.list_available()
        return count

    count = asyncio.run(_run())
    assert len(calls) == 2 * count


def test_empty_search_falls_back_to_listing():
    calls = []
    catalog = _catalog(_handler(calls))
    asyncio.run(catalog.search("  "))
    assert "search" not in calls[0].url.params


def test_search_passes_query():
    calls = []
    catalog = _catalog(_handler(calls))
    asyncio.run(catalog.search("mistral"))
    assert calls[0].url.params["search"] == "mistral"


def test_rate_limit_retries_with_retry_after():
    attempts = []
    sleeps = []

    def handler(request):
        if request.url.path == "/api/models":
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(429, headers={"Retry-After": "2"})
            return httpx.Response(200, json=[])
        return httpx.Response(404)

    async def fake_sleep(delay):
        sleeps.append(delay)

    catalog = _catalog(handler, sleep=fake_sleep, max_retries=3)
    assert asyncio.run(catalog.list_available()) == []
    assert sleeps == [2.0, 2.0]


def test_rate_limit_exhausted_raises():
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    catalog = _catalog(
        lambda request: httpx.Response(429), sleep=fake_sleep, max_retries=2
    )
    with pytest.raises(IOFailure):
        asyncio.run(catalog.list_available())
    assert sleeps == [1.0, 2.0]


def test_failing_repo_detail_is_skipped():
    def handler(request):
        if request.url.path == "/api/models":
            return httpx.Response(200, json=LISTING[:1] + [{"id": "org/broken"}])
        if request.url.path.endswith("org/broken"):
            return httpx.Response(500)
        return httpx.Response(200, json=DETAILS["TheBloke/Mistral-7B-Instruct-v0.2-GGUF"])

    models = asyncio.run(_catalog(handler).list_available())
    assert [m.model_id for m in models] == ["TheBloke/Mistral-7B-Instruct-v0.2-GGUF"]
