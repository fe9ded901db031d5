import json
import asyncio

import httpx
import pytest

from hercules_runner.errors import ApiError
from hercules_runner.improve import GherkinImprover, add_metadata, build_prompt, extract_metadata

FEATURE = """# META: Checkout must reject expired cards
#META: Runs against staging
Feature: Checkout
  Scenario: Pay with an expired card
    Given I am on the checkout page
"""


def chat_response(content):
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


def test_extract_metadata():
    assert extract_metadata(FEATURE) == [
        "Checkout must reject expired cards",
        "Runs against staging",
    ]
    assert extract_metadata("Feature: Nothing here\n") == []


def test_add_metadata():
    text = add_metadata("Feature: Login\n", "Covers SSO login")
    assert text.startswith("# META: Covers SSO login\nFeature: Login")
    assert extract_metadata(text) == ["Covers SSO login"]


def test_prompt_includes_metadata_and_script():
    prompt = build_prompt("Feature: Login", ["Covers SSO login"])
    assert "USE THIS METADATA TO GUIDE THE IMPROVEMENTS:\nCovers SSO login" in prompt
    assert "```gherkin\nFeature: Login\n```" in prompt
    assert "METADATA" not in build_prompt("Feature: Login", [])


@pytest.mark.asyncio
async def test_improve_success():
    requests = []

    def handler(request):
        requests.append(request)
        return chat_response("```gherkin\nFeature: Checkout (improved)\n```")

    improver = GherkinImprover(
        "sk-test", model="gpt-4o-mini", base_url="https://llm.example/v1",
        transport=httpx.MockTransport(handler),
    )
    result = await improver.improve(FEATURE)

    assert result == "Feature: Checkout (improved)"
    (request,) = requests
    assert str(request.url) == "https://llm.example/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = json.loads(request.content)
    assert body["model"] == "gpt-4o-mini"
    assert body["temperature"] == 0.5
    assert body["max_tokens"] == 2000
    assert "Checkout must reject expired cards" in body["messages"][1]["content"]


@pytest.mark.asyncio
async def test_http_error_status():
    improver = GherkinImprover(
        "sk-test",
        transport=httpx.MockTransport(lambda request: httpx.Response(500, text="overloaded")),
    )
    with pytest.raises(ApiError, match="API Error: 500 - overloaded"):
        await improver.improve(FEATURE)


@pytest.mark.asyncio
async def test_no_response():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    improver = GherkinImprover("sk-test", transport=httpx.MockTransport(handler))
    with pytest.raises(ApiError, match="No response received"):
        await improver.improve(FEATURE)


@pytest.mark.asyncio
async def test_empty_choices():
    improver = GherkinImprover(
        "sk-test",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"choices": []})),
    )
    assert await improver.improve(FEATURE) is None


@pytest.mark.asyncio
async def test_cancelled_before_request():
    requests = []

    def handler(request):
        requests.append(request)
        return chat_response("Feature: X")

    cancel = asyncio.Event()
    cancel.set()
    improver = GherkinImprover("sk-test", transport=httpx.MockTransport(handler))

    assert await improver.improve(FEATURE, cancel_event=cancel) is None
    assert requests == []


def test_improver_requires_api_key(ctx, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ApiError):
        ctx.gherkin_improver()

    ctx.config_store.set_value("llm", "apiKey", "sk-config")
    assert ctx.gherkin_improver().api_key == "sk-config"
