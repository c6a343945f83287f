"""Tests for the OpenRouter completion client, using httpx.MockTransport."""

import io
import json

import httpx
import pytest
from PIL import Image

from language_mate.core.errors import ConfigurationError, ModelCapabilityError, UpstreamError
from language_mate.schemas.messages import UrlAttachment
from language_mate.services.image_storage import ImageStorage
from language_mate.services.llm.base import ChatMessage, CompletionRequest, CompletionResult, CompletionStream
from language_mate.services.llm.capabilities import ModelCapabilities
from language_mate.services.llm.openrouter import OpenRouterClient, resolve_api_key
from language_mate.services.llm.streaming import StreamDecoder

BASE_URL = "https://openrouter.test/api/v1"

MODELS = {
    "data": [
        {
            "id": "openai/gpt-4o",
            "name": "GPT-4o",
            "architecture": {"input_modalities": ["text", "image"], "output_modalities": ["text"]},
        },
        {
            "id": "meta-llama/llama-3.1-8b-instruct",
            "name": "Llama 3.1 8B",
            "architecture": {"input_modalities": ["text"], "output_modalities": ["text"]},
        },
    ]
}


def completion_body(content: str, reasoning: str | None = None) -> dict:
    message = {"role": "assistant", "content": content}
    if reasoning is not None:
        message["reasoning"] = reasoning
    return {"id": "gen-1", "choices": [{"index": 0, "message": message, "finish_reason": "stop"}]}


class Upstream:
    """Mock OpenRouter: records completion requests and answers from a script."""

    def __init__(self, response: httpx.Response | None = None, models: dict | None = None):
        self.completions: list[httpx.Request] = []
        self.response = response or httpx.Response(200, json=completion_body("Hej!"))
        self.models = models
        self.model_calls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/models"):
            self.model_calls += 1
            if self.models is None:
                return httpx.Response(503, text="unavailable")
            return httpx.Response(200, json=self.models)
        self.completions.append(request)
        return self.response

    def payload(self, index: int = -1) -> dict:
        return json.loads(self.completions[index].content)


def _client(upstream: Upstream, api_key: str = "sk-server", image_storage=None) -> OpenRouterClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    capabilities = ModelCapabilities(http, base_url=BASE_URL, ttl=300)
    return OpenRouterClient(
        http, capabilities=capabilities, image_storage=image_storage, api_key=api_key, base_url=BASE_URL
    )


def _request(**overrides) -> CompletionRequest:
    values = {
        "model": "openai/gpt-4o",
        "message": "Hej, hur mår du?",
        "system_prompt": "You are a native speaker of Swedish.",
        "streaming": False,
    }
    values.update(overrides)
    return CompletionRequest(**values)


@pytest.mark.asyncio
async def test_non_streaming_completion():
    upstream = Upstream(httpx.Response(200, json=completion_body("Jag mår bra!", reasoning="Be friendly.")))

    result = await _client(upstream).send(_request())

    assert result == CompletionResult(content="Jag mår bra!", reasoning="Be friendly.")
    request = upstream.completions[0]
    assert str(request.url) == f"{BASE_URL}/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-server"
    assert "X-Title" in request.headers
    payload = upstream.payload()
    assert payload["stream"] is False
    assert payload["temperature"] == 0.7
    assert payload["max_tokens"] == 2048
    assert "reasoning" not in payload


@pytest.mark.asyncio
async def test_reasoning_raises_the_token_budget_and_strips_thinking_suffix():
    upstream = Upstream()

    await _client(upstream).send(_request(model="anthropic/claude-3.7-sonnet:thinking", enable_reasoning=True))

    payload = upstream.payload()
    assert payload["model"] == "anthropic/claude-3.7-sonnet"
    assert payload["max_tokens"] == 4096
    assert payload["reasoning"] == {"max_tokens": 2000}


@pytest.mark.asyncio
async def test_message_order():
    upstream = Upstream()
    history = [ChatMessage(role="user", content="[user]: Hej!"), ChatMessage(role="user", content="[chat-mate]: Hallå!")]

    await _client(upstream).send(
        _request(history=history, current_datetime="2024-06-21T18:00:00+02:00", user_timezone="CEST")
    )

    messages = upstream.payload()["messages"]
    assert [m["role"] for m in messages] == ["user", "user", "system", "system", "system", "user"]
    assert messages[0]["content"] == "[user]: Hej!"
    assert messages[2]["content"] == "You are a native speaker of Swedish."
    assert "should not repeat the conversation history" in messages[3]["content"]
    assert messages[4]["content"] == "Current date and time: 2024-06-21T18:00:00+02:00 (CEST)"
    assert messages[5]["content"] == "Hej, hur mår du?"


@pytest.mark.asyncio
async def test_user_key_wins_over_server_key():
    upstream = Upstream()

    await _client(upstream).send(_request(api_key="sk-user"))

    assert upstream.completions[0].headers["Authorization"] == "Bearer sk-user"


@pytest.mark.asyncio
async def test_missing_key_fails_before_any_network_call():
    upstream = Upstream()

    with pytest.raises(ConfigurationError):
        await _client(upstream, api_key="").send(_request(api_key="  "))

    assert upstream.completions == []


def test_resolve_api_key():
    assert resolve_api_key("sk-user", "sk-server") == "sk-user"
    assert resolve_api_key("", "sk-server") == "sk-server"
    with pytest.raises(ConfigurationError):
        resolve_api_key(None, None)


@pytest.mark.asyncio
async def test_upstream_error_status():
    upstream = Upstream(httpx.Response(500, json={"error": "Internal Server Error"}))

    with pytest.raises(UpstreamError) as excinfo:
        await _client(upstream).send(_request())

    assert excinfo.value.status == 500
    assert "Internal Server Error" in excinfo.value.body
    assert "temporarily unavailable" in excinfo.value.user_message()


@pytest.mark.asyncio
async def test_unauthorized_has_a_friendly_message():
    upstream = Upstream(httpx.Response(401, json={"error": {"message": "No auth credentials found"}}))

    with pytest.raises(UpstreamError) as excinfo:
        await _client(upstream).send(_request())

    assert "Invalid API key" in excinfo.value.user_message()


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [b"not json", b'{"choices": []}', b'{"choices": [{"delta": {}}]}'])
async def test_unusable_body_is_an_upstream_error(body):
    upstream = Upstream(httpx.Response(200, content=body, headers={"content-type": "application/json"}))

    with pytest.raises(UpstreamError):
        await _client(upstream).send(_request())


@pytest.mark.asyncio
async def test_transport_failure_is_an_upstream_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = OpenRouterClient(http, api_key="sk-server", base_url=BASE_URL)

    with pytest.raises(UpstreamError) as excinfo:
        await client.send(_request())

    assert excinfo.value.status == 0


@pytest.mark.asyncio
async def test_event_stream_response_is_returned_as_a_stream():
    body = (
        b'data: {"choices": [{"delta": {"content": "Hej"}}]}\n\n'
        b'data: {"choices": [{"delta": {"content": " d\xc3\xa4r"}}]}\n\n'
        b"data: [DONE]\n\n"
    )
    upstream = Upstream(httpx.Response(200, content=body, headers={"content-type": "text/event-stream"}))

    result = await _client(upstream).send(_request(streaming=True))

    assert isinstance(result, CompletionStream)
    async with result:
        decoded = await StreamDecoder().decode(result)
    assert decoded.content == "Hej där"
    assert upstream.payload()["stream"] is True


@pytest.mark.asyncio
async def test_text_only_model_rejects_images():
    upstream = Upstream(models=MODELS)
    attachment = UrlAttachment(url="https://example.com/fika.png")

    with pytest.raises(ModelCapabilityError):
        await _client(upstream).send(
            _request(model="meta-llama/llama-3.1-8b-instruct", attachments=[attachment])
        )

    assert upstream.completions == []


@pytest.mark.asyncio
async def test_unknown_capability_does_not_block():
    upstream = Upstream(models=None)
    attachment = UrlAttachment(url="https://example.com/fika.png")

    await _client(upstream).send(_request(model="some/new-model", attachments=[attachment]))

    content = upstream.payload()["messages"][-1]["content"]
    assert content == [
        {"type": "text", "text": "Hej, hur mår du?"},
        {"type": "image_url", "image_url": {"url": "https://example.com/fika.png"}},
    ]


@pytest.mark.asyncio
async def test_no_capability_lookup_without_attachments():
    upstream = Upstream(models=MODELS)

    await _client(upstream).send(_request())

    assert upstream.model_calls == 0


@pytest.mark.asyncio
async def test_stored_image_is_sent_as_data_url(tmp_path):
    buffer = io.BytesIO()
    Image.new("RGB", (4, 3), "blue").save(buffer, format="PNG")
    storage = ImageStorage(tmp_path)
    attachment = storage.save_image(buffer.getvalue(), "sky.png")
    upstream = Upstream(models=MODELS)

    await _client(upstream, image_storage=storage).send(_request(attachments=[attachment]))

    parts = upstream.payload()["messages"][-1]["content"]
    assert parts[1]["image_url"]["url"].startswith("data:image/png;base64,")


@pytest.mark.asyncio
async def test_missing_stored_image_is_skipped(tmp_path):
    buffer = io.BytesIO()
    Image.new("RGB", (4, 3), "blue").save(buffer, format="PNG")
    storage = ImageStorage(tmp_path)
    attachment = storage.save_image(buffer.getvalue(), "sky.png")
    storage.delete(attachment.id)
    upstream = Upstream(models=MODELS)

    await _client(upstream, image_storage=storage).send(_request(attachments=[attachment]))

    assert upstream.payload()["messages"][-1]["content"] == "Hej, hur mår du?"
