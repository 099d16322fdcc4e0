"""Test LLM/embedding providers, response parsing and the provider factory."""
import asyncio
import json

import httpx
import pytest

from providers.anthropic_provider import AnthropicProvider
from providers.credentials import EnvCredentialResolver, StaticCredentialResolver
from providers.embeddings import OllamaEmbeddingProvider, OpenAIEmbeddingProvider
from providers.exceptions import (
    MalformedResponseError,
    ProviderCredentialError,
    ProviderRateLimitError,
    ProviderRequestError,
    ProviderUnavailableError,
    UnknownProviderError,
)
from providers.factory import ProviderFactory, normalize_embedding_provider, normalize_llm_provider
from providers.llm import (
    NOT_SPECIFIED,
    GenerateOptions,
    build_image_prompt,
    normalize_scene_analysis,
    parse_json_response,
    raise_for_provider_status,
)
from providers.ollama_provider import OllamaProvider
from providers.openai_provider import OpenAIProvider


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ==================== Parsing ====================

def test_parse_json_plain():
    assert parse_json_response('{"same": true}') == {"same": True}


def test_parse_json_fenced_block():
    text = 'Here you go:\n```json\n{"mood": "tense"}\n```\nThanks'
    assert parse_json_response(text) == {"mood": "tense"}


def test_parse_json_strips_think_preamble():
    text = "<think>The user wants JSON {not this}</think>\n{\"mood\": \"calm\"}"
    assert parse_json_response(text) == {"mood": "calm"}


def test_parse_json_embedded_in_prose():
    assert parse_json_response('Result: {"a": 1} end') == {"a": 1}


def test_parse_json_malformed():
    with pytest.raises(MalformedResponseError):
        parse_json_response("I could not analyze this scene, sorry.")


def test_normalize_scene_analysis_defaults():
    analysis = normalize_scene_analysis({
        "characters": [{"name": " Mary "}, {"description": "nameless"}, "Tom", 42],
        "timeOfDay": "null",
        "visualElements": "not a list",
    })

    assert [c.name for c in analysis.characters] == ["Mary", "Tom"]
    assert analysis.characters[0].description == ""
    assert analysis.setting == NOT_SPECIFIED
    assert analysis.time_of_day is None
    assert analysis.mood == "neutral"
    assert analysis.visual_elements == []
    assert analysis.key_actions == []


def test_normalize_scene_analysis_rejects_non_object():
    with pytest.raises(MalformedResponseError):
        normalize_scene_analysis(["not", "an", "object"])


def test_build_image_prompt():
    analysis = normalize_scene_analysis({
        "characters": [{"name": "Mary", "description": "red cloak"}],
        "setting": "a forest clearing",
        "timeOfDay": "dusk",
        "mood": "eerie",
        "visualElements": ["fog", "lantern", "crows", "moss"],
    })

    prompt = build_image_prompt(analysis)

    assert prompt == (
        "realistic digital art, Mary: red cloak, a forest clearing, dusk, "
        "eerie atmosphere, fog, lantern, crows"
    )


def test_placeholder_setting_is_left_out_of_image_prompt():
    analysis = normalize_scene_analysis({"setting": "Not Specified", "mood": "calm"})
    assert analysis.setting == NOT_SPECIFIED

    # Hand-built analyses may carry any casing of the placeholder
    prompt = build_image_prompt(analysis.model_copy(update={"setting": "Not Specified"}))

    assert prompt == "realistic digital art, calm atmosphere"


# ==================== HTTP error mapping ====================

@pytest.mark.parametrize("status, error", [
    (401, ProviderCredentialError),
    (403, ProviderCredentialError),
    (429, ProviderRateLimitError),
    (500, ProviderUnavailableError),
    (503, ProviderUnavailableError),
    (400, ProviderRequestError),
])
def test_raise_for_provider_status(status, error):
    response = httpx.Response(status, json={"error": {"message": "nope"}})
    with pytest.raises(error):
        raise_for_provider_status(response, "chatgpt")


def test_rejected_key_names_the_variable():
    response = httpx.Response(401, json={"error": {"message": "Incorrect API key"}})
    with pytest.raises(ProviderCredentialError, match="Set OPENAI_API_KEY"):
        raise_for_provider_status(response, "openai")


def test_error_retryability():
    assert ProviderRateLimitError("x").retryable
    assert ProviderUnavailableError("x").retryable
    assert not ProviderCredentialError("x").retryable
    assert not MalformedResponseError("x").retryable


# ==================== Providers ====================

def test_ollama_generate_json_mode():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"response": '{"mood": "calm"}'})

    async def run():
        provider = OllamaProvider(model="llama3", host="http://ollama:11434", http_client=mock_client(handler))
        return await provider.generate("hi", GenerateOptions(format="json", temperature=0.2))

    assert asyncio.run(run()) == '{"mood": "calm"}'
    assert seen["url"] == "http://ollama:11434/api/generate"
    assert seen["body"]["format"] == "json"
    assert seen["body"]["stream"] is False
    assert seen["body"]["options"]["temperature"] == 0.2


def test_ollama_analyze_scene():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.dumps({"characters": [{"name": "Ann", "description": "tall"}], "mood": "warm"})
        return httpx.Response(200, json={"response": body})

    async def run():
        provider = OllamaProvider(model="llama3", http_client=mock_client(handler))
        return await provider.analyze_scene("Ann walked in.", "Chapter 1")

    analysis = asyncio.run(run())
    assert analysis.characters[0].name == "Ann"
    assert analysis.mood == "warm"


def test_ollama_health_check_unreachable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async def run():
        provider = OllamaProvider(http_client=mock_client(handler))
        return await provider.check_health()

    assert asyncio.run(run()) is False


def test_openai_invalid_key_is_credential_error():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer sk-bad"
        return httpx.Response(401, json={"error": {"message": "Incorrect API key"}})

    async def run():
        provider = OpenAIProvider(api_key="sk-bad", http_client=mock_client(handler))
        await provider.generate("hi")

    with pytest.raises(ProviderCredentialError):
        asyncio.run(run())


def test_openai_rate_limit():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "slow down"}})

    async def run():
        provider = OpenAIProvider(api_key="sk-test", http_client=mock_client(handler))
        await provider.generate("hi")

    with pytest.raises(ProviderRateLimitError):
        asyncio.run(run())


def test_openai_json_mode_request():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"choices": [{"message": {"content": "{}"}}]})

    async def run():
        provider = OpenAIProvider(api_key="sk-test", model="gpt-4o", http_client=mock_client(handler))
        return await provider.generate("hi", GenerateOptions(format="json"))

    assert asyncio.run(run()) == "{}"
    assert seen["body"]["response_format"] == {"type": "json_object"}
    assert seen["body"]["messages"][0]["role"] == "system"


def test_anthropic_invalid_key_is_credential_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={
            "type": "error",
            "error": {"type": "authentication_error", "message": "invalid x-api-key"},
        })

    async def run():
        provider = AnthropicProvider(api_key="bad", http_client=mock_client(handler))
        await provider.generate("hi")

    with pytest.raises(ProviderCredentialError):
        asyncio.run(run())


def test_anthropic_generate_joins_text_blocks():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            "id": "msg_1",
            "type": "message",
            "role": "assistant",
            "model": "claude-test",
            "content": [{"type": "text", "text": '{"a": '}, {"type": "text", "text": "1}"}],
            "stop_reason": "end_turn",
            "stop_sequence": None,
            "usage": {"input_tokens": 3, "output_tokens": 4},
        })

    async def run():
        provider = AnthropicProvider(api_key="key", model="claude-test", http_client=mock_client(handler))
        return await provider.generate("hi", GenerateOptions(format="json"))

    assert asyncio.run(run()) == '{"a": 1}'


def test_openai_embeddings_restore_input_order():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": [
            {"index": 1, "embedding": [0.0, 1.0]},
            {"index": 0, "embedding": [1.0, 0.0]},
        ]})

    async def run():
        provider = OpenAIEmbeddingProvider(api_key="sk-test", http_client=mock_client(handler))
        return await provider.embed_batch(["first", "second"])

    assert asyncio.run(run()) == [[1.0, 0.0], [0.0, 1.0]]


def test_ollama_embeddings_are_sequential():
    prompts = []

    def handler(request: httpx.Request) -> httpx.Response:
        prompts.append(json.loads(request.content)["prompt"])
        return httpx.Response(200, json={"embedding": [float(len(prompts)), 0.0]})

    async def run():
        provider = OllamaEmbeddingProvider(batch_delay=0, http_client=mock_client(handler))
        return await provider.embed_batch(["a", "b", "c"])

    assert asyncio.run(run()) == [[1.0, 0.0], [2.0, 0.0], [3.0, 0.0]]
    assert prompts == ["a", "b", "c"]


# ==================== Factory ====================

def test_normalize_aliases():
    assert normalize_llm_provider("anthropic") == "claude"
    assert normalize_llm_provider("GPT") == "chatgpt"
    assert normalize_llm_provider("openai") == "chatgpt"
    assert normalize_embedding_provider("chatgpt") == "openai"
    with pytest.raises(UnknownProviderError):
        normalize_llm_provider("bard")


def test_factory_missing_key():
    factory = ProviderFactory(credential_resolver=StaticCredentialResolver())

    with pytest.raises(ProviderCredentialError, match="No Claude API key found") as excinfo:
        factory.create_llm("user-1", "anthropic")

    assert "ANTHROPIC_API_KEY__<CALLER_ID>" in str(excinfo.value)


def test_factory_resolves_key_per_caller():
    factory = ProviderFactory(credential_resolver=StaticCredentialResolver({("user-1", "chatgpt"): "sk-1"}))

    provider = factory.create_llm("user-1", "openai", "gpt-4o")
    assert isinstance(provider, OpenAIProvider)
    assert provider.headers["Authorization"] == "Bearer sk-1"
    assert provider.model == "gpt-4o"

    with pytest.raises(ProviderCredentialError):
        factory.create_llm("user-2", "openai")


def test_factory_ollama_needs_no_key():
    factory = ProviderFactory(credential_resolver=StaticCredentialResolver())
    assert isinstance(factory.create_llm("anyone", "ollama"), OllamaProvider)


def test_available_providers():
    factory = ProviderFactory(credential_resolver=StaticCredentialResolver({("*", "claude"): "key"}))

    available = {p["name"]: p["available"] for p in factory.available_providers("user-1")}

    assert available == {"ollama": True, "claude": True, "chatgpt": False}


def test_env_resolver_prefers_caller_key():
    resolver = EnvCredentialResolver({
        "OPENAI_API_KEY": "shared",
        "OPENAI_API_KEY__ALICE_1": "alice",
    })

    assert resolver.get_api_key("alice-1", "chatgpt") == "alice"
    assert resolver.get_api_key("bob", "chatgpt") == "shared"
    assert resolver.get_api_key("bob", "ollama") is None
