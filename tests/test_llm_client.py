import json
from unittest import mock

import pytest
import requests

from chat_client.config import ProviderConfig
from chat_client.errors import ConfigurationError, TransportError
from chat_client.llm_client import ChatLLMClient
from chat_client.schemas import ChatRequest


def sse(*payloads):
    lines = []
    for payload in payloads:
        lines.append(b"data: " + (payload if isinstance(payload, bytes) else json.dumps(payload).encode()))
        lines.append(b"")
    return lines


def chunk(text, response_id="chatcmpl-1"):
    return {"id": response_id, "choices": [{"delta": {"content": text}}]}


def make_response(lines=(), *, status=200, body=None):
    response = mock.Mock(spec=requests.Response)
    response.ok = status < 400
    response.status_code = status
    response.iter_lines.return_value = iter(lines)
    response.json.return_value = body
    response.text = json.dumps(body) if body is not None else ""
    response.reason = "Error"
    return response


def make_client(response):
    session = mock.Mock(spec=requests.Session)
    session.post.return_value = response
    providers = {"google": ProviderConfig(endpoint="https://llm.test/v1/chat/completions", api_key_env="TEST_LLM_KEY")}
    return ChatLLMClient(providers, session=session), session


def request_for(provider="google"):
    return ChatRequest(
        chat_id="s1",
        model_id="google/gemini-1.5-flash",
        provider=provider,
        model="gemini-1.5-flash-latest",
        messages=({"role": "user", "content": "hi"},),
    )


class TestStreamCompletion:
    def test_parses_sse_until_done(self, monkeypatch):
        monkeypatch.setenv("TEST_LLM_KEY", "secret")
        response = make_response(sse(chunk("Hel"), chunk("lo"), b"[DONE]", chunk("ignored")))
        client, session = make_client(response)

        deltas = list(client.stream_completion(request_for()))

        assert [d.content for d in deltas] == ["Hel", "lo"]
        assert deltas[0].response_id == "chatcmpl-1"
        kwargs = session.post.call_args.kwargs
        assert kwargs["json"]["stream"] is True
        assert kwargs["json"]["model"] == "gemini-1.5-flash-latest"
        assert kwargs["headers"]["Authorization"] == "Bearer secret"
        response.close.assert_called_once()

    def test_skips_keepalives_and_garbage(self):
        response = make_response([b": keep-alive", b"data: not json", b"data: [1, 2]"] + sse(chunk("ok"), b"[DONE]"))
        client, _ = make_client(response)

        assert [d.content for d in client.stream_completion(request_for())] == ["ok"]

    def test_error_payload_raises_transport_error(self):
        response = make_response(sse(chunk("par"), {"error": {"message": "quota exceeded"}}))
        client, _ = make_client(response)

        stream = client.stream_completion(request_for())
        assert next(stream).content == "par"
        with pytest.raises(TransportError):
            next(stream)

    def test_non_2xx_raises_with_status(self):
        response = make_response(status=429, body={"error": {"message": "rate limited"}})
        client, _ = make_client(response)

        with pytest.raises(TransportError) as excinfo:
            list(client.stream_completion(request_for()))

        assert excinfo.value.status_code == 429
        assert "rate limited" in str(excinfo.value)

    def test_connection_failure_raises_transport_error(self):
        client, session = make_client(make_response())
        session.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(TransportError):
            list(client.stream_completion(request_for()))

    def test_unknown_provider_is_a_configuration_error(self):
        client, _ = make_client(make_response())

        with pytest.raises(ConfigurationError):
            list(client.stream_completion(request_for(provider="unknown")))


class TestComplete:
    def test_returns_message_content_with_sampling_options(self):
        response = make_response(body={"choices": [{"message": {"content": '"Trip Plans"'}}]})
        client, session = make_client(response)

        text = client.complete("google", "gemini", [{"role": "user", "content": "x"}], max_tokens=15, temperature=0.3)

        assert text == '"Trip Plans"'
        payload = session.post.call_args.kwargs["json"]
        assert payload["max_tokens"] == 15
        assert payload["temperature"] == 0.3
        assert payload["stream"] is False

    def test_missing_choices_returns_empty_text(self):
        client, _ = make_client(make_response(body={"choices": []}))

        assert client.complete("google", "gemini", []) == ""

    def test_non_object_body_raises_transport_error(self):
        client, _ = make_client(make_response(body=["not", "an", "object"]))

        with pytest.raises(TransportError, match="unexpected payload"):
            client.complete("google", "gemini", [])

    def test_malformed_choice_returns_empty_text(self):
        client, _ = make_client(make_response(body={"choices": ["oops"]}))

        assert client.complete("google", "gemini", []) == ""
