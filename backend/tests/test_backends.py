"""
Tests for the provider backends.

SDK clients are replaced with MagicMocks; response objects are plain
SimpleNamespaces shaped like the SDK types the backends read.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import httpx
import openai
import pytest

from backends import get_backend
from backends.anthropic import MAX_TOKENS, THINKING_BUDGET, AnthropicBackend
from backends.base import IncrementalStream, part_url, split_system
from backends.gemini import GeminiBackend, from_gemini_parts
from backends.openai_compat import OpenAIChatBackend, to_openai_messages
from backends.openai_responses import OpenAIResponsesBackend, should_use_responses_api, supports_responses_reasoning
from config import BackendSettings
from errors import BackendError, DependencyError, ErrorCode, StreamProtocolError, ValidationError
from services.messages import ChatMessage, MessagePart, PartType, Role


class FakeStream:
    """Iterable SDK stream with a close() hook."""

    def __init__(self, events):
        self.events = events
        self.closed = False

    def __iter__(self):
        return iter(self.events)

    def close(self):
        self.closed = True


def _settings(name, api_key="sk-test"):
    return BackendSettings(name=name, api_key=api_key)


def _backend(cls, name, model, apply_policy=True):
    backend = cls(name, model, _settings(name), apply_policy=apply_policy)
    backend._client = MagicMock()
    return backend


class TestFactory:
    """Test get_backend dispatch."""

    @pytest.mark.parametrize(
        "name,model,expected",
        [
            ("openai", "gpt-4o", OpenAIChatBackend),
            ("openai", "o3-mini", OpenAIResponsesBackend),
            ("openai", "gpt-5", OpenAIResponsesBackend),
            ("claude", "claude-sonnet-4", AnthropicBackend),
            ("gemini", "gemini-2.5-pro", GeminiBackend),
            ("deepseek", "deepseek-chat", OpenAIChatBackend),
            ("ollama", "llama3", OpenAIChatBackend),
        ],
    )
    def test_dispatch(self, name, model, expected):
        backend = get_backend(name, model, _settings(name))
        assert isinstance(backend, expected)
        assert backend.backend_name == name
        assert backend.model == model

    def test_missing_sdk(self):
        """A missing provider SDK surfaces as DependencyError."""
        with patch("backends.importlib.import_module", side_effect=ImportError("No module named 'anthropic'")):
            with pytest.raises(DependencyError) as exc:
                get_backend("claude", "claude-sonnet-4", _settings("claude"))
        assert exc.value.context["install_hint"] == "pip install anthropic"

    def test_responses_prefixes(self):
        assert should_use_responses_api("o4-mini")
        assert should_use_responses_api("GPT-5.1")
        assert not should_use_responses_api("gpt-4o")
        assert not should_use_responses_api("chatgpt-4o-latest")


class TestIncrementalStream:
    """Test the stream handle."""

    def test_close_stops_iteration_and_runs_hook(self):
        hook = MagicMock()
        stream = IncrementalStream([ChatMessage.assistant("a"), ChatMessage.assistant("b")], on_close=hook)

        assert next(stream).content == "a"
        stream.close()
        stream.close()

        assert stream.closed
        assert list(stream) == []
        hook.assert_called_once()

    def test_context_manager_closes(self):
        with IncrementalStream([]) as stream:
            pass
        assert stream.closed


class TestHelpers:
    """Test shared translation helpers."""

    def test_part_url(self):
        assert part_url(MessagePart(type=PartType.IMAGE_URL, url="https://x/a.png")) == "https://x/a.png"
        inline = MessagePart(type=PartType.IMAGE_URL, base64_data="aGk=", mime_type="image/png")
        assert part_url(inline) == "data:image/png;base64,aGk="

    def test_split_system(self):
        system, rest = split_system([ChatMessage.system("be brief"), ChatMessage.user("hi")])
        assert system == "be brief"
        assert [m.role for m in rest] == [Role.USER]

    def test_to_openai_messages_multimodal(self):
        message = ChatMessage.user(
            "look",
            parts=[
                MessagePart(type=PartType.IMAGE_URL, url="https://x/a.png"),
                MessagePart(type=PartType.AUDIO_URL, base64_data="UklG", mime_type="audio/wav"),
            ],
        )
        entry = to_openai_messages([message])[0]

        assert entry["role"] == "user"
        assert entry["content"][0] == {"type": "text", "text": "look"}
        assert entry["content"][1] == {"type": "image_url", "image_url": {"url": "https://x/a.png"}}
        assert entry["content"][2]["input_audio"] == {"data": "UklG", "format": "wav"}


class TestOpenAIChatBackend:
    """Test Chat Completions thinking policy, parsing and streaming."""

    @pytest.mark.parametrize(
        "backend_name,model,thinking,expected",
        [
            ("openai", "o3-mini", True, {"reasoning_effort": "high"}),
            ("openai", "gpt-5", False, {"reasoning_effort": "low"}),
            ("openai", "gpt-5.1", False, {"reasoning_effort": "none"}),
            ("openai", "gpt-4o", True, {}),
            ("openai", "o3-mini", None, {}),
            ("grok", "grok-4-fast-reasoning", True, {"reasoning_effort": "high"}),
            ("grok", "grok-4-fast-reasoning", False, {"reasoning_effort": "low"}),
            ("grok", "grok-4", True, {}),
            ("deepseek", "deepseek-reasoner", True, {}),
        ],
    )
    def test_thinking_params(self, backend_name, model, thinking, expected):
        backend = _backend(OpenAIChatBackend, backend_name, model)
        assert backend.thinking_params(thinking) == expected

    def test_policy_off_sends_nothing(self):
        backend = _backend(OpenAIChatBackend, "openai", "o3-mini", apply_policy=False)
        assert backend.thinking_params(True) == {}

    def test_complete(self):
        backend = _backend(OpenAIChatBackend, "deepseek", "deepseek-reasoner")
        call = SimpleNamespace(id="call_1", type="function", function=SimpleNamespace(name="lookup", arguments="{}"))
        message = SimpleNamespace(content="Answer", reasoning_content="Because", tool_calls=[call])
        backend._client.chat.completions.create.return_value = SimpleNamespace(
            choices=[SimpleNamespace(message=message)]
        )

        result = backend.complete([ChatMessage.user("q")], thinking=True)

        assert result.role == Role.ASSISTANT
        assert result.content == "Answer"
        assert result.reasoning_content == "Because"
        assert result.tool_calls[0].function.name == "lookup"
        kwargs = backend._client.chat.completions.create.call_args.kwargs
        assert kwargs["messages"] == [{"role": "user", "content": "q"}]
        assert "reasoning_effort" not in kwargs

    def test_complete_empty_choices(self):
        backend = _backend(OpenAIChatBackend, "openai", "gpt-4o")
        backend._client.chat.completions.create.return_value = SimpleNamespace(choices=[])

        with pytest.raises(BackendError) as exc:
            backend.complete([ChatMessage.user("q")])
        assert exc.value.code == ErrorCode.BACKEND_RESPONSE_INVALID

    def test_timeout_wrapped(self):
        backend = _backend(OpenAIChatBackend, "openai", "gpt-4o")
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        backend._client.chat.completions.create.side_effect = openai.APITimeoutError(request=request)

        with pytest.raises(BackendError) as exc:
            backend.complete([ChatMessage.user("q")])
        assert exc.value.code == ErrorCode.BACKEND_TIMEOUT

    def test_stream(self):
        backend = _backend(OpenAIChatBackend, "openrouter", "openrouter/deepseek/deepseek-r1")

        def chunk(content=None, reasoning=None):
            delta = SimpleNamespace(content=content, reasoning_content=None, reasoning=reasoning)
            return SimpleNamespace(choices=[SimpleNamespace(delta=delta)])

        sdk_stream = FakeStream(
            [chunk(reasoning="hmm"), chunk(content="He"), chunk(content="llo"), SimpleNamespace(choices=[])]
        )
        backend._client.chat.completions.create.return_value = sdk_stream

        stream = backend.stream_incremental([ChatMessage.user("q")])
        chunks = list(stream)

        assert [(c.reasoning_content, c.content) for c in chunks] == [("hmm", ""), ("", "He"), ("", "llo")]
        assert backend._client.chat.completions.create.call_args.kwargs["stream"] is True
        stream.close()
        assert sdk_stream.closed


class TestOpenAIResponsesBackend:
    """Test the Responses API backend."""

    def test_thinking_params(self):
        backend = _backend(OpenAIResponsesBackend, "openai", "o3")
        assert backend.thinking_params(True) == {"reasoning": {"effort": "high", "summary": "detailed"}}
        assert backend.thinking_params(False) == {"reasoning": {"effort": "low"}}
        assert backend.thinking_params(None) == {}

    @pytest.mark.parametrize("model", ["o4-mini", "o1", "gpt-5-mini", "gpt-6"])
    def test_reasoning_models_get_reasoning_block(self, model):
        backend = _backend(OpenAIResponsesBackend, "openai", model)
        assert backend.thinking_params(True) == {"reasoning": {"effort": "high", "summary": "detailed"}}
        assert backend.thinking_params(False) == {"reasoning": {"effort": "low"}}

    def test_reasoning_check(self):
        assert supports_responses_reasoning("o4-mini")
        assert supports_responses_reasoning("O3-pro")
        assert not supports_responses_reasoning("gpt-4o")

    def test_system_becomes_instructions(self):
        backend = _backend(OpenAIResponsesBackend, "openai", "gpt-5")
        backend._client.responses.create.return_value = SimpleNamespace(
            output=[SimpleNamespace(type="reasoning", summary=[SimpleNamespace(text="thought")])],
            output_text="done",
        )

        result = backend.complete([ChatMessage.system("be brief"), ChatMessage.user("q")])

        kwargs = backend._client.responses.create.call_args.kwargs
        assert kwargs["instructions"] == "be brief"
        assert kwargs["input"] == [{"role": "user", "content": [{"type": "input_text", "text": "q"}]}]
        assert (result.content, result.reasoning_content) == ("done", "thought")

    def test_stream_events(self):
        backend = _backend(OpenAIResponsesBackend, "openai", "o3")
        backend._client.responses.create.return_value = FakeStream(
            [
                SimpleNamespace(type="response.created"),
                SimpleNamespace(type="response.reasoning_summary_text.delta", delta="step"),
                SimpleNamespace(type="response.reasoning_summary_part.done"),
                SimpleNamespace(type="response.output_text.delta", delta="Hi"),
                SimpleNamespace(type="response.completed"),
            ]
        )

        chunks = list(backend.stream_incremental([ChatMessage.user("q")]))
        assert [(c.reasoning_content, c.content) for c in chunks] == [("step", ""), ("\n\n", ""), ("", "Hi")]

    def test_stream_error_event(self):
        backend = _backend(OpenAIResponsesBackend, "openai", "o3")
        backend._client.responses.create.return_value = FakeStream(
            [SimpleNamespace(type="error", message="overloaded")]
        )

        with pytest.raises(BackendError):
            list(backend.stream_incremental([ChatMessage.user("q")]))

    def test_malformed_delta(self):
        backend = _backend(OpenAIResponsesBackend, "openai", "o3")
        backend._client.responses.create.return_value = FakeStream(
            [SimpleNamespace(type="response.output_text.delta", delta=None)]
        )

        with pytest.raises(StreamProtocolError):
            list(backend.stream_incremental([ChatMessage.user("q")]))


class TestAnthropicBackend:
    """Test the Anthropic backend."""

    def test_thinking_only_when_enabled(self):
        backend = _backend(AnthropicBackend, "claude", "claude-sonnet-4")
        assert backend.thinking_params(True) == {"thinking": {"type": "enabled", "budget_tokens": THINKING_BUDGET}}
        assert backend.thinking_params(False) == {}
        assert backend.thinking_params(None) == {}

    def test_complete(self):
        backend = _backend(AnthropicBackend, "claude", "claude-sonnet-4")
        backend._client.messages.create.return_value = SimpleNamespace(
            content=[
                SimpleNamespace(type="thinking", thinking="pondering"),
                SimpleNamespace(type="text", text="Answer"),
            ]
        )

        result = backend.complete([ChatMessage.system("be brief"), ChatMessage.user("q")], thinking=True)

        kwargs = backend._client.messages.create.call_args.kwargs
        assert kwargs["max_tokens"] == MAX_TOKENS
        assert kwargs["system"] == "be brief"
        assert kwargs["messages"] == [{"role": "user", "content": "q"}]
        assert kwargs["thinking"]["budget_tokens"] == THINKING_BUDGET
        assert (result.content, result.reasoning_content) == ("Answer", "pondering")

    def test_stream(self):
        backend = _backend(AnthropicBackend, "claude", "claude-sonnet-4")

        def delta(kind, **fields):
            return SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type=kind, **fields))

        sdk_stream = FakeStream(
            [
                SimpleNamespace(type="message_start"),
                delta("thinking_delta", thinking="hmm"),
                delta("text_delta", text="Hi"),
                SimpleNamespace(type="message_stop"),
            ]
        )
        backend._client.messages.create.return_value = sdk_stream

        stream = backend.stream_incremental([ChatMessage.user("q")])
        assert [(c.reasoning_content, c.content) for c in stream] == [("hmm", ""), ("", "Hi")]
        stream.close()
        assert sdk_stream.closed


class TestGeminiBackend:
    """Test the Gemini backend."""

    @staticmethod
    def _part(text="", thought=False, inline_data=None):
        return SimpleNamespace(text=text, thought=thought, inline_data=inline_data)

    @staticmethod
    def _response(parts):
        return SimpleNamespace(candidates=[SimpleNamespace(content=SimpleNamespace(parts=parts))])

    def test_thinking_config(self):
        backend = _backend(GeminiBackend, "gemini", "gemini-3-pro")

        high = backend.thinking_params(True)["thinking_config"]
        low = backend.thinking_params(False)["thinking_config"]
        assert high.include_thoughts is True and high.thinking_level == "HIGH"
        assert low.include_thoughts is False and low.thinking_level == "LOW"
        assert backend.thinking_params(None) == {}

    def test_image_models_request_images(self):
        image_model = _backend(GeminiBackend, "gemini", "gemini-2.5-flash-image")
        text_model = _backend(GeminiBackend, "gemini", "gemini-2.5-flash")

        assert image_model._config("", None).response_modalities == ["TEXT", "IMAGE"]
        assert text_model._config("sys", None).response_modalities is None

    def test_from_parts(self):
        inline = SimpleNamespace(data=b"png-bytes", mime_type="image/png")
        message = from_gemini_parts(
            [self._part("plan", thought=True), self._part("Here"), self._part(inline_data=inline)]
        )

        assert message.reasoning_content == "plan"
        assert message.content == "Here"
        assert message.assistant_gen_multi_content[0].type == PartType.IMAGE_URL
        assert message.assistant_gen_multi_content[0].base64_data == "cG5nLWJ5dGVz"

    def test_complete(self):
        backend = _backend(GeminiBackend, "gemini", "gemini-2.5-pro")
        backend._client.models.generate_content.return_value = self._response([self._part("Answer")])

        result = backend.complete([ChatMessage.system("be brief"), ChatMessage.user("q")])

        kwargs = backend._client.models.generate_content.call_args.kwargs
        assert kwargs["config"].system_instruction == "be brief"
        assert len(kwargs["contents"]) == 1
        assert result.content == "Answer"

    def test_no_candidates(self):
        backend = _backend(GeminiBackend, "gemini", "gemini-2.5-pro")
        backend._client.models.generate_content.return_value = SimpleNamespace(candidates=[])

        with pytest.raises(BackendError) as exc:
            backend.complete([ChatMessage.user("q")])
        assert exc.value.code == ErrorCode.BACKEND_RESPONSE_INVALID

    def test_missing_key(self):
        backend = GeminiBackend("gemini", "gemini-2.5-pro", BackendSettings(name="gemini"))
        with pytest.raises(BackendError):
            backend.complete([ChatMessage.user("q")])

    def test_stream_skips_empty_chunks(self):
        backend = _backend(GeminiBackend, "gemini", "gemini-2.5-pro")
        backend._client.models.generate_content_stream.return_value = iter(
            [self._response([self._part("He")]), SimpleNamespace(candidates=[]), self._response([self._part("llo")])]
        )

        chunks = list(backend.stream_incremental([ChatMessage.user("q")]))
        assert [c.content for c in chunks] == ["He", "llo"]

    def test_stream_close_closes_client(self):
        """Closing the stream shuts the per-turn client so a blocked read returns."""
        backend = _backend(GeminiBackend, "gemini", "gemini-2.5-pro")
        backend._client.models.generate_content_stream.return_value = iter(
            [self._response([self._part("He")]), self._response([self._part("llo")])]
        )

        stream = backend.stream_incremental([ChatMessage.user("q")])
        assert next(stream).content == "He"
        stream.close()

        backend._client.close.assert_called_once()
        assert list(stream) == []

    def test_invalid_inline_data(self):
        backend = _backend(GeminiBackend, "gemini", "gemini-2.5-pro")
        bad = MessagePart(type=PartType.IMAGE_URL, base64_data="not base64!", mime_type="image/png")

        with pytest.raises(ValidationError) as exc:
            backend.complete([ChatMessage.user("look", parts=[bad])])

        assert exc.value.code == ErrorCode.VALIDATION_INVALID_FORMAT
        backend._client.models.generate_content.assert_not_called()
