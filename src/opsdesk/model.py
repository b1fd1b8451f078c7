# model.py
# Inference capability. Wraps an OpenAI-compatible chat completions endpoint
# (OpenRouter by default) and reduces each reply to a ModelResponse: free text
# and/or a list of requested operations.
#
# The loop never sees provider objects. Provider and transport faults come
# out as ModelCallError.

import json
import re
from typing import Any, Protocol, Sequence

from openai import OpenAI, OpenAIError

from opsdesk.config import AgentConfig
from opsdesk.errors import ConfigurationError, ModelCallError
from opsdesk.models import Message, ModelResponse, OperationRequest


class InferenceModel(Protocol):
    def infer(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: list[dict[str, Any]],
        temperature: float,
        max_tokens: int,
    ) -> ModelResponse: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_arguments(raw: str | None) -> dict[str, Any] | None:
    """
    Decode a tool call's argument string.

    Returns None when the string is not a JSON object, so the registry can
    report the call as invalid instead of guessing.
    """
    text = (raw or "").strip()
    if not text:
        return {}

    # Some providers wrap arguments in a markdown code block.
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)

    try:
        # strict=False allows literal newlines inside strings
        value = json.loads(text, strict=False)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def to_wire(system_prompt: str, messages: Sequence[Message]) -> list[dict[str, str]]:
    wire = [{"role": "system", "content": system_prompt}]
    wire.extend({"role": m.role, "content": m.content} for m in messages)
    return wire


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ChatModel:
    """
    Function-calling chat model behind an OpenAI-compatible API.

    Example:
        model = ChatModel(AgentConfig.from_env())
        response = model.infer(prompt, history, registry.tool_schemas(), 0.7, 2048)
    """

    def __init__(self, config: AgentConfig, client: OpenAI | None = None) -> None:
        if client is None:
            if not config.api_key:
                raise ConfigurationError("OPENROUTER_API_KEY is not set.")
            client = OpenAI(
                base_url=config.base_url,
                api_key=config.api_key,
                timeout=config.model_timeout,
            )
        self._client = client
        self._model = config.model

    @property
    def name(self) -> str:
        return self._model

    def infer(
        self,
        system_prompt: str,
        messages: Sequence[Message],
        tools: list[dict[str, Any]],
        temperature: float,
        max_tokens: int,
    ) -> ModelResponse:
        request: dict[str, Any] = {
            "model": self._model,
            "messages": to_wire(system_prompt, messages),
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"

        try:
            response = self._client.chat.completions.create(**request)
        except OpenAIError as exc:
            raise ModelCallError(f"AI Agent failed: {exc}") from exc

        if not response.choices:
            raise ModelCallError("AI Agent failed: the model returned no choices.")

        message = response.choices[0].message
        requested = [
            OperationRequest(
                name=call.function.name,
                parameters=parse_arguments(call.function.arguments),
            )
            for call in (message.tool_calls or [])
        ]
        return ModelResponse(text=(message.content or "").strip(), requested_operations=requested)
