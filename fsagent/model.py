"""Model clients: the transport interface, a LiteLLM adapter and a scripted fake."""

import json
import logging
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from .conversation import (
    MODEL,
    FunctionCall,
    FunctionResponse,
    TextPart,
    Turn,
)
from .report import AgentError, ConfigError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_PROVIDER = "cloudflare"
PROVIDERS = ("cloudflare", "gemini", "generic")

CF_GATEWAY_URL = "https://gateway.ai.cloudflare.com/v1/{account_id}/{gateway}/compat"


@dataclass
class ModelResponse:
    """One model reply.

    content is the turn appended to the conversation; text and
    function_calls are views over it.
    """

    content: Turn
    finish_reason: str = "stop"
    raw: Any = None

    @property
    def text(self) -> str | None:
        return self.content.text

    @property
    def function_calls(self) -> list[FunctionCall]:
        return self.content.function_calls


class ModelClient(ABC):
    """Request/response transport to an inference endpoint."""

    @abstractmethod
    def generate(
        self,
        model: str,
        turns: Sequence[Turn],
        *,
        system_instruction: str | None = None,
        tools: list[dict] | None = None,
    ) -> ModelResponse:
        """Send the conversation and tool declarations, return the reply.

        Raises AgentError on transport failure.
        """


def make_response(
    text: str | None = None,
    function_calls: Iterable[FunctionCall | tuple] = (),
    finish_reason: str | None = None,
) -> ModelResponse:
    """Build a model reply from text and (name, args) pairs or FunctionCalls."""
    parts: list = []
    if text:
        parts.append(TextPart(text))
    calls = []
    for call in function_calls:
        if not isinstance(call, FunctionCall):
            name, args = call
            call = FunctionCall(name=name, args=dict(args or {}))
        calls.append(call)
    parts.extend(calls)
    if finish_reason is None:
        finish_reason = "tool_calls" if calls else "stop"
    return ModelResponse(
        content=Turn(MODEL, tuple(parts)), finish_reason=finish_reason
    )


class ScriptedModelClient(ModelClient):
    """In-memory client that replays canned responses.

    Every generate() call is recorded in .calls. Once the script runs
    out, the last response repeats when repeat_last is set; otherwise an
    AgentError is raised.
    """

    def __init__(self, responses: Iterable[ModelResponse] = (), repeat_last=False):
        self.responses = list(responses)
        self.repeat_last = repeat_last
        self.calls: list[dict] = []
        self._index = 0

    def generate(self, model, turns, *, system_instruction=None, tools=None):
        self.calls.append(
            {
                "model": model,
                "turns": tuple(turns),
                "system_instruction": system_instruction,
                "tools": tools,
            }
        )
        if self._index < len(self.responses):
            response = self.responses[self._index]
            self._index += 1
            return response
        if self.repeat_last and self.responses:
            return self.responses[-1]
        raise AgentError("scripted model client has no more responses")


# ---------------------------------------------------------------------------
# LiteLLM adapter
# ---------------------------------------------------------------------------


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def turns_to_messages(
    turns: Sequence[Turn], system_instruction: str | None = None
) -> list[dict]:
    """Translate turns into OpenAI-style chat messages."""
    messages: list[dict] = []
    if system_instruction:
        messages.append({"role": "system", "content": system_instruction})

    for turn in turns:
        if turn.role == MODEL:
            msg: dict = {"role": "assistant", "content": turn.text}
            calls = turn.function_calls
            if calls:
                msg["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": json.dumps(call.args),
                        },
                    }
                    for call in calls
                ]
            messages.append(msg)
            continue

        texts: list[str] = []
        for part in turn.parts:
            if isinstance(part, FunctionResponse):
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": part.id,
                        "content": json.dumps(part.response, default=str),
                    }
                )
            elif isinstance(part, TextPart):
                texts.append(part.text)
        if texts:
            messages.append({"role": "user", "content": "".join(texts)})
    return messages


def declarations_to_tools(declarations: list[dict] | None) -> list[dict] | None:
    if not declarations:
        return None
    return [{"type": "function", "function": decl} for decl in declarations]


def message_to_turn(msg) -> Turn:
    """Convert a litellm response message into a model turn."""
    parts: list = []
    content = getattr(msg, "content", None)
    if content:
        parts.append(TextPart(content))
    for tc in getattr(msg, "tool_calls", None) or []:
        raw_args = tc.function.arguments
        if isinstance(raw_args, dict):
            args = raw_args
        else:
            try:
                args = json.loads(raw_args) if raw_args else {}
            except (json.JSONDecodeError, TypeError) as e:
                logger.warning(
                    "invalid JSON arguments for %s, using {}: %s", tc.function.name, e
                )
                args = {}
            if not isinstance(args, dict):
                logger.warning(
                    "non-object arguments for %s, using {}", tc.function.name
                )
                args = {}
        parts.append(
            FunctionCall(
                name=tc.function.name,
                args=args,
                id=getattr(tc, "id", None) or _new_call_id(),
            )
        )
    return Turn(MODEL, tuple(parts))


class LiteLLMClient(ModelClient):
    """Production transport built on litellm.completion()."""

    def __init__(
        self,
        *,
        provider: str = DEFAULT_PROVIDER,
        api_base: str | None = None,
        api_key: str | None = None,
        extra_kwargs: dict | None = None,
    ):
        if provider not in PROVIDERS:
            raise ConfigError(f"unknown provider {provider!r}")
        self.provider = provider
        self.api_base = api_base
        self.api_key = api_key
        self.extra_kwargs = dict(extra_kwargs or {})

    def model_string(self, model: str) -> str:
        """Map a bare model id to the litellm route for this provider."""
        if self.provider == "cloudflare":
            bare = model.removeprefix("google-ai-studio/")
            return f"openai/google-ai-studio/{bare}"
        if self.provider == "gemini":
            return f"gemini/{model.removeprefix('gemini/')}"
        return f"openai/{model.removeprefix('openai/')}"

    def generate(self, model, turns, *, system_instruction=None, tools=None):
        import litellm

        litellm.suppress_debug_info = True

        kwargs = dict(self.extra_kwargs)
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.api_key:
            kwargs["api_key"] = self.api_key
        chat_tools = declarations_to_tools(tools)
        if chat_tools:
            kwargs["tools"] = chat_tools
            kwargs["tool_choice"] = "auto"

        try:
            response = litellm.completion(
                model=self.model_string(model),
                messages=turns_to_messages(turns, system_instruction),
                **kwargs,
            )
        except Exception as e:
            raise AgentError(f"LLM call failed: {e}") from e

        choice = response.choices[0]
        return ModelResponse(
            content=message_to_turn(choice.message),
            finish_reason=choice.finish_reason or "stop",
            raw=response,
        )


def resolve_provider(
    provider: str = DEFAULT_PROVIDER,
    *,
    api_key: str | None = None,
    base_url: str | None = None,
    account_id: str | None = None,
    gateway: str | None = None,
    env: dict | None = None,
) -> LiteLLMClient:
    """Build a LiteLLMClient, filling credentials from the environment."""
    env = os.environ if env is None else env

    if provider == "cloudflare":
        account_id = account_id or env.get("CF_ACCOUNT_ID")
        gateway = gateway or env.get("CF_GATEWAY_NAME")
        api_key = api_key or env.get("CF_AIG_TOKEN")
        if not (account_id and gateway and api_key):
            raise ConfigError(
                "Missing Cloudflare AI Gateway credentials. "
                "Required: CF_ACCOUNT_ID, CF_GATEWAY_NAME, CF_AIG_TOKEN "
                "(or --account-id, --gateway, --api-key)"
            )
        api_base = base_url or CF_GATEWAY_URL.format(
            account_id=account_id, gateway=gateway
        )
        return LiteLLMClient(provider=provider, api_base=api_base, api_key=api_key)

    if provider == "gemini":
        api_key = api_key or env.get("GEMINI_API_KEY")
        if not api_key:
            raise ConfigError("gemini provider requires GEMINI_API_KEY or --api-key")
        return LiteLLMClient(provider=provider, api_base=base_url, api_key=api_key)

    if provider == "generic":
        if not base_url:
            raise ConfigError("generic provider requires --base-url")
        api_key = api_key or env.get("OPENAI_API_KEY") or "none"
        return LiteLLMClient(provider=provider, api_base=base_url, api_key=api_key)

    raise ConfigError(f"unknown provider {provider!r}")
