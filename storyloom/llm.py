"""AI service contract and the OpenAI-backed implementation.

Stages talk to the model only through ``AIService.invoke(stage_key,
prompt_context)``, which returns the parsed JSON object the model produced
or raises ServiceError. The runner enforces the time bound, so nothing here
waits longer than the HTTP client itself would.
"""
from __future__ import annotations

import json
import os
import re
from typing import Any, Dict, Optional

from openai import AsyncAzureOpenAI, AsyncOpenAI, BadRequestError, OpenAIError

from .context import ServiceError
from .env import env_for, env_int, env_str
from .logging import breadcrumb as _breadcrumb, log_run as _log_run
from .tokenizer import count_chat_tokens as _count_chat_tokens

DEFAULT_SYSTEM = (
    "You are the narrative engine of an interactive story. "
    "Reply with a single JSON object and nothing else."
)


def env_key_for(stage_key: str) -> str:
    """'end_of_day.planner' -> 'END_OF_DAY_PLANNER' (suffix of SL_MODEL_<KEY> etc.)."""
    return re.sub(r"[^A-Za-z0-9]+", "_", stage_key).strip("_").upper()


class AIService:
    """Interface every stage handler calls. Implementations raise ServiceError on failure."""

    async def invoke(self, stage_key: str, prompt_context: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError


def make_client():
    """Build an async client from the environment; ServiceError when no key is configured."""
    api_key = env_str("OPENAI_API_KEY")
    max_retries = env_int("SL_OPENAI_MAX_RETRIES", 2)
    azure_endpoint = env_str("AZURE_OPENAI_ENDPOINT")
    if azure_endpoint:
        api_version = os.getenv("AZURE_OPENAI_API_VERSION", "2024-02-01")
        ak = env_str("AZURE_OPENAI_API_KEY") or api_key
        if not ak:
            raise ServiceError("No API key configured (AZURE_OPENAI_API_KEY / OPENAI_API_KEY)")
        _log_run(f"LLM client | azure:{azure_endpoint}|v={api_version}")
        return AsyncAzureOpenAI(azure_endpoint=azure_endpoint, api_version=api_version, api_key=ak, max_retries=max_retries)
    if not api_key:
        raise ServiceError("No API key configured (OPENAI_API_KEY)")
    base_url = env_str("OPENAI_BASE_URL")
    if base_url:
        bu = base_url.strip()
        if not re.search(r"/v\d+/?$", bu):
            bu = bu.rstrip("/") + "/v1"
        _log_run(f"LLM client | base_url:{bu}")
        return AsyncOpenAI(base_url=bu, api_key=api_key, max_retries=max_retries)
    _log_run("LLM client | default")
    return AsyncOpenAI(api_key=api_key, max_retries=max_retries)


def parse_json_object(text: str) -> Dict[str, Any]:
    """Parse the model reply; tolerates a ```json fence around the object."""
    s = (text or "").strip()
    fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", s, re.DOTALL)
    if fenced:
        s = fenced.group(1)
    try:
        obj = json.loads(s)
    except json.JSONDecodeError as e:
        head = (s[:120] + "...") if len(s) > 120 else s
        raise ServiceError(f"Malformed JSON from model: {e.msg} | {head!r}")
    if not isinstance(obj, dict):
        raise ServiceError(f"Expected a JSON object from model, got {type(obj).__name__}")
    return obj


class OpenAIService(AIService):
    def __init__(self, client=None, *, default_temp: float = 0.7, default_max_tokens: int = 4000):
        self._client = client
        self.default_temp = default_temp
        self.default_max_tokens = default_max_tokens

    @property
    def client(self):
        if self._client is None:
            self._client = make_client()
        return self._client

    async def invoke(self, stage_key: str, prompt_context: Dict[str, Any]) -> Dict[str, Any]:
        model, temperature, max_tokens = env_for(
            env_key_for(stage_key), default_temp=self.default_temp, default_max_tokens=self.default_max_tokens
        )
        messages = [
            {"role": "system", "content": str(prompt_context.get("system") or DEFAULT_SYSTEM)},
            {"role": "user", "content": str(prompt_context.get("user") or "")},
        ]
        token_param = os.getenv("SL_TOKENS_PARAM", "max_tokens").strip() or "max_tokens"
        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "response_format": {"type": "json_object"},
            token_param: int(max_tokens),
        }
        try:
            ptoks = int(_count_chat_tokens(messages, model))
        except Exception:
            ptoks = 0
        _breadcrumb(f"llm:invoke:{stage_key}")
        _log_run(
            f"LLM request | stage={stage_key} model={model} temp={temperature} param={token_param} "
            f"prompt_tokens={ptoks} limit={max_tokens}"
        )
        content = await self._create(kwargs, max_tokens)
        return parse_json_object(content)

    async def _create(self, kwargs: Dict[str, Any], max_tokens: int) -> str:
        try:
            try:
                resp = await self.client.chat.completions.create(**kwargs)
            except BadRequestError as e:
                msg = str(e)
                if "Unsupported parameter" in msg and "max_tokens" in msg:
                    kwargs.pop("max_tokens", None)
                    kwargs["max_completion_tokens"] = int(max_tokens)
                    resp = await self.client.chat.completions.create(**kwargs)
                else:
                    raise
        except OpenAIError as e:
            raise ServiceError(str(e)) from e
        usage = getattr(resp, "usage", None)
        if usage is not None:
            _log_run(
                f"LLM response | usage prompt={getattr(usage, 'prompt_tokens', None)} "
                f"completion={getattr(usage, 'completion_tokens', None)} total={getattr(usage, 'total_tokens', None)}"
            )
        if not resp.choices:
            raise ServiceError("Model returned no choices")
        return resp.choices[0].message.content or ""


def default_service(client: Optional[Any] = None) -> AIService:
    return OpenAIService(client)
