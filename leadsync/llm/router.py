import hashlib
import json
import logging
import threading
from collections import OrderedDict
from typing import Any, Dict, Optional

import httpx
from openai import AsyncOpenAI

from leadsync.config import SyncSettings
from leadsync.errors import LLMUnavailableError


RESPONSE_FORMATS = ("text", "json_object")
# Requests at or below this temperature are treated as deterministic and cached.
CACHEABLE_TEMPERATURE = 0.2


logger = logging.getLogger("llm.router")


class LLMRouter:
    """Sends (system, user) prompt pairs to the configured provider and caches idempotent responses."""

    def __init__(
        self,
        settings: SyncSettings,
        *,
        openai_client: Optional[AsyncOpenAI] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings
        self.provider = settings.llm_provider
        self.cache_size = settings.llm_cache_size
        self._cache: "OrderedDict[str, str]" = OrderedDict()
        self._cache_lock = threading.Lock()
        self._openai_client = openai_client
        self._http_client = http_client

    def _get_openai(self) -> AsyncOpenAI:
        if self._openai_client is None:
            if not self.settings.openai_api_key:
                raise LLMUnavailableError("OpenAI API key not configured")
            self._openai_client = AsyncOpenAI(
                api_key=self.settings.openai_api_key,
                timeout=self.settings.llm_timeout_seconds,
            )
        return self._openai_client

    def _cache_key(self, payload: Dict[str, Any]) -> str:
        encoded = json.dumps(payload, sort_keys=True, ensure_ascii=True, default=str).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()

    def _lookup_cache(self, key: str) -> Optional[str]:
        with self._cache_lock:
            value = self._cache.get(key)
            if value is not None:
                self._cache.move_to_end(key)
            return value

    def _store_cache(self, key: str, response: str) -> None:
        with self._cache_lock:
            if key in self._cache:
                self._cache.move_to_end(key)
            self._cache[key] = response
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        response_format: str = "text",
        temperature: float = 0.7,
        max_tokens: int = 500,
    ) -> str:
        """Return the model output for a prompt pair.

        Args:
            system_prompt: Instruction block.
            user_prompt: Per-request content.
            response_format: ``"text"`` or ``"json_object"``.
            temperature: Sampling temperature.
            max_tokens: Upper bound on generated tokens.

        Returns:
            str: The stripped response text (may be empty).

        Raises:
            LLMUnavailableError: provider is not configured.
            httpx.HTTPError / openai.OpenAIError: provider call failed.
        """
        if response_format not in RESPONSE_FORMATS:
            raise ValueError(f"Unsupported response format '{response_format}'")

        payload = {
            "provider": self.provider,
            "system": system_prompt,
            "user": user_prompt,
            "format": response_format,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        cacheable = temperature <= CACHEABLE_TEMPERATURE
        cache_key = self._cache_key(payload) if cacheable else None
        if cache_key:
            cached = self._lookup_cache(cache_key)
            if cached is not None:
                return cached

        if self.provider == "local":
            text = await self._invoke_local_model(
                system_prompt, user_prompt, response_format, temperature, max_tokens
            )
        elif self.provider == "openai":
            text = await self._invoke_openai_model(
                system_prompt, user_prompt, response_format, temperature, max_tokens
            )
        else:
            raise LLMUnavailableError(f"Unknown LLM provider '{self.provider}'")

        logger.debug(
            "llm",
            extra={"llm": {"provider": self.provider, "format": response_format, "chars": len(text)}},
        )
        if cache_key and text:
            self._store_cache(cache_key, text)
        return text

    async def _invoke_openai_model(
        self,
        system_prompt: str,
        user_prompt: str,
        response_format: str,
        temperature: float,
        max_tokens: int,
    ) -> str:
        client = self._get_openai()
        kwargs: Dict[str, Any] = {}
        if response_format == "json_object":
            kwargs["response_format"] = {"type": "json_object"}
        response = await client.chat.completions.create(
            model=self.settings.llm_model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs,
        )
        if not response.choices:
            return ""
        return (response.choices[0].message.content or "").strip()

    async def _invoke_local_model(
        self,
        system_prompt: str,
        user_prompt: str,
        response_format: str,
        temperature: float,
        max_tokens: int,
    ) -> str:
        payload: Dict[str, Any] = {
            "model": self.settings.local_llm_model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }
        if response_format == "json_object":
            payload["format"] = "json"

        if self._http_client is not None:
            response = await self._http_client.post(self.settings.local_llm_url, json=payload)
            response.raise_for_status()
            data = response.json()
        else:
            async with httpx.AsyncClient(timeout=self.settings.llm_timeout_seconds) as client:
                response = await client.post(self.settings.local_llm_url, json=payload)
                response.raise_for_status()
                data = response.json()

        message = data.get("message")
        if isinstance(message, dict) and "content" in message:
            return (message["content"] or "").strip()
        if "response" in data:
            return data["response"].strip()
        if "output" in data:
            return data["output"].strip()
        return json.dumps(data, ensure_ascii=False)
