"""Concrete implementations for LLM providers.

Every adapter exposes the same capability set: ``validate_connection``,
``list_models``, and a streaming ``chat``. Adapters differ only in how they
talk to their provider.
"""

import asyncio
import contextlib
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from .errors import ApiError, CapabilityNotImplementedError, NetworkError
from .models import SYSTEM_ROLE, USER_ROLE, Message

logger = logging.getLogger(__name__)

OnPartialResult = Callable[[str, Callable[[], None]], Any]
OnResultChange = Callable[[str], None]


def to_wire(messages: Sequence[Message]) -> List[Dict[str, str]]:
    return [{"role": m.role, "content": m.content} for m in messages]


class LLM(ABC):
    """Abstract Base Class for all LLM providers."""

    name = "LLM"

    def __init__(self, model: str = "", temperature: float = 0.7):
        self.model = model
        self.temperature = temperature

    @property
    def model_name(self) -> str:
        return self.model or self.name

    async def validate_connection(self) -> bool:
        """Checks that the provider is reachable.

        Returns
        -------
        bool
            True when the provider answered. Transport and API failures are
            raised so the caller can report their message.
        """
        await self.list_models()
        return True

    async def list_models(self) -> List[str]:
        """Returns the model identifiers the provider offers, if it can list them."""
        return [self.model] if self.model else []

    async def chat(
        self,
        messages: Sequence[Message],
        on_partial_result: Optional[OnPartialResult] = None,
    ) -> str:
        """Streams a completion for ``messages``.

        Parameters
        ----------
        messages : Sequence[Message]
            The context window, in chronological order.
        on_partial_result : callable, optional
            Called as ``on_partial_result(text, cancel)`` with the full text
            accumulated so far and a handle that asks the stream to stop.

        Returns
        -------
        str
            The final text. A cancelled stream returns what arrived before
            the cancellation was noticed.
        """
        stop = asyncio.Event()

        def on_result_change(text: str) -> None:
            if on_partial_result is not None:
                on_partial_result(text, stop.set)

        return await self.call_chat_completion(messages, stop, on_result_change)

    @abstractmethod
    async def call_chat_completion(
        self,
        messages: Sequence[Message],
        stop: asyncio.Event,
        on_result_change: OnResultChange,
    ) -> str:
        """Provider-specific streaming call. Must check ``stop`` between chunks."""
        pass

    async def paint(self, prompt: str, num: int = 1) -> List[str]:
        raise CapabilityNotImplementedError(
            f"{self.name} does not support image generation"
        )


@contextlib.contextmanager
def _translate_sdk_errors(sdk: Any, host: Optional[str]):
    try:
        yield
    except sdk.APIConnectionError as e:
        raise NetworkError(str(e), host) from e
    except sdk.APIStatusError as e:
        raise ApiError(f"Status Code {e.status_code}, {e.message}") from e


class Ollama(LLM):
    """Talks to an Ollama server over its NDJSON streaming HTTP API."""

    name = "Ollama"

    def __init__(
        self,
        host: str = "http://127.0.0.1:11434",
        model: str = "",
        temperature: float = 0.7,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(model=model, temperature=temperature)
        self.host = host
        self._transport = transport

    def get_host(self) -> str:
        host = self.host.strip()
        if host.endswith("/"):
            host = host[:-1]
        if not host.startswith("http"):
            host = "http://" + host
        if host == "http://localhost:11434":
            host = "http://127.0.0.1:11434"
        return host

    def _client(self) -> httpx.AsyncClient:
        # Streams may legitimately stay open for minutes; only bound connecting.
        return httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=10.0), transport=self._transport
        )

    async def list_models(self) -> List[str]:
        host = self.get_host()
        try:
            async with self._client() as client:
                res = await client.get(f"{host}/api/tags")
        except httpx.RequestError as e:
            raise NetworkError(str(e) or type(e).__name__, host) from e
        if res.status_code >= 400:
            raise ApiError(f"Status Code {res.status_code}, {res.text}")
        try:
            data = res.json()
        except json.JSONDecodeError as e:
            raise ApiError(f"Invalid response from {host}/api/tags: {res.text}") from e
        if not isinstance(data, dict) or "models" not in data:
            raise ApiError(json.dumps(data))
        return [m["name"] for m in data["models"]]

    async def validate_connection(self) -> bool:
        logger.info(f"Validating Ollama connection to {self.get_host()}")
        models = await self.list_models()
        logger.info(f"Ollama reachable, {len(models)} models available")
        if not self.model and models:
            self.model = self._pick_model(models)
            logger.info(f"Ollama model not set, selected {self.model}")
        return True

    @staticmethod
    def _pick_model(models: List[str]) -> str:
        preferred = [m for m in models if "deepseek" in m.lower()]
        return preferred[0] if preferred else models[0]

    async def _ensure_model(self) -> None:
        try:
            models = await self.list_models()
        except (ApiError, NetworkError) as e:
            raise ApiError(
                "No model specified and the model list could not be fetched"
            ) from e
        if not models:
            raise ApiError("No model specified and no models are available")
        self.model = self._pick_model(models)
        logger.info(f"Ollama model not set, selected {self.model}")

    async def call_chat_completion(self, messages, stop, on_result_change) -> str:
        if not self.model:
            await self._ensure_model()

        host = self.get_host()
        payload = {
            "model": self.model,
            "messages": to_wire(messages),
            "stream": True,
            "options": {"temperature": self.temperature},
        }
        result = ""
        try:
            async with self._client() as client:
                async with client.stream("POST", f"{host}/api/chat", json=payload) as res:
                    if res.status_code >= 400:
                        body = (await res.aread()).decode("utf-8", errors="replace")
                        raise ApiError(f"Status Code {res.status_code}, {body}")
                    async for line in res.aiter_lines():
                        if stop.is_set():
                            logger.info("Ollama stream cancelled")
                            break
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError as e:
                            raise ApiError(f"Malformed stream line: {line}") from e
                        if not isinstance(data, dict):
                            raise ApiError(f"Malformed stream line: {line}")
                        if data.get("done"):
                            break
                        message = data.get("message")
                        word = message.get("content") if isinstance(message, dict) else None
                        if not isinstance(word, str):
                            raise ApiError(json.dumps(data))
                        result += word
                        on_result_change(result)
        except httpx.RequestError as e:
            raise NetworkError(str(e) or type(e).__name__, host) from e
        return result


class OpenAI(LLM):
    """OpenAI chat completions, and any host that speaks the same API."""

    name = "OpenAI"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: str = "gpt-3.5-turbo",
        temperature: float = 0.7,
        top_p: float = 1.0,
        client: Any = None,
    ):
        super().__init__(model=model, temperature=temperature)
        self.base_url = base_url
        self.top_p = top_p
        if client is None:
            from openai import AsyncOpenAI

            client = AsyncOpenAI(api_key=api_key or "", base_url=base_url)
        self.client = client

    async def list_models(self) -> List[str]:
        import openai

        with _translate_sdk_errors(openai, self.base_url):
            return [model.id async for model in self.client.models.list()]

    async def call_chat_completion(self, messages, stop, on_result_change) -> str:
        import openai

        result = ""
        with _translate_sdk_errors(openai, self.base_url):
            stream = await self.client.chat.completions.create(
                model=self.model,
                messages=to_wire(messages),
                temperature=self.temperature,
                top_p=self.top_p,
                stream=True,
            )
            async for chunk in stream:
                if stop.is_set():
                    await stream.close()
                    break
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    result += delta
                    on_result_change(result)
        return result


class LMStudio(OpenAI):
    name = "LM Studio"

    def __init__(
        self,
        host: str = "http://127.0.0.1:1234",
        model: str = "",
        temperature: float = 0.7,
        client: Any = None,
    ):
        super().__init__(
            api_key="lm-studio",
            base_url=host.rstrip("/") + "/v1",
            model=model,
            temperature=temperature,
            client=client,
        )


class SiliconFlow(OpenAI):
    name = "SiliconFlow"

    def __init__(
        self,
        api_key: Optional[str] = None,
        host: str = "https://api.siliconflow.cn",
        model: str = "THUDM/glm-4-9b-chat",
        temperature: float = 0.7,
        client: Any = None,
    ):
        super().__init__(
            api_key=api_key,
            base_url=host.rstrip("/") + "/v1",
            model=model,
            temperature=temperature,
            client=client,
        )


class PPIO(OpenAI):
    name = "PPIO"

    def __init__(
        self,
        api_key: Optional[str] = None,
        host: str = "https://api.ppinfra.com/v3/openai",
        model: str = "deepseek/deepseek-r1/community",
        temperature: float = 0.7,
        client: Any = None,
    ):
        super().__init__(
            api_key=api_key,
            base_url=host.rstrip("/"),
            model=model,
            temperature=temperature,
            client=client,
        )


class Anthropic(LLM):
    name = "Claude"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: str = "claude-3-7-sonnet-20250219",
        temperature: float = 0.7,
        max_tokens: int = 4096,
        client: Any = None,
    ):
        super().__init__(model=model, temperature=temperature)
        self.base_url = base_url
        self.max_tokens = max_tokens
        if client is None:
            from anthropic import AsyncAnthropic

            client = AsyncAnthropic(api_key=api_key or "", base_url=base_url)
        self.client = client

    async def list_models(self) -> List[str]:
        import anthropic

        with _translate_sdk_errors(anthropic, self.base_url):
            return [model.id async for model in self.client.models.list()]

    async def call_chat_completion(self, messages, stop, on_result_change) -> str:
        import anthropic

        system = "\n\n".join(m.content for m in messages if m.role == SYSTEM_ROLE)
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": to_wire([m for m in messages if m.role != SYSTEM_ROLE]),
        }
        if system:
            kwargs["system"] = system

        result = ""
        with _translate_sdk_errors(anthropic, self.base_url):
            async with self.client.messages.stream(**kwargs) as stream:
                async for text in stream.text_stream:
                    if stop.is_set():
                        break
                    result += text
                    on_result_change(result)
        return result


class Echo(LLM):
    """Offline adapter that streams the last user prompt back, word by word."""

    name = "Echo"

    def __init__(self, model: str = "echo-v1", delay: float = 0.0):
        super().__init__(model=model, temperature=0.0)
        self.delay = delay

    async def call_chat_completion(self, messages, stop, on_result_change) -> str:
        user_prompt = next(
            (m.content for m in reversed(messages) if m.role == USER_ROLE),
            "No message provided",
        )
        content = (
            "**Echo LLM - static response for testing**\n\n"
            f"_Your prompt:_\n\n{user_prompt}"
        )

        result = ""
        for word in content.split(" "):
            if stop.is_set():
                break
            result = f"{result} {word}" if result else word
            on_result_change(result)
            if self.delay:
                await asyncio.sleep(self.delay)
        return result
