"""Process-wide settings.

Each provider owns its configuration: host, model, sampling and credentials
live on the provider's config variant, which knows how to build its adapter.
``Settings`` only records which variant is active plus the options the
generation pipeline reads directly.
"""

import os
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from . import llm
from .models import ModelProvider

DEFAULT_PROMPT = (
    "You are a helpful assistant. You can help me by answering my questions. "
    "You can also ask me questions."
)


class ProviderConfig(BaseModel, ABC):
    """Configuration of one provider, able to build its adapter."""

    model: str = ""
    temperature: float = 0.7

    @abstractmethod
    def create_llm(self) -> llm.LLM:
        pass


class OllamaConfig(ProviderConfig):
    host: str = "http://127.0.0.1:11434"
    model: str = ""

    def create_llm(self) -> llm.LLM:
        return llm.Ollama(host=self.host, model=self.model, temperature=self.temperature)


class OpenAIConfig(ProviderConfig):
    api_key: str = ""
    api_host: str = "https://api.openai.com/v1"
    model: str = "gpt-3.5-turbo"
    top_p: float = 1.0

    def create_llm(self) -> llm.LLM:
        return llm.OpenAI(
            api_key=self.api_key or os.environ.get("OPENAI_API_KEY"),
            base_url=self.api_host,
            model=self.model,
            temperature=self.temperature,
            top_p=self.top_p,
        )


class ClaudeConfig(ProviderConfig):
    api_key: str = ""
    api_host: str = "https://api.anthropic.com"
    model: str = "claude-3-7-sonnet-20250219"

    def create_llm(self) -> llm.LLM:
        return llm.Anthropic(
            api_key=self.api_key or os.environ.get("ANTHROPIC_API_KEY"),
            base_url=self.api_host,
            model=self.model,
            temperature=self.temperature,
        )


class LMStudioConfig(ProviderConfig):
    host: str = "http://127.0.0.1:1234"
    model: str = ""

    def create_llm(self) -> llm.LLM:
        return llm.LMStudio(host=self.host, model=self.model, temperature=self.temperature)


class SiliconFlowConfig(ProviderConfig):
    api_key: str = ""
    host: str = "https://api.siliconflow.cn"
    model: str = "THUDM/glm-4-9b-chat"

    def create_llm(self) -> llm.LLM:
        return llm.SiliconFlow(
            api_key=self.api_key or os.environ.get("SILICONFLOW_API_KEY"),
            host=self.host,
            model=self.model,
            temperature=self.temperature,
        )


class PPIOConfig(ProviderConfig):
    api_key: str = ""
    host: str = "https://api.ppinfra.com/v3/openai"
    model: str = "deepseek/deepseek-r1/community"

    def create_llm(self) -> llm.LLM:
        return llm.PPIO(
            api_key=self.api_key or os.environ.get("PPIO_API_KEY"),
            host=self.host,
            model=self.model,
            temperature=self.temperature,
        )


class EchoConfig(ProviderConfig):
    model: str = "echo-v1"
    delay: float = 0.0

    def create_llm(self) -> llm.LLM:
        return llm.Echo(model=self.model, delay=self.delay)


class Settings(BaseModel):
    """Configuration read by the pipeline on every generation request."""

    ai_provider: ModelProvider = ModelProvider.OLLAMA
    openai_max_context_message_count: int = 10
    default_prompt: str = DEFAULT_PROMPT

    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)
    claude: ClaudeConfig = Field(default_factory=ClaudeConfig)
    lm_studio: LMStudioConfig = Field(default_factory=LMStudioConfig)
    silicon_flow: SiliconFlowConfig = Field(default_factory=SiliconFlowConfig)
    ppio: PPIOConfig = Field(default_factory=PPIOConfig)
    echo: EchoConfig = Field(default_factory=EchoConfig)

    def provider_config(self, provider: Optional[ModelProvider] = None) -> ProviderConfig:
        provider = ModelProvider(provider or self.ai_provider)
        return getattr(self, _CONFIG_FIELDS[provider])

    def create_llm(self, provider: Optional[ModelProvider] = None) -> llm.LLM:
        return self.provider_config(provider).create_llm()

    @classmethod
    def from_stored(cls, data: Any) -> "Settings":
        """Merges stored values over the defaults.

        Unknown keys are ignored. A stored document that does not validate
        as a whole yields the defaults instead of failing the load.
        """
        merged: Dict[str, Any] = cls().model_dump(mode="json")
        if isinstance(data, dict):
            for key, value in data.items():
                if isinstance(value, dict) and isinstance(merged.get(key), dict):
                    merged[key] = {**merged[key], **value}
                elif key in merged:
                    merged[key] = value
        try:
            return cls.model_validate(merged)
        except ValueError:
            return cls()


_CONFIG_FIELDS = {
    ModelProvider.OLLAMA: "ollama",
    ModelProvider.OPENAI: "openai",
    ModelProvider.CLAUDE: "claude",
    ModelProvider.LM_STUDIO: "lm_studio",
    ModelProvider.SILICON_FLOW: "silicon_flow",
    ModelProvider.PPIO: "ppio",
    ModelProvider.ECHO: "echo",
}
