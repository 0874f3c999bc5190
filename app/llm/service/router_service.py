# app/llm/service/router_service.py
import asyncio
import time
from typing import Dict, Optional, Tuple

from app.core.config import settings
from app.core.logger import get_logger
from app.llm.service.provider.base_provider import BaseProvider, ProviderRejectedError

logger = get_logger("ModelRouter")

DEFAULT_PROVIDER = "openai"


class ModelRouter:
    """
    Resolves ``provider/model`` identifiers to a provider instance.

    ``openai/gpt-4.1-mini`` goes to the ``openai`` provider with model
    ``gpt-4.1-mini``; a bare id such as ``gpt-4`` goes to OpenAI unchanged.
    """

    def __init__(
        self,
        providers: Optional[Dict[str, BaseProvider]] = None,
        request_timeout_ms: int = settings.REQUEST_TIMEOUT_MS,
    ):
        self.providers = providers if providers is not None else self._default_providers()
        self.request_timeout_ms = request_timeout_ms
        self.provider_latency: Dict[str, float] = {}

    @staticmethod
    def _default_providers() -> Dict[str, BaseProvider]:
        from app.llm.service.provider.anthropic import AnthropicProvider
        from app.llm.service.provider.openai_provider import OpenAIProvider

        return {
            "openai": OpenAIProvider(),
            "anthropic": AnthropicProvider(),
            "xai": OpenAIProvider(name="xai", api_key=settings.XAI_API_KEY or "", base_url=settings.XAI_BASE_URL),
            "google": OpenAIProvider(
                name="google", api_key=settings.GEMINI_API_KEY or "", base_url=settings.GEMINI_OPENAI_BASE_URL
            ),
        }

    def resolve(self, model_id: str) -> Tuple[BaseProvider, str]:
        """Return the provider for ``model_id`` and the model name it expects."""
        prefix, sep, model = model_id.partition("/")
        if not sep:
            prefix, model = DEFAULT_PROVIDER, model_id
        provider = self.providers.get(prefix)
        if provider is None:
            raise ProviderRejectedError(f"No provider registered for model {model_id!r}")
        return provider, model

    def enabled_providers(self) -> Dict[str, bool]:
        return {name: provider.is_enabled() for name, provider in self.providers.items()}

    async def generate_text(self, model_id: str, system_prompt: str, prompt: str) -> str:
        """Non-streaming completion with the router's request timeout applied."""
        provider, model = self.resolve(model_id)
        start = time.perf_counter()
        try:
            return await asyncio.wait_for(
                provider.generate_text(model, system_prompt, prompt), self.request_timeout_ms / 1000
            )
        finally:
            self.provider_latency[provider.name] = time.perf_counter() - start

    def __repr__(self):
        return f"<ModelRouter providers={sorted(self.providers)}>"
