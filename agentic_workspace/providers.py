"""
LLM provider configuration for Agentic Workspace.

Providers are a tagged variant: each ``ChatProvider`` carries its kind
(on-device or cloud), a langchain chat model and an availability probe.
The hybrid client picks between them from the probe result.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import httpx
from langchain_core.language_models import BaseChatModel

from .config import LLMConfig

logger = logging.getLogger("agentic_workspace.providers")


class ProviderKind(str, Enum):
    """Where a model runs."""
    ON_DEVICE = "on_device"
    CLOUD = "cloud"


# Preference order when several providers are configured
PROVIDER_PRIORITY = {
    ProviderKind.ON_DEVICE: 0,
    ProviderKind.CLOUD: 1,
}

PROVIDER_DISPLAY_NAMES = {
    ProviderKind.ON_DEVICE: "On-device",
    ProviderKind.CLOUD: "Cloud",
}

# Seconds a probe result is trusted before probing again
PROBE_TTL = 30.0


@dataclass
class ChatProvider:
    """A chat model plus the endpoint used to check that it is reachable.

    Providers without an endpoint (in-process models) are always
    considered available.
    """
    kind: ProviderKind
    model: BaseChatModel
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    probe_timeout: float = 2.0
    _probe_result: Optional[bool] = field(default=None, repr=False)
    _probed_at: float = field(default=0.0, repr=False)

    @property
    def display_name(self) -> str:
        return PROVIDER_DISPLAY_NAMES.get(self.kind, self.kind.value)

    def _headers(self) -> dict[str, str]:
        if self.api_key:
            return {"Authorization": f"Bearer {self.api_key}"}
        return {}

    def _cached(self) -> Optional[bool]:
        if self._probe_result is None:
            return None
        if time.monotonic() - self._probed_at > PROBE_TTL:
            return None
        return self._probe_result

    def _remember(self, available: bool) -> bool:
        self._probe_result = available
        self._probed_at = time.monotonic()
        return available

    def invalidate(self) -> None:
        """Forget the last probe result (after an invocation failure)."""
        self._probe_result = None

    def is_available(self) -> bool:
        """Probe ``GET {endpoint}/models``."""
        if not self.endpoint:
            return True
        cached = self._cached()
        if cached is not None:
            return cached
        url = f"{self.endpoint.rstrip('/')}/models"
        try:
            with httpx.Client(timeout=self.probe_timeout) as client:
                response = client.get(url, headers=self._headers())
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.debug("%s provider probe failed: %s", self.display_name, e)
            return self._remember(False)
        return self._remember(True)

    async def ais_available(self) -> bool:
        """Async variant of ``is_available``."""
        if not self.endpoint:
            return True
        cached = self._cached()
        if cached is not None:
            return cached
        url = f"{self.endpoint.rstrip('/')}/models"
        try:
            async with httpx.AsyncClient(timeout=self.probe_timeout) as client:
                response = await client.get(url, headers=self._headers())
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.debug("%s provider probe failed: %s", self.display_name, e)
            return self._remember(False)
        return self._remember(True)


def build_providers(config: LLMConfig) -> list[ChatProvider]:
    """Create the on-device provider and, if configured, the cloud provider.

    Both talk to OpenAI-compatible endpoints through ``ChatOpenAI``.
    """
    from langchain_openai import ChatOpenAI

    providers = [
        ChatProvider(
            kind=ProviderKind.ON_DEVICE,
            model=ChatOpenAI(
                base_url=config.on_device_endpoint,
                api_key="not-required",
                model=config.on_device_model,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
            ),
            endpoint=config.on_device_endpoint,
            probe_timeout=config.probe_timeout,
        )
    ]
    if config.cloud_api_key:
        endpoint = config.cloud_endpoint or "https://api.openai.com/v1"
        providers.append(
            ChatProvider(
                kind=ProviderKind.CLOUD,
                model=ChatOpenAI(
                    base_url=endpoint,
                    api_key=config.cloud_api_key,
                    model=config.cloud_model,
                    temperature=config.temperature,
                    max_tokens=config.max_tokens,
                ),
                endpoint=endpoint,
                api_key=config.cloud_api_key,
                probe_timeout=config.probe_timeout,
            )
        )
    else:
        logger.debug("No cloud API key configured; on-device provider only")
    return providers
