"""
LLM capability for Agentic Workspace.

Provides the ``LLMCapability`` contract and ``HybridLLM``, which tries an
on-device model first and falls back to a cloud model when the first
is unavailable. Structured output is validated against a pydantic
schema; malformed output gets exactly one repair pass.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, ValidationError as PydanticValidationError

from .errors import CapabilityUnavailable, ValidationError
from .providers import PROVIDER_PRIORITY, ChatProvider, ProviderKind
from .utils import parse_json_with_recovery, truncate_text

logger = logging.getLogger("agentic_workspace.llm_client")


REPAIR_PROMPT = """Your previous response was not valid for the required format.

Error: {error}

Please respond with ONLY valid JSON, no markdown code blocks, no explanation.
Just the raw JSON object starting with {{ and ending with }}

The required JSON schema is:
{schema}"""


@dataclass
class Generation:
    """Result of one generate call.

    Attributes:
        text: Raw model output
        parsed: Validated schema instance when a schema was requested
        provider: Which kind of provider answered
        repaired: True if the answer needed the repair pass
    """
    text: str
    parsed: Optional[BaseModel] = None
    provider: Optional[ProviderKind] = None
    repaired: bool = False


class LLMCapability(Protocol):
    """What the memory store and orchestrator need from a language model."""

    def generate(
        self,
        prompt: str,
        response_schema: Optional[type[BaseModel]] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> Generation:
        ...

    async def agenerate(
        self,
        prompt: str,
        response_schema: Optional[type[BaseModel]] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> Generation:
        ...


def _content_text(message: Union[BaseMessage, str]) -> str:
    content = message.content if isinstance(message, BaseMessage) else message
    if isinstance(content, list):
        return "".join(
            part.get("text", "") if isinstance(part, dict) else str(part)
            for part in content
        )
    return str(content)


def parse_structured(raw: str, schema: type[BaseModel]) -> BaseModel:
    """Parse raw model output into ``schema``.

    Raises:
        json.JSONDecodeError: If no JSON object can be recovered
        pydantic.ValidationError: If the JSON does not match the schema
    """
    data = parse_json_with_recovery(raw)
    return schema.model_validate(data)


class HybridLLM:
    """On-device first, cloud as fallback.

    Args:
        providers: Providers in any order; they are tried by kind priority
        timeout: Seconds allowed per model invocation in ``agenerate``
    """

    def __init__(self, providers: list[ChatProvider], timeout: float = 60.0):
        if not providers:
            raise ValueError("HybridLLM needs at least one provider")
        self.providers = sorted(providers, key=lambda p: PROVIDER_PRIORITY[p.kind])
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def generate(
        self,
        prompt: str,
        response_schema: Optional[type[BaseModel]] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> Generation:
        """Generate text (and optionally a validated schema instance).

        Raises:
            CapabilityUnavailable: If no provider could answer
            ValidationError: If structured output is still invalid after repair
        """
        last_error: Optional[CapabilityUnavailable] = None
        for provider in self.providers:
            try:
                return self._generate_with(provider, prompt, response_schema, options or {})
            except CapabilityUnavailable as e:
                logger.info("%s model unavailable, trying next: %s", provider.display_name, e)
                last_error = e
        raise CapabilityUnavailable(f"No LLM provider available ({last_error})")

    def _invoke(self, provider: ChatProvider, messages: list[BaseMessage], options: dict) -> str:
        try:
            response = provider.model.invoke(messages, stop=options.get("stop"))
        except Exception as e:
            provider.invalidate()
            raise CapabilityUnavailable(str(e), provider=provider.kind.value) from e
        return _content_text(response)

    def _generate_with(self, provider, prompt, schema, options) -> Generation:
        if not provider.is_available():
            raise CapabilityUnavailable("probe failed", provider=provider.kind.value)

        messages = self._build_messages(prompt, options)
        raw = self._invoke(provider, messages, options)
        if schema is None:
            return Generation(text=raw, provider=provider.kind)

        try:
            return Generation(text=raw, parsed=parse_structured(raw, schema), provider=provider.kind)
        except (json.JSONDecodeError, PydanticValidationError) as e:
            logger.debug("Malformed output from %s, repairing: %s", provider.display_name, e)
            messages = self._repair_messages(messages, raw, schema, e)

        repaired = self._invoke(provider, messages, options)
        try:
            parsed = parse_structured(repaired, schema)
        except (json.JSONDecodeError, PydanticValidationError) as e:
            raise ValidationError(
                f"Invalid {schema.__name__} after repair: {truncate_text(str(e), 300)}",
                raw_output=repaired,
            ) from e
        return Generation(text=repaired, parsed=parsed, provider=provider.kind, repaired=True)

    # ------------------------------------------------------------------
    # Async
    # ------------------------------------------------------------------

    async def agenerate(
        self,
        prompt: str,
        response_schema: Optional[type[BaseModel]] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> Generation:
        """Async variant of ``generate``; each invocation is bounded by ``timeout``."""
        last_error: Optional[CapabilityUnavailable] = None
        for provider in self.providers:
            try:
                return await self._agenerate_with(provider, prompt, response_schema, options or {})
            except CapabilityUnavailable as e:
                logger.info("%s model unavailable, trying next: %s", provider.display_name, e)
                last_error = e
        raise CapabilityUnavailable(f"No LLM provider available ({last_error})")

    async def _ainvoke(self, provider: ChatProvider, messages: list[BaseMessage], options: dict) -> str:
        try:
            response = await asyncio.wait_for(
                provider.model.ainvoke(messages, stop=options.get("stop")),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            provider.invalidate()
            raise CapabilityUnavailable(
                f"timed out after {self.timeout:g}s", provider=provider.kind.value
            ) from e
        except Exception as e:
            provider.invalidate()
            raise CapabilityUnavailable(str(e), provider=provider.kind.value) from e
        return _content_text(response)

    async def _agenerate_with(self, provider, prompt, schema, options) -> Generation:
        if not await provider.ais_available():
            raise CapabilityUnavailable("probe failed", provider=provider.kind.value)

        messages = self._build_messages(prompt, options)
        raw = await self._ainvoke(provider, messages, options)
        if schema is None:
            return Generation(text=raw, provider=provider.kind)

        try:
            return Generation(text=raw, parsed=parse_structured(raw, schema), provider=provider.kind)
        except (json.JSONDecodeError, PydanticValidationError) as e:
            logger.debug("Malformed output from %s, repairing: %s", provider.display_name, e)
            messages = self._repair_messages(messages, raw, schema, e)

        repaired = await self._ainvoke(provider, messages, options)
        try:
            parsed = parse_structured(repaired, schema)
        except (json.JSONDecodeError, PydanticValidationError) as e:
            raise ValidationError(
                f"Invalid {schema.__name__} after repair: {truncate_text(str(e), 300)}",
                raw_output=repaired,
            ) from e
        return Generation(text=repaired, parsed=parsed, provider=provider.kind, repaired=True)

    # ------------------------------------------------------------------

    @staticmethod
    def _build_messages(prompt: str, options: dict) -> list[BaseMessage]:
        messages: list[BaseMessage] = []
        if options.get("system"):
            messages.append(SystemMessage(content=options["system"]))
        messages.append(HumanMessage(content=prompt))
        return messages

    @staticmethod
    def _repair_messages(messages, raw, schema, error) -> list[BaseMessage]:
        return [
            *messages,
            AIMessage(content=raw),
            HumanMessage(content=REPAIR_PROMPT.format(
                error=truncate_text(str(error), 300),
                schema=json.dumps(schema.model_json_schema()),
            )),
        ]
