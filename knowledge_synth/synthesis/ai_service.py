"""
AI synthesis collaborator - ask an LLM to merge similar fragments into knowledge units.

The collaborator receives the guidance as system prompt and the fragments as
user prompt (both JSON) and must answer with JSON matching
FragmentClusteringResponse. Anything that does not parse raises
MalformedResponseError, which fails the surrounding transaction.
"""
from __future__ import annotations

import re
from typing import Optional, Protocol

from loguru import logger
from pydantic import ValidationError

from config import get_settings
from knowledge_synth.errors import ConfigurationError, MalformedResponseError
from knowledge_synth.synthesis.schemas import FragmentClusteringResponse

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class SynthesisClient(Protocol):
    """Opaque LLM boundary used by the knowledge unit synthesizer."""

    def synthesize(self, user_prompt: str, system_prompt: str) -> FragmentClusteringResponse: ...


def parse_response(raw: str | None) -> FragmentClusteringResponse:
    """
    Parse model output into a FragmentClusteringResponse.

    Tolerates a surrounding markdown code fence.

    Raises:
        MalformedResponseError: Empty output or JSON not matching the contract.
    """
    if not raw or not raw.strip():
        raise MalformedResponseError("Empty response from synthesis model", raw)

    cleaned = _CODE_FENCE.sub("", raw.strip())
    try:
        return FragmentClusteringResponse.model_validate_json(cleaned)
    except ValidationError as e:
        raise MalformedResponseError(f"Synthesis response does not match contract: {e}", raw) from e


class GeminiSynthesisClient:
    """
    Google Gemini implementation of SynthesisClient.

    The system prompt changes with every call (category guidance depends on the
    participants), so a GenerativeModel is created per request; the SDK is
    configured once on first use.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ):
        settings = get_settings()
        self.api_key = api_key or settings.gemini_api_key
        self.model_name = model_name or settings.synthesis_model
        self.temperature = settings.synthesis_temperature if temperature is None else temperature
        self.max_output_tokens = max_output_tokens or settings.synthesis_max_output_tokens
        self._genai = None

    @property
    def genai(self):
        """Lazy-load and configure the Gemini SDK."""
        if self._genai is None:
            if not self.api_key:
                raise ConfigurationError("GEMINI_API_KEY is not set")
            import google.generativeai as genai

            genai.configure(api_key=self.api_key)
            self._genai = genai
        return self._genai

    def synthesize(self, user_prompt: str, system_prompt: str) -> FragmentClusteringResponse:
        model = self.genai.GenerativeModel(
            model_name=self.model_name,
            system_instruction=system_prompt,
        )
        response = model.generate_content(
            user_prompt,
            generation_config={
                "temperature": self.temperature,
                "max_output_tokens": self.max_output_tokens,
                "response_mime_type": "application/json",
            },
        )

        try:
            text = response.text
        except ValueError as e:  # Raised by the SDK when the candidate was blocked
            raise MalformedResponseError(f"Synthesis model returned no text: {e}") from e

        logger.debug(f"Synthesis response: {len(text or '')} chars from {self.model_name}")
        return parse_response(text)
