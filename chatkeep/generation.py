"""
Credit-gated reply generation against the Anthropic messages API.

The credit meter is checked before the provider is called and one credit is
consumed only after a reply came back. A provider failure costs nothing.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .credits import CreditMeter, CreditWarning
from .errors import NotFoundError, QuotaExhaustedError, RemoteUnavailableError, ValidationError
from .provider_key import ProviderKeyStore

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-3-haiku-20240307"
DEFAULT_MAX_TOKENS = 150
MAX_MESSAGE_LENGTH = 500

TONE_STYLES = {
    "friendly": "warm, casual, use emojis sparingly, helpful and approachable",
    "professional": "polite, clear, businesslike, courteous",
    "hype": "excited, energetic, lots of enthusiasm, occasional emojis like fire and sparkles",
    "chill": "relaxed, laid-back, conversational, easygoing",
}

# USD per million tokens (claude-3-haiku)
INPUT_COST_PER_MTOK = 0.25
OUTPUT_COST_PER_MTOK = 1.25


@dataclass(frozen=True)
class GenerationResult:
    text: str
    credits_remaining: int
    warning: Optional[CreditWarning] = None
    input_tokens: int = 0
    output_tokens: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "creditsRemaining": self.credits_remaining,
            "warning": self.warning.to_dict() if self.warning else None,
            "usage": {"inputTokens": self.input_tokens, "outputTokens": self.output_tokens},
        }


def estimate_cost(input_tokens: int, output_tokens: int) -> float:
    """Estimated USD cost of one generation."""
    return (
        input_tokens / 1_000_000 * INPUT_COST_PER_MTOK
        + output_tokens / 1_000_000 * OUTPUT_COST_PER_MTOK
    )


def build_system_prompt(tone: str, context: Optional[dict[str, Any]] = None) -> str:
    style = TONE_STYLES.get(tone, TONE_STYLES["friendly"])
    lines = [
        "You are a live-stream seller's chat assistant replying to a viewer.",
        f"Tone: {style}.",
        "Reply in one or two short sentences. Never invent prices, stock or shipping details.",
    ]
    for key, value in (context or {}).items():
        if value:
            lines.append(f"{key}: {value}")
    return "\n".join(lines)


def _default_client_factory(api_key: str):
    from anthropic import Anthropic
    return Anthropic(api_key=api_key)


class ReplyGenerator:
    """Generates chat replies, spending one AI credit per success."""

    def __init__(
        self,
        credits: CreditMeter,
        provider_keys: ProviderKeyStore,
        *,
        model: str = DEFAULT_MODEL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        client_factory: Callable[[str], Any] = _default_client_factory,
    ):
        self._credits = credits
        self._provider_keys = provider_keys
        self.model = model
        self.max_tokens = max_tokens
        self._client_factory = client_factory

    def generate(
        self,
        message: str,
        tone: str = "friendly",
        context: Optional[dict[str, Any]] = None,
    ) -> GenerationResult:
        """
        Generate a reply to a viewer's ``message``.

        Raises:
            ValidationError: empty message or unknown tone
            QuotaExhaustedError: no credits left this month
            NotFoundError: no provider key stored
            RemoteUnavailableError: the provider call failed
        """
        if not message or not isinstance(message, str) or not message.strip():
            raise ValidationError("User message required")
        if tone not in TONE_STYLES:
            raise ValidationError(f"Unknown tone: {tone} (expected one of {', '.join(TONE_STYLES)})")

        if not self._credits.can_use():
            raise QuotaExhaustedError(
                f"No AI credits remaining. Resets {self._credits.format_reset_date()}"
            )
        api_key = self._provider_keys.get_key()
        if not api_key:
            raise NotFoundError("No Anthropic API key configured")

        trimmed = message.strip()[:MAX_MESSAGE_LENGTH]

        from anthropic import APIError

        try:
            client = self._client_factory(api_key)
            response = client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=build_system_prompt(tone, context),
                messages=[{"role": "user", "content": trimmed}],
            )
        except APIError as e:
            raise RemoteUnavailableError(f"Reply generation failed: {e}") from e

        text = response.content[0].text if response.content else ""
        if not text:
            raise RemoteUnavailableError("Reply generation returned no text")

        remaining = self._credits.consume()
        warning = self._credits.check_warning()
        usage = getattr(response, "usage", None)
        logger.debug("Generated reply (%d credits left)", remaining)
        return GenerationResult(
            text=text,
            credits_remaining=remaining,
            warning=warning if warning.warning else None,
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
        )
