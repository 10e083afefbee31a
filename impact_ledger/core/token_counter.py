"""
Token counting and usage tracking.

Recorded usage is always counted with the model's own tokenizer. The
character-based approximation exists only for advisory pre-flight
estimates shown to the user before a reply arrives.
"""

import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import tiktoken

from .errors import ConfigurationError, ValidationError

# Chat framing overhead per message and for the primed assistant reply
TOKENS_PER_MESSAGE = 3
TOKENS_PER_NAME = 1
REPLY_PRIMING_TOKENS = 3

CHARS_PER_TOKEN_APPROX = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts for one completed interaction.
    """
    input_tokens: int
    output_tokens: int

    def __post_init__(self):
        """Reject counts that cannot come from a real interaction."""
        for name in ("input_tokens", "output_tokens"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"{name} must be an integer")
            if value < 0:
                raise ValidationError(f"{name} cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens


class TokenCounter:
    """Model-aware token counter backed by tiktoken.

    Encodings are resolved once per model and reused for the lifetime
    of the counter.
    """

    def __init__(self, supported_models: Optional[Iterable[str]] = None):
        if supported_models is None:
            from .pricing import PRICING_TABLE
            supported_models = PRICING_TABLE.models
        self.supported_models = frozenset(supported_models)
        self._encodings: Dict[str, "tiktoken.Encoding"] = {}

    def _encoding_for(self, model: str) -> "tiktoken.Encoding":
        if model not in self.supported_models:
            raise ValidationError(f"Unsupported model: {model}")
        encoding = self._encodings.get(model)
        if encoding is None:
            try:
                encoding = tiktoken.encoding_for_model(model)
            except KeyError as e:
                raise ConfigurationError(
                    f"No tokenizer available for model {model}; "
                    f"refusing to record an approximate count"
                ) from e
            self._encodings[model] = encoding
        return encoding

    def count_text(self, text: str, model: str) -> int:
        """Count tokens in a plain string, e.g. a generated reply."""
        encoding = self._encoding_for(model)
        return len(encoding.encode(text or "", disallowed_special=()))

    def count_messages(self, messages: List[Dict[str, str]], model: str) -> int:
        """Count prompt tokens for a list of role-tagged chat turns.

        Args:
            messages: Chat turns, each with at least "role" and "content"
            model: Model identifier

        Returns:
            Input token count including per-message framing

        Raises:
            ValidationError: If messages are malformed or the model is unknown
            ConfigurationError: If the model has no tokenizer
        """
        if not messages:
            raise ValidationError("messages is required and cannot be empty")

        encoding = self._encoding_for(model)
        total = 0
        for message in messages:
            if "role" not in message or "content" not in message:
                raise ValidationError("each message needs a role and content")
            total += TOKENS_PER_MESSAGE
            for key, value in message.items():
                total += len(encoding.encode(str(value), disallowed_special=()))
                if key == "name":
                    total += TOKENS_PER_NAME
        return total + REPLY_PRIMING_TOKENS


def approximate_token_count(text: str) -> int:
    """Rough advisory estimate: one token per four characters."""
    return math.ceil(len(text or "") / CHARS_PER_TOKEN_APPROX)


def estimate_usage(
    messages: List[Dict[str, str]],
    expected_output_tokens: int = 0
) -> TokenUsage:
    """Advisory usage estimate for a request that has not run yet.

    Never use the result for a recorded event.
    """
    text = " ".join(str(m.get("content", "")) for m in messages)
    return TokenUsage(
        input_tokens=approximate_token_count(text),
        output_tokens=expected_output_tokens
    )
