"""
Impact-tracking OpenAI chat service.

Answers a chat query and records its usage in the ledger. Nothing is
recorded unless the completion service produced output: timeouts, API
errors and cancellation before the reply all leave the ledger untouched.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import openai
from openai import AsyncOpenAI

from ..config.loader import LedgerConfig, default_config
from ..core.errors import ExternalServiceError, ValidationError
from ..core.impact import ImpactCalculation, calculate_impact
from ..core.ledger import RecordResult, UsageLedger
from ..core.log import get_logger, log_event
from ..core.milestones import milestone_table
from ..core.pricing import DEFAULT_MODEL, PRICING_TABLE
from ..core.token_counter import TokenCounter, TokenUsage, estimate_usage
from ..storage.models import SessionAggregate

logger = get_logger(__name__)

SESSION_TITLE_LENGTH = 50


@dataclass(frozen=True)
class QueryResult:
    """Reply to one submitted query, with its authoritative impact."""
    response_text: str
    trees_added: Decimal
    input_tokens: int
    output_tokens: int
    total_cost: Decimal
    donation: Decimal
    session_id: str
    event_id: str
    model: str
    milestones: Tuple[int, ...] = ()
    user_trees: Optional[Decimal] = None
    user_revision: Optional[int] = None


class ImpactChatService:
    """Chat service that turns every completed reply into a ledger entry.

    Token counts used for billing come from the model tokenizer, never
    from the usage metadata returned by the completion service.
    """

    def __init__(
        self,
        ledger: UsageLedger,
        config: Optional[LedgerConfig] = None,
        client: Optional[AsyncOpenAI] = None,
        token_counter: Optional[TokenCounter] = None
    ):
        """Initialize the chat service.

        Args:
            ledger: Ledger that records usage
            config: Ledger configuration (defaults apply when omitted)
            client: OpenAI async client; one is created when omitted
            token_counter: Model-aware token counter
        """
        self.ledger = ledger
        self.config = config or default_config()
        self.client = client or AsyncOpenAI()
        self.token_counter = token_counter or TokenCounter()

    def build_messages(
        self,
        message: str,
        history: Optional[List[Dict[str, str]]] = None
    ) -> List[Dict[str, str]]:
        """System prompt, prior turns, then the new user turn."""
        messages = [{"role": "system", "content": self.config.completion.system_prompt}]
        messages.extend(history or [])
        messages.append({"role": "user", "content": message})
        return messages

    def estimate_impact(
        self,
        message: str,
        model: str = DEFAULT_MODEL,
        history: Optional[List[Dict[str, str]]] = None
    ) -> ImpactCalculation:
        """Advisory impact of a query that has not been sent yet."""
        usage = estimate_usage(
            self.build_messages(message, history),
            expected_output_tokens=self.config.completion.expected_output_tokens
        )
        return calculate_impact(usage.input_tokens, usage.output_tokens, model, self.config.rates)

    def milestone_table(self) -> dict:
        """Thresholds and messages, for clients rendering milestone banners."""
        return milestone_table()

    async def submit_query(
        self,
        user_id: str,
        message: str,
        model: str = DEFAULT_MODEL,
        session_id: Optional[str] = None,
        conversation_key: Optional[str] = None,
        history: Optional[List[Dict[str, str]]] = None
    ) -> QueryResult:
        """Answer a query and record its impact.

        Args:
            user_id: Authenticated user making the query
            message: The user's message
            model: Model identifier from the pricing table
            session_id: Existing session; when omitted the session for
                conversation_key is used, created on first use
            conversation_key: Client key for a new conversation
            history: Earlier turns of the conversation

        Returns:
            QueryResult with the reply and its recorded impact

        Raises:
            ValidationError: Empty or oversized message, unknown model or
                foreign session
            ConfigurationError: Model has no tokenizer
            ExternalServiceError: Completion failed or timed out
        """
        if not message or not message.strip():
            raise ValidationError("message is required and cannot be empty")
        limit = self.config.completion.max_message_chars
        if len(message) > limit:
            raise ValidationError(f"message exceeds {limit} characters")
        PRICING_TABLE.get_pricing(model)

        messages = self.build_messages(message, history)
        input_tokens = self.token_counter.count_messages(messages, model)

        if session_id is not None:
            session = await asyncio.to_thread(self.ledger.get_session, session_id)
            if session is None or session.user_id != user_id:
                raise ValidationError(f"Unknown session: {session_id}")

        started = time.monotonic()
        response_text = await self._complete(messages, model)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        output_tokens = self.token_counter.count_text(response_text, model)
        usage = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)

        # Output exists, so the interaction is billed even if the caller goes away now
        session, recorded = await asyncio.shield(asyncio.to_thread(
            self._record,
            user_id,
            session_id,
            conversation_key or str(uuid.uuid4()),
            message,
            usage,
            model,
            elapsed_ms
        ))

        event = recorded.event
        return QueryResult(
            response_text=response_text,
            trees_added=event.trees,
            input_tokens=event.input_tokens,
            output_tokens=event.output_tokens,
            total_cost=event.total_cost,
            donation=event.donation,
            session_id=session.id,
            event_id=event.id,
            model=model,
            milestones=recorded.new_milestones,
            user_trees=recorded.user_trees,
            user_revision=recorded.user_revision
        )

    async def _complete(self, messages: List[Dict[str, str]], model: str) -> str:
        timeout = self.config.completion.timeout_seconds
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(model=model, messages=messages),
                timeout=timeout
            )
        except asyncio.TimeoutError as e:
            log_event(logger, "completion.timeout", model=model, timeout=timeout)
            raise ExternalServiceError(f"Completion timed out after {timeout}s") from e
        except openai.OpenAIError as e:
            log_event(logger, "completion.fail", model=model, error=type(e).__name__)
            raise ExternalServiceError(f"Completion service error: {e}") from e

        text = _response_text(response)
        if not text:
            raise ExternalServiceError("Completion service returned no output")

        reported = getattr(response, "usage", None)
        if reported is not None:
            logger.debug(
                "Service-reported usage %s/%s (not used for billing)",
                getattr(reported, "prompt_tokens", None),
                getattr(reported, "completion_tokens", None)
            )
        return text

    def _record(
        self,
        user_id: str,
        session_id: Optional[str],
        conversation_key: str,
        message: str,
        usage: TokenUsage,
        model: str,
        elapsed_ms: int
    ) -> Tuple[SessionAggregate, RecordResult]:
        if session_id is not None:
            session = self.ledger.get_session(session_id)
            if session is None:
                raise ValidationError(f"Unknown session: {session_id}")
        else:
            session = self.ledger.get_or_create_session(
                user_id, conversation_key, title=message.strip()[:SESSION_TITLE_LENGTH]
            )
        recorded = self.ledger.record(
            user_id, session.id, usage, model, response_time_ms=elapsed_ms
        )
        return session, recorded


def _response_text(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    content = getattr(choices[0].message, "content", None)
    return content or ""
