"""
Client wrapper that runs the optimistic-update protocol around a query.
"""

import asyncio
import uuid
from typing import Optional

from ..core.notifications import AggregatePublisher
from ..core.pricing import DEFAULT_MODEL
from ..core.reconciliation import DisplayedImpact, ImpactTracker
from .openai_client import ImpactChatService, QueryResult


class ImpactClient:
    """Shows an estimate at once, then settles it against the server."""

    def __init__(
        self,
        service: ImpactChatService,
        user_id: str,
        tracker: Optional[ImpactTracker] = None,
        publisher: Optional[AggregatePublisher] = None
    ):
        self.service = service
        self.user_id = user_id
        self.tracker = tracker or ImpactTracker()
        self.publisher = publisher
        self._subscription = None
        if publisher is not None:
            self._subscription = publisher.subscribe(self.tracker.on_aggregate_update, user_id=user_id)

    def close(self) -> None:
        if self.publisher is not None and self._subscription is not None:
            self.publisher.unsubscribe(self._subscription)
            self._subscription = None

    def displayed(self) -> DisplayedImpact:
        return self.tracker.displayed()

    async def send(
        self,
        message: str,
        model: str = DEFAULT_MODEL,
        session_id: Optional[str] = None,
        conversation_key: Optional[str] = None
    ) -> QueryResult:
        """Submit a query with a provisional tree figure shown meanwhile.

        Any failure, cancellation included, rolls the estimate back before
        the error propagates.
        """
        request_id = str(uuid.uuid4())
        estimate = self.service.estimate_impact(message, model)
        self.tracker.begin(request_id, estimate.trees)
        try:
            result = await self.service.submit_query(
                self.user_id,
                message,
                model=model,
                session_id=session_id,
                conversation_key=conversation_key
            )
        except asyncio.CancelledError:
            self.tracker.rollback(request_id, "request cancelled")
            raise
        except Exception as e:
            self.tracker.rollback(request_id, str(e))
            raise
        self.tracker.confirm(
            request_id,
            result.trees_added,
            event_id=result.event_id,
            server_total=result.user_trees,
            revision=result.user_revision
        )
        return result

    async def refresh(self) -> DisplayedImpact:
        """Poll the ledger for the user's current total."""
        impact = await asyncio.to_thread(self.service.ledger.get_user_impact, self.user_id)
        if impact is None:
            return self.tracker.displayed()
        return self.tracker.apply_snapshot(impact.user)
