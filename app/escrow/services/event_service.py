"""
Event service: the polling side of the event outbox.

Collaborators that do not listen to escrow_event_committed poll for
undispatched EscrowEvent rows and acknowledge them once delivered, which
stamps dispatched_at. Acknowledging is idempotent: rows already dispatched
keep their original timestamp.

Visibility:
- Users see events addressed to them
- Arbiters also see the admin channel (rows with no user)

Usage:
    from escrow.services import EventService

    events = EventService.pending_events(actor)
    EventService.acknowledge([e.id for e in events], actor)
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from django.db.models import Q
from django.utils import timezone

from escrow.exceptions import EscrowValidationError
from escrow.models import EscrowEvent
from escrow.services.base import EscrowService

if TYPE_CHECKING:
    from typing import Any

    from django.db.models import QuerySet

    from escrow.actors import Actor


# Upper bound on ids per acknowledge call
MAX_ACKNOWLEDGE_BATCH = 500


class EventService(EscrowService):
    """
    Service for polling and acknowledging outbox events.

    Methods:
        visible_events: Events addressed to the actor (plus the admin
            channel for arbiters)
        pending_events: Visible events not yet dispatched, oldest first
        acknowledge: Mark visible events as dispatched
    """

    @classmethod
    def visible_events(cls, actor: Actor) -> QuerySet[EscrowEvent]:
        if actor.is_system:
            return EscrowEvent.objects.all()
        audience = Q(user_id=actor.user_id)
        if actor.is_arbiter:
            audience |= Q(user__isnull=True)
        return EscrowEvent.objects.filter(audience)

    @classmethod
    def pending_events(cls, actor: Actor) -> QuerySet[EscrowEvent]:
        return cls.visible_events(actor).filter(dispatched_at__isnull=True).order_by("created_at")

    @classmethod
    def acknowledge(cls, event_ids: list[Any], actor: Actor) -> int:
        """
        Mark events as dispatched.

        Ids the actor may not see, and events already dispatched, are
        ignored.

        Returns:
            Number of events newly marked dispatched

        Raises:
            EscrowValidationError: Empty, oversized or malformed id list
        """
        ids = cls._parse_ids(event_ids)

        with cls.atomic():
            acknowledged = (
                cls.visible_events(actor)
                .filter(pk__in=ids, dispatched_at__isnull=True)
                .update(dispatched_at=timezone.now())
            )

        cls.get_logger().info(
            "Escrow events acknowledged",
            extra={"requested": len(ids), "acknowledged": acknowledged, "actor": actor.label},
        )
        return acknowledged

    @staticmethod
    def _parse_ids(event_ids: list[Any]) -> list[uuid.UUID]:
        if not event_ids:
            raise EscrowValidationError(
                "No event ids to acknowledge",
                details={"event_ids": ["This field is required."]},
            )
        if len(event_ids) > MAX_ACKNOWLEDGE_BATCH:
            raise EscrowValidationError(
                f"At most {MAX_ACKNOWLEDGE_BATCH} events can be acknowledged at once",
                details={"event_ids": [f"Ensure this list has at most {MAX_ACKNOWLEDGE_BATCH} items."]},
            )
        try:
            return [uuid.UUID(str(event_id)) for event_id in event_ids]
        except ValueError as e:
            raise EscrowValidationError(
                "Malformed event id",
                details={"event_ids": ["Must be a list of UUIDs."]},
            ) from e
