"""
Model mixins shared across apps.

Available Mixins:
    UUIDPrimaryKeyMixin: Use UUID as primary key
    VersionedMixin: Optimistic locking version, bumped on every save

Usage:
    from core.models import BaseModel
    from core.model_mixins import UUIDPrimaryKeyMixin

    class Dispute(UUIDPrimaryKeyMixin, BaseModel):
        description = models.TextField()
"""

from __future__ import annotations

import uuid

from django.db import models
from django.db.models import F


class UUIDPrimaryKeyMixin(models.Model):
    """
    Use a random UUID as primary key instead of an auto-increment integer.

    Transaction, dispute and payout identifiers are exposed to buyers and
    sellers in URLs and gateway metadata, so they must not reveal volume
    or ordering.

    Fields:
        id: UUIDField primary key, generated on instantiation
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier (UUID4)",
    )

    class Meta:
        abstract = True


class VersionedMixin(models.Model):
    """
    Optimistic locking support through a monotonically increasing version.

    On update (not force_insert), save() increments the version with an
    F() expression so concurrent writers cannot both commit the same next
    version, then reloads the new value.

    Fields:
        version: Starts at 1, incremented on every save

    Usage:
        class PayoutRequest(UUIDPrimaryKeyMixin, VersionedMixin, BaseModel):
            ...

        # Writers lock the row only if it is still at the version they read
        locked = check_version(PayoutRequest, payout.pk, payout.version)
    """

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        is_update = (
            self.pk is not None
            and not self._state.adding
            and not kwargs.get("force_insert", False)
        )
        if is_update:
            self.version = F("version") + 1
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])
