"""
Soft delete QuerySet and Manager.

Superseded delegations, customers and products removed at the processor
stay in their tables: subscriptions and events still reference them.

Usage:
    from core.managers import SoftDeleteManager

    class DelegationRecord(SoftDeleteMixin, BaseModel):
        objects = SoftDeleteManager()   # Live rows only
        all_objects = models.Manager()  # Audit access

    DelegationRecord.objects.deleted()  # Superseded delegations
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone


class SoftDeleteQuerySet(models.QuerySet):
    def delete(self) -> tuple[int, dict[str, int]]:
        """
        Flag rows instead of removing them.

        Returns the same shape as QuerySet.delete(), counting rows that
        were live before the call.
        """
        now = timezone.now()
        count = self.filter(is_deleted=False).update(is_deleted=True, deleted_at=now, updated_at=now)
        return count, {self.model._meta.label: count}

    def deleted(self) -> SoftDeleteQuerySet:
        return self.filter(is_deleted=True)


class SoftDeleteManager(models.Manager):
    """Default manager hiding soft-deleted rows. Pair with a plain all_objects manager."""

    def get_queryset(self) -> SoftDeleteQuerySet:
        return SoftDeleteQuerySet(self.model, using=self._db).filter(is_deleted=False)

    def deleted(self) -> SoftDeleteQuerySet:
        return SoftDeleteQuerySet(self.model, using=self._db).filter(is_deleted=True)
