"""
Model mixins shared by billing models.

Available Mixins:
    UUIDPrimaryKeyMixin: UUID primary key
    SoftDeleteMixin: is_deleted / deleted_at with soft_delete() and restore()
    MetadataMixin: JSON metadata with get_meta() / set_meta()

Usage:
    from core.model_mixins import MetadataMixin, SoftDeleteMixin, UUIDPrimaryKeyMixin
    from core.models import BaseModel

    class Product(UUIDPrimaryKeyMixin, SoftDeleteMixin, MetadataMixin, BaseModel):
        objects = SoftDeleteManager()
        all_objects = models.Manager()

Note:
    List mixins before BaseModel. SoftDeleteMixin pairs with
    core.managers.SoftDeleteManager.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from django.db import models
from django.utils import timezone

if TYPE_CHECKING:
    from typing import Any

SOFT_DELETE_FIELDS = ["is_deleted", "deleted_at", "updated_at"]


class UUIDPrimaryKeyMixin(models.Model):
    """
    UUID primary key.

    Subscription and event ids leave the service (processor metadata,
    redeemer idempotency keys, API responses) and must not reveal volume.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    class Meta:
        abstract = True


class SoftDeleteMixin(models.Model):
    """
    Flag rows as deleted instead of removing them.

    soft_delete() and restore() write SOFT_DELETE_FIELDS only, so models
    that refuse other updates (immutable delegations) still allow them.
    """

    is_deleted = models.BooleanField(default=False, db_index=True)
    deleted_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        abstract = True

    def soft_delete(self) -> None:
        self.is_deleted = True
        self.deleted_at = timezone.now()
        self.save(update_fields=SOFT_DELETE_FIELDS)

    def restore(self) -> None:
        self.is_deleted = False
        self.deleted_at = None
        self.save(update_fields=SOFT_DELETE_FIELDS)


class MetadataMixin(models.Model):
    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Free-form context (processor metadata, signup source, ...)",
    )

    class Meta:
        abstract = True

    def get_meta(self, key: str, default: Any = None) -> Any:
        return (self.metadata or {}).get(key, default)

    def set_meta(self, key: str, value: Any, save: bool = True) -> None:
        """Set one key. With save=False the caller persists it with its own save()."""
        metadata = dict(self.metadata or {})
        metadata[key] = value
        self.metadata = metadata
        if save:
            self.save(update_fields=["metadata", "updated_at"])
