"""
DelegationRecord model: a signed spending authorization.

A delegation lets the delegate (the workspace's redeemer) move a bounded
amount of one token out of the delegator's wallet. Records are written once
at signup and never mutated; the only permitted change is a soft delete
when the delegation is superseded.

Usage:
    from billing.services import DelegationStore

    record = DelegationStore.store(workspace, payload)
    caveats = record.parsed_caveats()
"""

from __future__ import annotations

from django.db import models

from core.exceptions import ConflictError
from core.managers import SoftDeleteManager
from core.model_mixins import SoftDeleteMixin, UUIDPrimaryKeyMixin
from core.models import BaseModel

# Columns a superseded delegation may still change
MUTABLE_FIELDS = frozenset({"is_deleted", "deleted_at", "updated_at"})


class DelegationRecord(UUIDPrimaryKeyMixin, SoftDeleteMixin, BaseModel):
    """
    Immutable signed delegation.

    Fields:
        delegate: Address allowed to redeem
        delegator: Customer wallet address that signed
        authority: Parent authority hash (root authority for direct delegations)
        caveats: Ordered list of tagged caveat objects {"kind": ..., ...}
        salt: Signer-chosen salt making the signature unique
        signature: Hex signature over the delegation
    """

    workspace = models.ForeignKey(
        "billing.Workspace",
        on_delete=models.PROTECT,
        related_name="delegations",
        help_text="Workspace the delegation was signed for",
    )

    delegate = models.CharField(max_length=42, help_text="Address allowed to redeem the delegation")
    delegator = models.CharField(max_length=42, db_index=True, help_text="Address that signed the delegation")
    authority = models.CharField(max_length=66, help_text="Authority hash the delegation derives from")
    caveats = models.JSONField(default=list, help_text="Ordered list of tagged caveats")
    salt = models.CharField(max_length=78, help_text="Signer-chosen salt")
    signature = models.TextField(help_text="Hex-encoded signature")

    objects = SoftDeleteManager()
    all_objects = models.Manager()

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Delegation"
        verbose_name_plural = "Delegations"
        indexes = [
            models.Index(fields=["workspace", "delegator"], name="billing_del_workspa_5b1c2e_idx"),
        ]

    def __str__(self) -> str:
        return f"Delegation({self.delegator} -> {self.delegate})"

    def save(self, *args, **kwargs):
        """Allow the initial insert and soft-delete updates only."""
        if not self._state.adding:
            update_fields = kwargs.get("update_fields")
            if update_fields is None or not set(update_fields) <= MUTABLE_FIELDS:
                raise ConflictError(
                    "Delegation records are immutable",
                    error_code="DELEGATION_IMMUTABLE",
                    details={"delegation_id": str(self.pk)},
                )
        super().save(*args, **kwargs)

    def parsed_caveats(self):
        from billing.caveats import parse_caveats

        return parse_caveats(self.caveats)
