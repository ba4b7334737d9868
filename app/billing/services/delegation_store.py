"""
Delegation store.

Persists signed delegations. Pure storage: the only validation is that the
payload is complete and every caveat is a known kind. Whether the caveats
allow a given redemption is decided by billing.caveats.authorize.

Usage:
    from billing.services import DelegationStore

    record = DelegationStore.store(workspace, {
        "delegate": "0x...",
        "delegator": "0x...",
        "authority": "0x...",
        "caveats": [{"kind": "amount_cap", "max_amount": 10_000_000}],
        "salt": "1",
        "signature": "0x...",
    })
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from django.utils import timezone

from core.services import BaseService

from billing.caveats import parse_caveats, serialize_caveat
from billing.exceptions import DelegationValidationError
from billing.models import DelegationRecord

if TYPE_CHECKING:
    from billing.models import Workspace

REQUIRED_FIELDS = ("delegate", "delegator", "authority", "salt", "signature")


class DelegationStore(BaseService):
    """
    Write-once storage for DelegationRecord rows.

    All methods are class methods - no instance state is maintained.
    """

    @classmethod
    def store(cls, workspace: Workspace, payload: dict[str, Any]) -> DelegationRecord:
        """
        Validate and persist a delegation.

        Caveats are normalized through the tagged union so the stored form
        only ever contains known kinds with typed parameters.

        Raises:
            DelegationValidationError: Missing field or unknown/invalid caveat
        """
        if not isinstance(payload, dict):
            raise DelegationValidationError("Delegation payload must be an object")

        missing = [name for name in REQUIRED_FIELDS if not payload.get(name)]
        if missing:
            raise DelegationValidationError(
                "Delegation is missing required fields",
                details={"missing": missing},
            )

        caveats = parse_caveats(payload.get("caveats", []))

        record = DelegationRecord.objects.create(
            workspace=workspace,
            delegate=str(payload["delegate"]).lower(),
            delegator=str(payload["delegator"]).lower(),
            authority=str(payload["authority"]),
            caveats=[serialize_caveat(caveat) for caveat in caveats],
            salt=str(payload["salt"]),
            signature=str(payload["signature"]),
        )

        cls.get_logger().info(
            "Delegation stored",
            extra={
                "delegation_id": str(record.id),
                "workspace_id": str(workspace.id),
                "caveat_kinds": [caveat.kind for caveat in caveats],
            },
        )
        return record

    @classmethod
    def get(cls, delegation_id: uuid.UUID) -> DelegationRecord | None:
        try:
            return DelegationRecord.objects.get(id=delegation_id)
        except DelegationRecord.DoesNotExist:
            return None

    @classmethod
    def supersede(cls, record: DelegationRecord) -> DelegationRecord:
        """Soft-delete a delegation replaced by a newer signature."""
        if record.is_deleted:
            return record
        record.is_deleted = True
        record.deleted_at = timezone.now()
        record.save(update_fields=["is_deleted", "deleted_at", "updated_at"])
        cls.get_logger().info("Delegation superseded", extra={"delegation_id": str(record.id)})
        return record
