from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List

from previz.errors import NotFoundError, ValidationError

from .models import UsageLedgerEntry
from .store import StudioStore, quantize_cost

logger = logging.getLogger(__name__)


@dataclass
class UsageLedger:
    """
    Append-only record of billable actions.

    No update or delete path is exposed. Callers that need the
    entry to commit together with their own writes call `append` inside
    `store.transaction()`.
    """

    store: StudioStore

    def append(
        self,
        project_id: int,
        user_id: str,
        action_type: str,
        model_id: str,
        quantity: int,
        cost: Any,
    ) -> UsageLedgerEntry:
        if not action_type or not str(action_type).strip():
            raise ValidationError("action_type must be non-empty")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 0:
            raise ValidationError(f"quantity must be a non-negative integer, got {quantity!r}")
        try:
            amount = quantize_cost(cost)
        except (InvalidOperation, ValueError, TypeError) as e:
            raise ValidationError(f"cost is not a number: {cost!r}") from e
        if not amount.is_finite():
            raise ValidationError(f"cost must be finite, got {cost!r}")
        if amount < 0:
            raise ValidationError(f"cost must be >= 0, got {amount}")
        if self.store.get_project(project_id) is None:
            raise NotFoundError("Project", project_id)

        entry = self.store.insert_ledger_entry(
            project_id=project_id,
            user_id=user_id,
            action_type=action_type,
            model_id=model_id or "",
            quantity=quantity,
            cost=amount,
        )
        logger.info("Ledger %s project=%s model=%s qty=%s cost=%s", action_type, project_id, model_id, quantity, amount)
        return entry

    def project_total(self, project_id: int) -> Decimal:
        total = Decimal("0")
        for cost in self.store.ledger_costs(project_id):
            total += Decimal(cost)
        return total

    def list_entries(self, project_id: int) -> List[UsageLedgerEntry]:
        return self.store.list_ledger_entries(project_id)

    def breakdown_by_action(self, project_id: int) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for entry in self.store.list_ledger_entries(project_id):
            bucket = out.setdefault(entry.action_type, {"count": 0, "quantity": 0, "cost": Decimal("0")})
            bucket["count"] += 1
            bucket["quantity"] += entry.quantity
            bucket["cost"] += entry.cost
        return out
