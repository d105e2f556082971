from decimal import Decimal

import pytest

from previz.errors import NotFoundError, ValidationError
from previz.production.ledger import UsageLedger


def _project(store):
    return store.create_project("u1", "Pilot")


def test_project_total_is_zero_without_entries(store):
    ledger = UsageLedger(store)
    total = ledger.project_total(_project(store).id)
    assert total == Decimal("0")
    assert isinstance(total, Decimal)


def test_project_total_is_exact_decimal_sum(store):
    ledger = UsageLedger(store)
    project = _project(store)
    for cost in ("0.1", "0.2", 0.0001, Decimal("2.00"), "0.055"):
        ledger.append(project.id, "u1", "IMAGE_GENERATION", "flux-pro", 1, cost)
    assert ledger.project_total(project.id) == Decimal("2.3551")


def test_totals_are_per_project(store):
    ledger = UsageLedger(store)
    first = _project(store)
    second = store.create_project("u2", "Other")
    ledger.append(first.id, "u1", "SCRIPT_ANALYSIS", "gemini-1.5-pro", 2, "0.05")
    ledger.append(second.id, "u2", "SCRIPT_ANALYSIS", "gemini-1.5-pro", 1, "0.05")
    assert ledger.project_total(first.id) == Decimal("0.0500")
    assert len(ledger.list_entries(second.id)) == 1


def test_cost_is_stored_with_four_places(store):
    ledger = UsageLedger(store)
    project = _project(store)
    entry = ledger.append(project.id, "u1", "IMAGE_GENERATION", "flux-dev", 1, "0.04")
    assert entry.cost == Decimal("0.0400")
    row = store.conn.execute("SELECT cost FROM usage_ledger WHERE id=?", (entry.id,)).fetchone()
    assert row["cost"] == "0.0400"


@pytest.mark.parametrize(
    "action_type,quantity,cost",
    [
        ("", 1, "0.1"),
        ("   ", 1, "0.1"),
        ("IMAGE_GENERATION", -1, "0.1"),
        ("IMAGE_GENERATION", True, "0.1"),
        ("IMAGE_GENERATION", 1.5, "0.1"),
        ("IMAGE_GENERATION", 1, "-0.01"),
        ("IMAGE_GENERATION", 1, "not-a-number"),
        ("IMAGE_GENERATION", 1, float("nan")),
        ("IMAGE_GENERATION", 1, "Infinity"),
    ],
)
def test_append_rejects_invalid_input(store, action_type, quantity, cost):
    ledger = UsageLedger(store)
    project = _project(store)
    with pytest.raises(ValidationError):
        ledger.append(project.id, "u1", action_type, "flux-dev", quantity, cost)
    assert ledger.list_entries(project.id) == []


def test_zero_quantity_and_cost_are_allowed(store):
    ledger = UsageLedger(store)
    project = _project(store)
    ledger.append(project.id, "u1", "IMAGE_GENERATION", "flux-dev", 0, 0)
    assert ledger.project_total(project.id) == Decimal("0")
    assert len(ledger.list_entries(project.id)) == 1


def test_breakdown_by_action(store):
    ledger = UsageLedger(store)
    project = _project(store)
    ledger.append(project.id, "u1", "IMAGE_GENERATION", "flux-dev", 1, "0.04")
    ledger.append(project.id, "u1", "IMAGE_GENERATION", "flux-dev", 1, "0.04")
    ledger.append(project.id, "u1", "MODEL_TRAINING", "flux-dev-lora-trainer", 1, "2.00")

    breakdown = ledger.breakdown_by_action(project.id)
    assert breakdown["IMAGE_GENERATION"] == {"count": 2, "quantity": 2, "cost": Decimal("0.0800")}
    assert breakdown["MODEL_TRAINING"]["cost"] == Decimal("2.0000")


def test_append_joins_callers_transaction(store):
    ledger = UsageLedger(store)
    project = _project(store)
    with pytest.raises(RuntimeError):
        with store.transaction():
            ledger.append(project.id, "u1", "IMAGE_GENERATION", "flux-dev", 1, "0.04")
            raise RuntimeError("generation row failed")
    assert ledger.project_total(project.id) == Decimal("0")


def test_append_for_unknown_project(store):
    ledger = UsageLedger(store)
    with pytest.raises(NotFoundError):
        ledger.append(999, "u1", "IMAGE_GENERATION", "flux-dev", 1, "0.04")
    assert ledger.project_total(999) == Decimal("0")
