from decimal import Decimal
from unittest.mock import patch

import pytest

from previz.errors import NotFoundError, StateConflictError, UpstreamServiceError, ValidationError
from previz.production.training import map_provider_status


def _start(studio, project_id):
    return studio.training.start("u1", project_id, "Mara", "MARA", "https://data/mara.zip")


def test_start_moves_actor_to_training_and_charges_once(studio, fakes):
    project = studio.pipeline.create_project("u1", "Pilot")
    actor = _start(studio, project.id)

    assert actor.status == "training"
    assert actor.training_job_id == "job-1"
    assert actor.model_handle == "studio/char-mara-1000"
    assert fakes["training_service"].submitted[0]["trigger_word"] == "MARA"

    entries = studio.ledger.list_entries(project.id)
    assert [(e.action_type, e.cost) for e in entries] == [("MODEL_TRAINING", Decimal("2.0000"))]


def test_poll_before_completion_keeps_training(studio, fakes):
    project = studio.pipeline.create_project("u1", "Pilot")
    actor = _start(studio, project.id)

    assert studio.training.poll_status(actor.id) == "training"
    assert studio.training.get_actor(actor.id).status == "training"
    assert len(studio.ledger.list_entries(project.id)) == 1


def test_poll_maps_provider_status(studio, fakes):
    project = studio.pipeline.create_project("u1", "Pilot")
    actor = _start(studio, project.id)
    fakes["training_service"].status = "succeeded"
    assert studio.training.poll_status(actor.id) == "ready"


@pytest.mark.parametrize("terminal", ["succeeded", "canceled"])
def test_poll_is_idempotent_after_terminal(studio, fakes, terminal):
    project = studio.pipeline.create_project("u1", "Pilot")
    actor = _start(studio, project.id)
    fakes["training_service"].status = terminal
    first = studio.training.poll_status(actor.id)

    fakes["training_service"].status = "failed" if first == "ready" else "succeeded"
    for _ in range(3):
        assert studio.training.poll_status(actor.id) == first
    assert len(studio.ledger.list_entries(project.id)) == 1


def test_poll_query_error_returns_last_status(studio, fakes):
    project = studio.pipeline.create_project("u1", "Pilot")
    actor = _start(studio, project.id)
    fakes["training_service"].status_error = RuntimeError("replicate down")
    assert studio.training.poll_status(actor.id) == "training"


def test_poll_pending_without_job_returns_pending(studio, store):
    project = studio.pipeline.create_project("u1", "Pilot")
    actor = store.insert_actor("u1", project.id, "Mara", "MARA", "https://data/mara.zip")
    assert studio.training.poll_status(actor.id) == "pending"


def test_submit_failure_marks_failed_and_charges(studio, fakes):
    project = studio.pipeline.create_project("u1", "Pilot")
    fakes["training_service"].submit_error = RuntimeError("quota exceeded")

    with pytest.raises(UpstreamServiceError) as exc_info:
        _start(studio, project.id)

    err = exc_info.value
    assert err.service == "training"
    assert "quota exceeded" in err.message
    actor = studio.training.get_actor(err.actor_id)
    assert actor.status == "failed"
    assert actor.training_job_id is None
    assert [e.action_type for e in studio.ledger.list_entries(project.id)] == ["MODEL_TRAINING"]


def test_empty_job_id_is_a_failure(studio, fakes):
    project = studio.pipeline.create_project("u1", "Pilot")
    fakes["training_service"].job_id = ""
    with pytest.raises(UpstreamServiceError) as exc_info:
        _start(studio, project.id)
    assert studio.training.get_actor(exc_info.value.actor_id).status == "failed"


def test_start_validates_inputs(studio):
    project = studio.pipeline.create_project("u1", "Pilot")
    with pytest.raises(ValidationError):
        studio.training.start("u1", project.id, "Mara", "", "https://data/mara.zip")
    with pytest.raises(NotFoundError):
        studio.training.start("u1", 999, "Mara", "MARA", "https://data/mara.zip")
    assert studio.training.list_actors("u1") == []


def test_webhook_completes_training(studio):
    project = studio.pipeline.create_project("u1", "Pilot")
    actor = _start(studio, project.id)

    updated = studio.training.apply_webhook("job-1", "succeeded")
    assert updated.id == actor.id
    assert updated.status == "ready"
    # Duplicate delivery.
    assert studio.training.apply_webhook("job-1", "succeeded").status == "ready"


def test_webhook_illegal_transition(studio):
    project = studio.pipeline.create_project("u1", "Pilot")
    _start(studio, project.id)
    studio.training.apply_webhook("job-1", "failed")
    with pytest.raises(StateConflictError):
        studio.training.apply_webhook("job-1", "succeeded")


def test_webhook_unknown_job_and_unmapped_status(studio):
    project = studio.pipeline.create_project("u1", "Pilot")
    _start(studio, project.id)
    with pytest.raises(NotFoundError):
        studio.training.apply_webhook("nope", "succeeded")
    assert studio.training.apply_webhook("job-1", "processing").status == "training"


def test_illegal_status_write_is_rejected(studio, store):
    project = studio.pipeline.create_project("u1", "Pilot")
    actor = store.insert_actor("u1", project.id, "Mara", "MARA", "https://data/mara.zip")
    with pytest.raises(StateConflictError):
        studio.training._transition(actor.id, "pending", "ready")
    assert store.get_actor(actor.id).status == "pending"


def test_map_provider_status():
    assert map_provider_status("succeeded") == "ready"
    assert map_provider_status("CANCELED") == "failed"
    assert map_provider_status("starting") is None
    assert map_provider_status(None) is None


def test_webhook_losing_race_to_same_status_is_a_no_op(studio, fakes, store):
    project = studio.pipeline.create_project("u1", "Pilot")
    actor = _start(studio, project.id)
    stale = store.get_actor(actor.id)

    fakes["training_service"].status = "succeeded"
    assert studio.training.poll_status(actor.id) == "ready"

    with patch.object(store, "get_actor_by_job", return_value=stale):
        updated = studio.training.apply_webhook("job-1", "succeeded")
    assert updated.status == "ready"
    assert len(studio.ledger.list_entries(project.id)) == 1


def test_webhook_losing_race_to_other_status_conflicts(studio, fakes, store):
    project = studio.pipeline.create_project("u1", "Pilot")
    actor = _start(studio, project.id)
    stale = store.get_actor(actor.id)
    studio.training.apply_webhook("job-1", "failed")

    with patch.object(store, "get_actor_by_job", return_value=stale):
        with pytest.raises(StateConflictError):
            studio.training.apply_webhook("job-1", "succeeded")
    assert studio.training.get_actor(actor.id).status == "failed"
