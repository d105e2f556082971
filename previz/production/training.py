from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List

from previz.errors import NotFoundError, StateConflictError, UpstreamServiceError, ValidationError, upstream
from previz.providers.base import TrainingService
from previz.utils.logging_setup import log_context

from .ledger import UsageLedger
from .models import Actor
from .pricing import PriceBook
from .store import StudioStore

logger = logging.getLogger(__name__)

LEGAL_TRANSITIONS = frozenset(
    {
        ("pending", "training"),
        ("pending", "failed"),
        ("training", "ready"),
        ("training", "failed"),
    }
)

# Provider statuses not listed here (starting, processing, ...) leave the actor as is.
PROVIDER_STATUS_MAP = {
    "succeeded": "ready",
    "failed": "failed",
    "canceled": "failed",
}


def map_provider_status(provider_status: Any) -> str | None:
    return PROVIDER_STATUS_MAP.get(str(provider_status or "").strip().lower())


@dataclass
class TrainingJobTracker:
    """
    Actor lifecycle over an external training job.

    pending -> training -> {ready, failed}, plus pending -> failed when the
    submission itself fails. Status writes are compare-and-swap on the
    current status; terminal states never change.
    """

    store: StudioStore
    ledger: UsageLedger
    service: TrainingService
    price_book: PriceBook = field(default_factory=PriceBook)

    def _transition(self, actor_id: int, expected: str, new: str, **values: Any) -> bool:
        if (expected, new) not in LEGAL_TRANSITIONS:
            raise StateConflictError(f"Illegal actor transition {expected} -> {new} for actor {actor_id}")
        return self.store.compare_and_set_actor_status(actor_id, expected, new, **values)

    def _charge(self, actor: Actor) -> None:
        self.ledger.append(
            project_id=actor.project_id,
            user_id=actor.user_id,
            action_type="MODEL_TRAINING",
            model_id=self.price_book.fixed_model("MODEL_TRAINING"),
            quantity=1,
            cost=self.price_book.fixed_cost("MODEL_TRAINING"),
        )

    def start(self, user_id: str, project_id: int, name: str, trigger_word: str, dataset_url: str) -> Actor:
        for label, value in (("user_id", user_id), ("name", name), ("trigger_word", trigger_word), ("dataset_url", dataset_url)):
            if not value or not str(value).strip():
                raise ValidationError(f"{label} is required")
        if self.store.get_project(project_id) is None:
            raise NotFoundError("Project", project_id)

        actor = self.store.insert_actor(user_id, project_id, name.strip(), trigger_word.strip(), dataset_url.strip())
        with log_context(project_id=project_id, user_id=user_id, operation="training.start"):
            try:
                with upstream("training"):
                    destination = self.service.resolve_destination(actor.name)
                    job_id = self.service.submit(actor.dataset_url, actor.trigger_word, destination)
                    if not job_id:
                        raise ValueError("training service returned no job id")
            except UpstreamServiceError as e:
                with self.store.transaction():
                    self._transition(actor.id, "pending", "failed")
                    self._charge(actor)
                logger.error("Training submission failed for actor %s: %s", actor.id, e.message)
                raise UpstreamServiceError("training", e.message, actor_id=actor.id) from e

            with self.store.transaction():
                if not self._transition(actor.id, "pending", "training", training_job_id=str(job_id), model_handle=destination):
                    raise StateConflictError(f"Actor {actor.id} left pending before submission was recorded")
                self._charge(actor)
            logger.info("Training submitted actor=%s job=%s destination=%s", actor.id, job_id, destination)
        return self.get_actor(actor.id)

    def poll_status(self, actor_id: int) -> str:
        actor = self.get_actor(actor_id)
        if actor.is_terminal or not actor.training_job_id:
            return actor.status

        try:
            with upstream("training"):
                provider_status = self.service.get_status(actor.training_job_id)
        except UpstreamServiceError as e:
            logger.warning("Status query failed for actor %s: %s", actor_id, e.message)
            return actor.status

        new = map_provider_status(provider_status)
        if new is None or new == actor.status:
            return actor.status
        if (actor.status, new) in LEGAL_TRANSITIONS and self._transition(actor_id, actor.status, new):
            logger.info("Actor %s %s -> %s", actor_id, actor.status, new)
            return new
        # Lost the race to another writer (e.g. a webhook); report what is stored.
        return self.get_actor(actor_id).status

    def apply_webhook(self, training_job_id: str, provider_status: str) -> Actor:
        actor = self.store.get_actor_by_job(training_job_id)
        if actor is None:
            raise NotFoundError("Actor", f"job {training_job_id}")

        new = map_provider_status(provider_status)
        if new is None or new == actor.status:
            return actor
        if not self._transition(actor.id, actor.status, new):
            current = self.get_actor(actor.id)
            if current.status == new:
                return current
            raise StateConflictError(f"Actor {actor.id} changed to {current.status} before {new} could be applied")
        logger.info("Actor %s %s -> %s (webhook)", actor.id, actor.status, new)
        return self.get_actor(actor.id)

    def get_actor(self, actor_id: int) -> Actor:
        actor = self.store.get_actor(actor_id)
        if actor is None:
            raise NotFoundError("Actor", actor_id)
        return actor

    def list_actors(self, user_id: str) -> List[Actor]:
        return self.store.list_actors(user_id)
