import re
import time
from typing import Any, Callable, Dict, Optional

import requests

from previz.providers.base import setup_logger
from previz.utils.replicate_api import ReplicateClient

logger = setup_logger(__name__)

DEFAULT_TRAINING_INPUT: Dict[str, Any] = {
    "steps": 1000,
    "lora_rank": 16,
    "optimizer": "adamw8bit",
    "batch_size": 1,
    "resolution": "512,768,1024",
    "autocaption": True,
}


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "-", name.lower())


class ReplicateTrainingService:
    """Flux LoRA training jobs on Replicate."""

    def __init__(
        self,
        client: ReplicateClient,
        trainer_owner: str = "ostris",
        trainer_name: str = "flux-dev-lora-trainer",
        trainer_version: str = "e440909d3512c31646ee2e0c7d6f6f4d234e850e2127db8a1d24272f29f0003a",
        owner: Optional[str] = None,
        default_owner: str = "ai-film-studio",
        training_input: Optional[Dict[str, Any]] = None,
        webhook_url: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.trainer_owner = trainer_owner
        self.trainer_name = trainer_name
        self.trainer_version = trainer_version
        self.owner = owner
        self.default_owner = default_owner
        self.training_input = {**DEFAULT_TRAINING_INPUT, **(training_input or {})}
        self.webhook_url = webhook_url
        self.clock = clock

    def _account_owner(self) -> str:
        try:
            username = self.client.account().get("username")
        except (RuntimeError, requests.RequestException, ValueError) as exc:
            logger.warning(f"Could not fetch Replicate account; using default owner {self.default_owner}: {exc}")
            return self.default_owner
        return username or self.default_owner

    def resolve_destination(self, name: str) -> str:
        owner = self.owner or self._account_owner()
        return f"{owner}/char-{slugify(name)}-{int(self.clock() * 1000)}"

    def submit(self, dataset_url: str, trigger_word: str, destination: str) -> str:
        payload = {**self.training_input, "input_images": dataset_url, "trigger_word": trigger_word}
        training = self.client.create_training(
            self.trainer_owner,
            self.trainer_name,
            self.trainer_version,
            destination=destination,
            payload=payload,
            webhook=self.webhook_url,
        )
        logger.info(f"Training started: {training.get('id')} -> {destination}")
        return training.get("id")

    def get_status(self, job_id: str) -> str:
        return self.client.get_training(job_id).get("status")
