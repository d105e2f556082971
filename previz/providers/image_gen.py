from typing import Any, Dict, Optional

from previz.providers.base import setup_logger
from previz.utils.replicate_api import ReplicateClient, first_output_url

logger = setup_logger(__name__)


class ReplicateImageGenerator:
    """
    Text-to-image through Replicate.

    Short model ids used for pricing ("flux-dev", "flux-fast") are mapped to
    Replicate model refs through `aliases`; anything else (e.g. a trained
    actor's "owner/char-name-123" handle) is sent as is.
    """

    def __init__(
        self,
        client: ReplicateClient,
        default_model: str = "flux-dev",
        aliases: Optional[Dict[str, str]] = None,
        input_defaults: Optional[Dict[str, Any]] = None,
        timeout_sec: int = 300,
        poll_interval_sec: int = 2,
    ):
        self.client = client
        self.default_model = default_model
        self.aliases = dict(aliases or {})
        self.input_defaults = dict(input_defaults or {})
        self.timeout_sec = timeout_sec
        self.poll_interval_sec = poll_interval_sec

    def resolve_model(self, model: Optional[str]) -> str:
        key = model or self.default_model
        return self.aliases.get(key, key)

    def generate(self, prompt: str, model: Optional[str] = None) -> str:
        target = self.resolve_model(model)
        payload = {**self.input_defaults, "prompt": prompt}
        logger.info(f"Replicate prediction with {target}")

        prediction = self.client.create_prediction(target, payload)
        prediction = self.client.poll_prediction(
            prediction,
            timeout_sec=self.timeout_sec,
            poll_interval_sec=self.poll_interval_sec,
        )
        image_url = first_output_url(prediction.get("output"))
        if not image_url:
            raise RuntimeError(f"Replicate prediction {prediction.get('id')} returned no image output")
        logger.info(f"Image URL: {image_url}")
        return image_url
