from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from previz.config.config import StudioSettings, load_settings
from previz.production.frames import FrameHistoryStore, FrameOrderStore
from previz.production.identity import IdentityLockEngine
from previz.production.ledger import UsageLedger
from previz.production.pipeline import DecompositionPipeline
from previz.production.pricing import PriceBook
from previz.production.store import StudioStore
from previz.production.training import TrainingJobTracker
from previz.providers.base import (
    BrandContextProvider,
    ConsistencyAnalyzer,
    ImageGenerator,
    MappingBrandContext,
    SegmentationService,
    ShotPlanner,
    TrainingService,
)
from previz.providers.image_gen import ReplicateImageGenerator
from previz.providers.llm import LLMConsistencyAnalyzer, LLMSegmentationService, LLMShotPlanner, create_chat_model
from previz.providers.training import ReplicateTrainingService
from previz.utils.logging_setup import configure_logging
from previz.utils.replicate_api import ReplicateClient

logger = logging.getLogger(__name__)


@dataclass
class Studio:
    """
    Every production capability, constructed once over a shared store.

    Collaborators are injected so tests can pass fakes; `from_settings` builds
    the real Replicate and LLM adapters.
    """

    store: StudioStore
    ledger: UsageLedger
    history: FrameHistoryStore
    order: FrameOrderStore
    identity: IdentityLockEngine
    training: TrainingJobTracker
    pipeline: DecompositionPipeline

    @classmethod
    def build(
        cls,
        store: StudioStore,
        segmentation: SegmentationService,
        planner: ShotPlanner,
        image_generator: ImageGenerator,
        training_service: TrainingService,
        analyzer: Optional[ConsistencyAnalyzer] = None,
        brand_provider: Optional[BrandContextProvider] = None,
        price_book: Optional[PriceBook] = None,
        default_image_model: str = "flux-dev",
        batch_model: Optional[str] = None,
        batch_concurrency: int = 3,
        consistency_threshold: int = 70,
    ) -> "Studio":
        prices = price_book or PriceBook()
        ledger = UsageLedger(store)
        history = FrameHistoryStore(store)
        return cls(
            store=store,
            ledger=ledger,
            history=history,
            order=FrameOrderStore(store),
            identity=IdentityLockEngine(store, analyzer=analyzer, threshold=consistency_threshold),
            training=TrainingJobTracker(store, ledger, training_service, prices),
            pipeline=DecompositionPipeline(
                store=store,
                ledger=ledger,
                history=history,
                segmentation=segmentation,
                planner=planner,
                image_generator=image_generator,
                brand_provider=brand_provider,
                price_book=prices,
                default_image_model=default_image_model,
                batch_model=batch_model,
                batch_concurrency=batch_concurrency,
            ),
        )

    @classmethod
    def from_settings(cls, settings: Optional[StudioSettings] = None) -> "Studio":
        settings = settings or load_settings()
        configure_logging(log_file=settings.log_file, level=settings.log_level_value)
        if not settings.replicate_api_token:
            logger.warning("REPLICATE_API_TOKEN is not set; image generation and training calls will fail")

        chat = create_chat_model(
            provider=settings.llm.provider,
            model_id=settings.llm.model_id,
            api_key=settings.llm.api_key,
            base_url=settings.llm.base_url,
            extra_params=settings.llm.extra_params,
        )
        client = ReplicateClient(settings.replicate_api_token, base_url=settings.replicate_base_url)

        return cls.build(
            store=StudioStore.open(settings.db_path),
            segmentation=LLMSegmentationService(chat),
            planner=LLMShotPlanner(chat),
            analyzer=LLMConsistencyAnalyzer(chat),
            image_generator=ReplicateImageGenerator(
                client,
                default_model=settings.image.default_model,
                aliases=settings.image.aliases,
                input_defaults=settings.image.input_defaults,
                timeout_sec=settings.image.timeout_sec,
                poll_interval_sec=settings.image.poll_interval_sec,
            ),
            training_service=ReplicateTrainingService(
                client,
                trainer_owner=settings.trainer.owner,
                trainer_name=settings.trainer.name,
                trainer_version=settings.trainer.version,
                owner=settings.trainer.destination_owner,
                default_owner=settings.trainer.default_owner,
                training_input=settings.trainer.params,
                webhook_url=settings.trainer.webhook_url,
            ),
            brand_provider=MappingBrandContext(settings.brands),
            price_book=PriceBook(settings.pricing, settings.fixed_costs),
            default_image_model=settings.image.default_model,
            batch_model=settings.image.batch_model,
            batch_concurrency=settings.batch_concurrency,
            consistency_threshold=settings.consistency_threshold,
        )

    def close(self) -> None:
        self.store.close()
