from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from previz.errors import NotFoundError, StateConflictError, UpstreamServiceError, ValidationError, upstream
from previz.providers.base import (
    BrandContext,
    BrandContextProvider,
    ImageGenerator,
    SceneOutline,
    SegmentationService,
    ShotPlan,
    ShotPlanner,
    coerce_models,
)
from previz.utils.logging_setup import log_context

from .frames import FrameHistoryStore
from .ledger import UsageLedger
from .models import Actor, BatchItemResult, BatchReport, Frame, Generation, Project, Scene, Shot
from .pricing import PriceBook
from .store import StudioStore

logger = logging.getLogger(__name__)

DEFAULT_VISUAL_STYLE = "Cinematic film still, high quality."
DEFAULT_BATCH_CONCURRENCY = 3


def character_persona(actors: Iterable[Actor]) -> str:
    return ", ".join(f"{a.name} (Trigger: {a.trigger_word})" for a in actors)


def build_shot_prompt(shot: Shot, visual_style: Optional[str] = None, persona: str = "") -> str:
    lines = [
        f"{shot.camera_angle or 'Medium Shot'}, {shot.movement or 'Static'} camera, "
        f"{shot.lens or 'Cinematic'} lens, {shot.lighting or 'Natural'} lighting.",
        shot.visual_description or "Action",
    ]
    if persona:
        lines.append(f"Featuring: {persona}")
    lines.append(f"Style: {visual_style or DEFAULT_VISUAL_STYLE}")
    return "\n".join(lines)


@dataclass
class DecompositionPipeline:
    """
    Script -> scenes -> shots -> images.

    Every stage persists its rows and its ledger entry in one transaction;
    a collaborator failure surfaces as UpstreamServiceError with nothing written.
    """

    store: StudioStore
    ledger: UsageLedger
    history: FrameHistoryStore
    segmentation: SegmentationService
    planner: ShotPlanner
    image_generator: ImageGenerator
    brand_provider: Optional[BrandContextProvider] = None
    price_book: PriceBook = field(default_factory=PriceBook)
    default_image_model: str = "flux-dev"
    batch_model: Optional[str] = None
    batch_concurrency: int = DEFAULT_BATCH_CONCURRENCY

    # --- lookups ---
    def _require_project(self, project_id: int) -> Project:
        project = self.store.get_project(project_id)
        if project is None:
            raise NotFoundError("Project", project_id)
        return project

    def _require_scene(self, scene_id: int) -> Scene:
        scene = self.store.get_scene(scene_id)
        if scene is None:
            raise NotFoundError("Scene", scene_id)
        return scene

    def _require_shot(self, shot_id: int) -> Shot:
        shot = self.store.get_shot(shot_id)
        if shot is None:
            raise NotFoundError("Shot", shot_id)
        return shot

    def _brand_context(self, project: Project) -> Optional[BrandContext]:
        if not project.brand_id or self.brand_provider is None:
            return None
        with upstream("brand_context"):
            return self.brand_provider.get_brand_context(project.brand_id)

    def create_project(self, user_id: str, name: str, visual_style: str = "", brand_id: Optional[str] = None) -> Project:
        if not name or not name.strip():
            raise ValidationError("name is required")
        return self.store.create_project(user_id, name.strip(), visual_style, brand_id)

    def get_project(self, project_id: int) -> Project:
        return self._require_project(project_id)

    def list_scenes(self, project_id: int) -> List[Scene]:
        self._require_project(project_id)
        return self.store.list_scenes(project_id)

    def list_shots(self, scene_id: int) -> List[Shot]:
        self._require_scene(scene_id)
        return self.store.list_shots(scene_id)

    # --- decomposition ---
    def decompose_script(self, project_id: int, script_text: str, user_id: Optional[str] = None) -> List[Scene]:
        if not script_text or not script_text.strip():
            raise ValidationError("script_text must be non-empty")
        project = self._require_project(project_id)
        uid = user_id or project.user_id

        with log_context(project_id=project_id, user_id=uid, operation="decompose_script"):
            brand = self._brand_context(project)
            with upstream("segmentation"):
                outline = coerce_models(SceneOutline, self.segmentation.segment(script_text, brand.to_prompt() if brand else None))
            if not outline:
                raise UpstreamServiceError("segmentation", "returned no scenes")
            outline.sort(key=lambda s: s.order)

            with self.store.transaction():
                start = self.store.max_scene_order(project_id)
                scenes = self.store.insert_scenes(
                    project_id,
                    [{"order": start + i, "title": s.title, "description": s.description} for i, s in enumerate(outline, 1)],
                )
                self.ledger.append(
                    project_id=project_id,
                    user_id=uid,
                    action_type="SCRIPT_ANALYSIS",
                    model_id=self.price_book.fixed_model("SCRIPT_ANALYSIS"),
                    quantity=len(scenes),
                    cost=self.price_book.fixed_cost("SCRIPT_ANALYSIS"),
                )
            logger.info("Decomposed script into %d scenes", len(scenes))
        return scenes

    def decompose_scene(self, scene_id: int, user_id: Optional[str] = None) -> List[Shot]:
        scene = self._require_scene(scene_id)
        project = self._require_project(scene.project_id)
        uid = user_id or project.user_id

        with log_context(project_id=project.id, user_id=uid, operation="decompose_scene"):
            brand = self._brand_context(project)
            scene_context = f"SCENE: {scene.title}\n\n{scene.description}"
            with upstream("shot_planning"):
                plans = coerce_models(
                    ShotPlan,
                    self.planner.plan(
                        scene_context,
                        project.visual_style or DEFAULT_VISUAL_STYLE,
                        None,
                        brand.to_prompt() if brand else None,
                    ),
                )
            if not plans:
                raise UpstreamServiceError("shot_planning", f"returned no shots for scene {scene_id}")
            plans.sort(key=lambda p: p.order)

            with self.store.transaction():
                start = self.store.max_shot_order(scene.id)
                shots = self.store.insert_shots(
                    scene.id,
                    [{**p.model_dump(exclude={"order"}), "order": start + i} for i, p in enumerate(plans, 1)],
                )
                self.store.update_scene_status(scene.id, "planned")
                self.ledger.append(
                    project_id=project.id,
                    user_id=uid,
                    action_type="SHOT_GENERATION",
                    model_id=self.price_book.fixed_model("SHOT_GENERATION"),
                    quantity=len(shots),
                    cost=self.price_book.fixed_cost("SHOT_GENERATION"),
                )
            logger.info("Decomposed scene %s into %d shots", scene_id, len(shots))
        return shots

    # --- generation ---
    def generate_shot_image(
        self,
        shot_id: int,
        user_id: str,
        model: Optional[str] = None,
        quality_tier: str = "fast",
    ) -> str:
        shot = self._require_shot(shot_id)
        scene = self._require_scene(shot.scene_id)
        project = self._require_project(scene.project_id)

        with log_context(project_id=project.id, user_id=user_id, operation="generate_shot_image"):
            actors = self.store.list_shot_actors(shot.id)
            handle = next((a.model_handle for a in actors if a.status == "ready" and a.model_handle), None)
            target = handle or model or self.default_image_model
            prompt = build_shot_prompt(shot, project.visual_style, character_persona(actors))

            with upstream("image_generation"):
                image_url = self.image_generator.generate(prompt, target)
                if not image_url:
                    raise ValueError("image generation returned no URL")

            priced_as = target if target in self.price_book.prices else self.default_image_model
            cost = self.price_book.estimate_cost(priced_as, 1)
            with self.store.transaction():
                self.store.add_generation(shot.id, project.id, image_url, prompt, target, cost, quality_tier)
                self.ledger.append(
                    project_id=project.id,
                    user_id=user_id,
                    action_type="IMAGE_GENERATION",
                    model_id=target,
                    quantity=1,
                    cost=cost,
                )
            logger.info("Generated image for shot %s with %s", shot_id, target)
        return image_url

    async def _generate_item(self, shot_id: int, user_id: str, model: Optional[str]) -> BatchItemResult:
        try:
            url = await asyncio.to_thread(self.generate_shot_image, shot_id, user_id, model)
        except Exception as e:
            logger.warning("Batch item shot=%s failed: %s", shot_id, e)
            return BatchItemResult(shot_id=shot_id, success=False, error=str(e))
        return BatchItemResult(shot_id=shot_id, success=True, image_url=url)

    async def generate_batch(
        self,
        shot_ids: Iterable[int],
        user_id: str,
        concurrency: Optional[int] = None,
        model: Optional[str] = None,
    ) -> BatchReport:
        """
        Generate images in chunks of `concurrency`, awaiting each chunk before the next.
        Item failures are recorded in the report and never cancel siblings.
        """
        size = self.batch_concurrency if concurrency is None else concurrency
        if isinstance(size, bool) or not isinstance(size, int) or size < 1:
            raise ValidationError(f"concurrency must be a positive integer, got {size!r}")

        ids = list(shot_ids)
        report = BatchReport()
        with log_context(user_id=user_id, operation="generate_batch"):
            for start in range(0, len(ids), size):
                chunk = ids[start:start + size]
                report.chunk_sizes.append(len(chunk))
                results = await asyncio.gather(*(self._generate_item(sid, user_id, model or self.batch_model) for sid in chunk))
                report.results.extend(results)
            logger.info("Batch finished: %d ok, %d failed", len(report.succeeded), len(report.failed))
        return report

    def current_generation(self, shot_id: int) -> Optional[Generation]:
        self._require_shot(shot_id)
        return self.store.latest_generation(shot_id)

    def shot_number_for(self, shot_id: int) -> int:
        """1-based position of the shot across the project, by (scene order, shot order)."""
        shot = self._require_shot(shot_id)
        scene = self._require_scene(shot.scene_id)
        for position, candidate in enumerate(self.store.list_project_shots(scene.project_id), 1):
            if candidate.id == shot.id:
                return position
        raise NotFoundError("Shot", shot_id)

    def promote_generation(self, generation_id: int, shot_number: Optional[int] = None) -> Frame:
        generation = self.store.get_generation(generation_id)
        if generation is None:
            raise NotFoundError("Generation", generation_id)
        number = self.shot_number_for(generation.shot_id) if shot_number is None else int(shot_number)

        with self.history.key_lock(generation.project_id, number):
            with self.store.transaction():
                existing = self.store.get_frame_by_shot(generation.project_id, number)
                if existing is not None and existing.is_consistency_locked:
                    raise StateConflictError(f"Frame for shot {number} is consistency-locked")
                frame = self.store.upsert_frame(generation.project_id, number, generation.image_url, generation.prompt)
                self.history.create_version(
                    generation.project_id,
                    number,
                    generation.image_url,
                    generation.prompt,
                    notes=f"Promoted from generation {generation.id}",
                )
        logger.info("Promoted generation %s to frame %s (shot %s)", generation_id, frame.id, number)
        return frame

    # --- actor bindings ---
    def bind_actor_to_shot(self, shot_id: int, actor_id: int) -> List[Actor]:
        self._require_shot(shot_id)
        if self.store.get_actor(actor_id) is None:
            raise NotFoundError("Actor", actor_id)
        self.store.bind_actor(shot_id, actor_id)
        return self.store.list_shot_actors(shot_id)

    def unbind_actor_from_shot(self, shot_id: int, actor_id: int) -> bool:
        return self.store.unbind_actor(shot_id, actor_id)

    def list_shot_actors(self, shot_id: int) -> List[Actor]:
        self._require_shot(shot_id)
        return self.store.list_shot_actors(shot_id)

    def production_layout(self, project_id: int) -> List[Dict[str, Any]]:
        self._require_project(project_id)
        frames = {f.shot_number: f for f in self.store.list_frames(project_id)}

        layout: List[Dict[str, Any]] = []
        number = 0
        for scene in self.store.list_scenes(project_id):
            shots_out = []
            for shot in self.store.list_shots(scene.id):
                number += 1
                frame = frames.get(number)
                latest = self.store.latest_generation(shot.id)
                shots_out.append(
                    {
                        **asdict(shot),
                        "shot_number": number,
                        "image_url": frame.image_url if frame else (latest.image_url if latest else None),
                        "frame_id": frame.id if frame else None,
                        "consistency_score": frame.consistency_score if frame else None,
                        "is_consistency_locked": frame.is_consistency_locked if frame else False,
                        "actors": [
                            {"id": a.id, "name": a.name, "trigger_word": a.trigger_word, "status": a.status}
                            for a in self.store.list_shot_actors(shot.id)
                        ],
                    }
                )
            layout.append({**asdict(scene), "shots": shots_out})
        return layout
