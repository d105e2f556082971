from __future__ import annotations

import logging
import math
import numbers
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from previz.errors import NotFoundError, StateConflictError, ValidationError, upstream
from previz.providers.base import (
    BrandContext,
    ComparisonVerdict,
    ConsistencyAnalyzer,
    ConsistencyVerdict,
)
from previz.utils.logging_setup import log_context

from .models import (
    AppearanceComparison,
    CharacterAppearance,
    CharacterBreakdown,
    CharacterLibraryEntry,
    ConsistencyAnalysis,
    ConsistencyIssue,
    ConsistencyReport,
    Frame,
)
from .store import StudioStore

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 70

_EMPTY_PROFILE = {"clothing": [], "expression": [], "pose": [], "accessories": []}


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _clamp_score(value: Any) -> float:
    try:
        score = float(value or 0)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(score):
        return 0.0
    return min(100.0, max(0.0, score))


def build_locked_prompt(
    base_prompt: str,
    character: CharacterLibraryEntry,
    appearance: Optional[CharacterAppearance] = None,
    brand: Optional[BrandContext] = None,
) -> str:
    """Wrap a generation prompt with the character-lock and style-consistency clauses."""
    description = character.description or character.name
    if appearance is not None:
        description = f"{description} ({appearance.describe()})"
    primary = brand.palette[0] if brand and brand.palette else "not specified"

    sections = [
        base_prompt.strip(),
        "CRITICAL - CHARACTER LOCK:\n"
        f"- Use this exact character appearance: {description}\n"
        f"- Reference image: {character.reference_image_url or 'none'}\n"
        "- Maintain identical facial features, clothing style, and appearance across all shots\n"
        "- DO NOT vary the character's appearance, expression, or styling",
        "STYLE CONSISTENCY:\n"
        "- Maintain consistent lighting and color grading\n"
        f"- Use brand colors: Primary {primary}\n"
        "- Keep visual language consistent with brand identity\n"
        "- Maintain same camera perspective and composition style",
        "GENERATION RULES:\n"
        "1. Character must be IDENTICAL to reference image\n"
        "2. Do not create variations or alternative interpretations\n"
        "3. Maintain exact consistency with previous shots\n"
        "4. Use reference images as strict visual anchors",
    ]
    return "\n\n".join(sections)


def _add_unique(bucket: List[str], value: str) -> None:
    if value not in bucket:
        bucket.append(value)


def basic_consistency_check(appearances: Sequence[Tuple[int, int, CharacterAppearance]]) -> ConsistencyAnalysis:
    """
    Local heuristic used when no analyzer is configured.

    Penalizes the number of distinct outfits, expressions and poses. Wardrobe
    changes between consecutive frames are flagged only when more than half
    of the appearances introduce a distinct outfit.
    """
    clothing: List[str] = []
    expression: List[str] = []
    pose: List[str] = []
    accessories: List[str] = []
    for _, _, a in appearances:
        _add_unique(clothing, a.clothing)
        _add_unique(expression, a.expression)
        _add_unique(pose, a.pose)
        if a.accessories:
            _add_unique(accessories, a.accessories)

    issues: List[ConsistencyIssue] = []
    if len(clothing) > len(appearances) * 0.5:
        for prev, cur in zip(appearances, appearances[1:]):
            if prev[2].clothing != cur[2].clothing:
                issues.append(
                    ConsistencyIssue(
                        frame_id=cur[0],
                        shot_number=cur[1],
                        issue="Clothing changed from previous frame",
                        severity="high",
                        suggestion="Verify wardrobe continuity or justify costume change in narrative",
                    )
                )

    score = 100 - (len(clothing) - 1) * 20 - (len(expression) - 1) * 5 - (len(pose) - 1) * 3
    return ConsistencyAnalysis(
        overall_score=_clamp_score(score),
        issues=issues,
        recommendations=[
            f"Character appears in {len(clothing)} different outfit(s)",
            f"Character shows {len(expression)} different expression(s)",
            f"Character has {len(pose)} different pose(s)",
        ],
        appearance_profile={"clothing": clothing, "expression": expression, "pose": pose, "accessories": accessories},
    )


def _local_comparison(a: CharacterAppearance, b: CharacterAppearance) -> AppearanceComparison:
    differences = []
    if a.clothing != b.clothing:
        differences.append("Clothing differs")
    if a.expression != b.expression:
        differences.append("Expression differs")
    if a.pose != b.pose:
        differences.append("Pose differs")
    if (a.accessories or None) != (b.accessories or None):
        differences.append("Accessories differ")
    return AppearanceComparison(
        is_consistent=not differences,
        score=float(max(0, 100 - len(differences) * 25)),
        differences=differences,
        suggestions=["Review continuity between frames"] if differences else ["Appearances are consistent"],
    )


@dataclass
class IdentityLockEngine:
    """
    Character binding, consistency locking and scoring for storyboard frames.

    Every guarded mutation is a conditional UPDATE on `is_consistency_locked = 0`.
    """

    store: StudioStore
    analyzer: Optional[ConsistencyAnalyzer] = None
    threshold: int = DEFAULT_THRESHOLD

    def _require_frame(self, frame_id: int) -> Frame:
        frame = self.store.get_frame(frame_id)
        if frame is None:
            raise NotFoundError("Frame", frame_id)
        return frame

    def _guarded_update(self, frame_id: int, values: Dict[str, Any], action: str) -> Frame:
        if not self.store.update_unlocked_frame(frame_id, values):
            self._require_frame(frame_id)
            raise StateConflictError(f"Frame {frame_id} is consistency-locked; cannot {action}")
        return self._require_frame(frame_id)

    def create_character(
        self,
        user_id: str,
        name: str,
        description: str = "",
        reference_image_url: Optional[str] = None,
    ) -> CharacterLibraryEntry:
        if not name or not name.strip():
            raise ValidationError("name is required")
        return self.store.create_character(user_id, name.strip(), description, reference_image_url)

    def get_frame(self, frame_id: int) -> Frame:
        return self._require_frame(frame_id)

    def bind_character(
        self,
        frame_id: int,
        character_library_id: int,
        appearance: Optional[Any] = None,
    ) -> Frame:
        self._require_frame(frame_id)
        if self.store.get_character(character_library_id) is None:
            raise NotFoundError("Character", character_library_id)
        try:
            parsed = CharacterAppearance.coerce(appearance)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid character appearance: {e}") from e

        frame = self._guarded_update(
            frame_id,
            {
                "character_library_id": character_library_id,
                "character_appearance": parsed.to_json() if parsed else None,
            },
            "bind character",
        )
        with log_context(project_id=frame.project_id, operation="bind_character"):
            logger.info("Bound character %s to frame %s", character_library_id, frame_id)
        return frame

    def update_consistency_score(self, frame_id: int, score: Any, notes: Optional[str] = None) -> Frame:
        if isinstance(score, bool) or not isinstance(score, numbers.Real):
            raise ValidationError(f"score must be a number, got {score!r}")
        if math.isnan(score) or not 0 <= score <= 100:
            raise ValidationError(f"score must be within [0, 100], got {score}")
        return self._guarded_update(
            frame_id,
            {"consistency_score": float(score), "consistency_notes": notes},
            "update consistency score",
        )

    def lock(self, frame_id: int) -> Frame:
        frame = self._guarded_update(frame_id, {"is_consistency_locked": 1}, "lock again")
        logger.info("Locked frame %s", frame_id)
        return frame

    def unlock(self, frame_id: int) -> Frame:
        if not self.store.update_frame(frame_id, {"is_consistency_locked": 0}):
            raise NotFoundError("Frame", frame_id)
        logger.info("Unlocked frame %s", frame_id)
        return self._require_frame(frame_id)

    def clear_binding(self, frame_id: int) -> Frame:
        cleared = {
            "character_library_id": None,
            "character_appearance": None,
            "consistency_score": None,
            "consistency_notes": None,
            "is_consistency_locked": 0,
        }
        if not self.store.update_frame(frame_id, cleared):
            raise NotFoundError("Frame", frame_id)
        logger.info("Cleared character binding on frame %s", frame_id)
        return self._require_frame(frame_id)

    # --- reporting ---
    def consistency_report(self, project_id: int, threshold: Optional[float] = None) -> ConsistencyReport:
        limit = self.threshold if threshold is None else threshold
        frames = self.store.list_frames(project_id)

        total = 0
        locked = 0
        inconsistent = 0
        bound_count = 0
        bound_score_sum = 0.0
        groups: Dict[int, List[float]] = {}
        for f in frames:
            total += 1
            if f.is_consistency_locked:
                locked += 1
            if f.consistency_score is not None and f.consistency_score < limit:
                inconsistent += 1
            if f.character_library_id:
                bound_count += 1
                score = f.consistency_score or 0.0
                bound_score_sum += score
                groups.setdefault(f.character_library_id, []).append(score)

        names = self.store.get_characters(groups.keys())
        breakdown = [
            CharacterBreakdown(
                character_id=cid,
                character_name=names[cid].name if cid in names else f"Character {cid}",
                frame_count=len(scores),
                average_score=sum(scores) / len(scores),
            )
            for cid, scores in groups.items()
        ]
        return ConsistencyReport(
            total_frames=total,
            frames_with_characters=bound_count,
            average_consistency_score=round_half_up(bound_score_sum / bound_count) if bound_count else 0,
            locked_frames=locked,
            inconsistent_frames=inconsistent,
            character_breakdown=breakdown,
        )

    def inconsistent_frames(self, project_id: int, threshold: Optional[float] = None) -> List[Frame]:
        limit = self.threshold if threshold is None else threshold
        return [
            f for f in self.store.list_frames(project_id)
            if f.consistency_score is not None and f.consistency_score < limit
        ]

    def frames_with_character(self, project_id: int, character_library_id: int) -> List[Frame]:
        return self.store.list_frames(project_id, character_library_id=character_library_id)

    def appearance_summary(self, project_id: int, character_library_id: int) -> List[Dict[str, Any]]:
        return [
            {
                "frame_id": f.id,
                "shot_number": f.shot_number,
                "appearance": f.character_appearance,
                "consistency_score": f.consistency_score,
            }
            for f in self.frames_with_character(project_id, character_library_id)
            if f.character_appearance is not None
        ]

    # --- analysis ---
    def analyze_consistency(
        self,
        frames: Sequence[Frame],
        character_name: str,
        threshold: Optional[float] = None,
    ) -> ConsistencyAnalysis:
        if not frames:
            return ConsistencyAnalysis(
                overall_score=100,
                recommendations=["No frames to analyze"],
                appearance_profile={k: [] for k in _EMPTY_PROFILE},
            )

        appearances = [(f.id, f.shot_number, f.character_appearance) for f in frames if f.character_appearance]
        if not appearances:
            return ConsistencyAnalysis(
                overall_score=0,
                recommendations=["No appearance data found for this character"],
                appearance_profile={k: [] for k in _EMPTY_PROFILE},
            )

        if self.analyzer is None:
            analysis = basic_consistency_check(appearances)
        else:
            descriptors = [
                {
                    "frame_id": frame_id,
                    "shot_number": shot_number,
                    "appearance": asdict(appearance),
                    "description": f"Frame {shot_number}: {appearance.describe()}",
                }
                for frame_id, shot_number, appearance in appearances
            ]
            with upstream("consistency_analyzer"):
                verdict = self.analyzer.analyze(character_name, descriptors)
                if not isinstance(verdict, ConsistencyVerdict):
                    verdict = ConsistencyVerdict.model_validate(verdict)
            analysis = ConsistencyAnalysis(
                overall_score=_clamp_score(verdict.overall_score),
                issues=[
                    ConsistencyIssue(i.frame_id, i.shot_number, i.issue, i.severity, i.suggestion)
                    for i in verdict.issues
                ],
                recommendations=list(verdict.recommendations),
                appearance_profile={**_EMPTY_PROFILE, **verdict.appearance_profile},
            )

        limit = self.threshold if threshold is None else threshold
        known_ids = {f.id for f in frames}
        flagged = {f.id for f in frames if f.consistency_score is not None and f.consistency_score < limit}
        flagged.update(i.frame_id for i in analysis.issues if i.frame_id in known_ids)
        analysis.outlier_frame_ids = [f.id for f in frames if f.id in flagged]

        logger.info(
            "Consistency for %s: score=%.1f issues=%d outliers=%d",
            character_name,
            analysis.overall_score,
            len(analysis.issues),
            len(analysis.outlier_frame_ids),
        )
        return analysis

    def analyze_character(self, project_id: int, character_library_id: int) -> ConsistencyAnalysis:
        character = self.store.get_character(character_library_id)
        if character is None:
            raise NotFoundError("Character", character_library_id)
        with log_context(project_id=project_id, operation="analyze_character"):
            return self.analyze_consistency(self.frames_with_character(project_id, character_library_id), character.name)

    def compare_appearances(self, a: Any, b: Any, context: Optional[str] = None) -> AppearanceComparison:
        try:
            first = CharacterAppearance.coerce(a)
            second = CharacterAppearance.coerce(b)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid character appearance: {e}") from e
        if first is None or second is None:
            raise ValidationError("Both appearances are required")

        if self.analyzer is None:
            return _local_comparison(first, second)

        with upstream("consistency_analyzer"):
            verdict = self.analyzer.compare(first, second, context)
            if not isinstance(verdict, ComparisonVerdict):
                verdict = ComparisonVerdict.model_validate(verdict)
        return AppearanceComparison(
            is_consistent=bool(verdict.is_consistent),
            score=_clamp_score(verdict.score),
            differences=list(verdict.differences),
            suggestions=list(verdict.suggestions),
        )

    def locked_prompt_for_frame(self, frame_id: int, base_prompt: str, brand: Optional[BrandContext] = None) -> str:
        frame = self._require_frame(frame_id)
        if frame.character_library_id is None:
            return base_prompt
        character = self.store.get_character(frame.character_library_id)
        if character is None:
            raise NotFoundError("Character", frame.character_library_id)
        return build_locked_prompt(base_prompt, character, frame.character_appearance, brand)
