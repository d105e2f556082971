import json
import re
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from previz.production.models import CharacterAppearance
from previz.providers.base import (
    ComparisonVerdict,
    ConsistencyVerdict,
    SceneOutline,
    ShotPlan,
    coerce_models,
    setup_logger,
)

logger = setup_logger(__name__)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)

SEGMENTATION_PROMPT = """You are a professional Script Supervisor.
Analyze the screenplay provided and break it down into individual SCENES.

For each scene, extract:
- order (sequential number)
- title (slugline)
- description (brief summary of the action and key dialogue)

Return a JSON object with a "scenes" array, e.g.
{"scenes": [{"order": 1, "title": "EXT. CITY - DAY", "description": "Establishing shot of the metropolis."}]}"""

SHOT_PLANNING_PROMPT = """You are a Director of Photography planning a technical shot list.
Break the scene into an ordered list of shots. For each shot return:
order, visual_description, camera_angle, movement, lighting, lens, audio_description.
Respect the visual style and any brand notes you are given.
Return a JSON object with a "shots" array."""

CONSISTENCY_PROMPT = """You are a film production expert analyzing character consistency across storyboard frames.
Identify inconsistencies that would break visual continuity in clothing, expression, pose and accessories.
Return a JSON object with:
- overall_score (0-100)
- issues: array of {frame_id, shot_number, issue, severity (low|medium|high), suggestion}
- recommendations: array of strings
- appearance_profile: {clothing, expression, pose, accessories} arrays of observed values"""

COMPARISON_PROMPT = """You are a film continuity expert. Compare two character appearances and decide
whether they are consistent for the same scene. Return a JSON object with:
is_consistent (boolean), score (0-100), differences (array), suggestions (array)."""


def _parse_extra(extra: Optional[str | Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(extra, dict):
        return dict(extra)
    if isinstance(extra, str) and extra.strip():
        try:
            return json.loads(extra)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring unparseable LLM extra params: {extra!r}")
    return {}


def create_chat_model(
    provider: str,
    model_id: str,
    api_key: Optional[str],
    base_url: Optional[str],
    extra_params: Optional[str | Dict[str, Any]] = None,
) -> ChatOpenAI:
    p = (provider or "").lower()
    if p not in {"openai", "openai_compatible", "vllm", "sglang", "ollama", "azure", "azure_openai"}:
        logger.warning(f"Provider '{provider}' not explicitly supported; using OpenAI-compatible ChatOpenAI.")

    extra = _parse_extra(extra_params)
    # Known top-level args are passed explicitly; the rest go to model_kwargs.
    temperature = extra.pop("temperature", None)
    max_completion_tokens = extra.pop("max_completion_tokens", None)

    return ChatOpenAI(
        model=model_id,
        api_key=api_key or None,
        base_url=base_url or None,
        temperature=temperature,
        max_completion_tokens=max_completion_tokens,
        model_kwargs=extra or {},
    )


def parse_json_reply(content: Any) -> Dict[str, Any]:
    """Decode a model reply that should be a JSON object, tolerating ```json fences."""
    if isinstance(content, list):
        content = "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in content)
    text = _FENCE.sub("", str(content or "")).strip()
    if not text:
        raise ValueError("LLM returned an empty reply")
    parsed = json.loads(text)
    if not isinstance(parsed, dict):
        raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed


class _ChatCollaborator:
    def __init__(self, model: ChatOpenAI):
        self.model = model

    def _ask(self, system_prompt: str, user_prompt: str) -> Dict[str, Any]:
        reply = self.model.invoke([SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)])
        return parse_json_reply(reply.content)


class LLMSegmentationService(_ChatCollaborator):
    def segment(self, script_text: str, brand_hints: Optional[str] = None) -> List[SceneOutline]:
        user_prompt = f"Break down this script into scenes:\n\n{script_text}"
        if brand_hints:
            user_prompt += f"\n\nBrand voice:\n{brand_hints}"
        parsed = self._ask(SEGMENTATION_PROMPT, user_prompt)
        scenes = coerce_models(SceneOutline, parsed.get("scenes") or [])
        logger.info(f"Segmentation returned {len(scenes)} scenes")
        return scenes


class LLMShotPlanner(_ChatCollaborator):
    def plan(
        self,
        scene_context: str,
        visual_style: str,
        character_persona: Optional[str] = None,
        brand_notes: Optional[str] = None,
    ) -> List[ShotPlan]:
        parts = [scene_context, f"VISUAL STYLE: {visual_style}"]
        if character_persona:
            parts.append(f"CHARACTERS: {character_persona}")
        if brand_notes:
            parts.append(brand_notes)
        parsed = self._ask(SHOT_PLANNING_PROMPT, "\n\n".join(parts))
        shots = coerce_models(ShotPlan, parsed.get("shots") or [])
        logger.info(f"Shot planning returned {len(shots)} shots")
        return shots


class LLMConsistencyAnalyzer(_ChatCollaborator):
    def analyze(self, character_name: str, appearances: List[Dict[str, Any]]) -> ConsistencyVerdict:
        lines = "\n".join(f"[frame_id={a['frame_id']}] {a['description']}" for a in appearances)
        parsed = self._ask(
            CONSISTENCY_PROMPT,
            f'Analyze consistency for character "{character_name}" across these frames:\n\n{lines}',
        )
        return ConsistencyVerdict.model_validate(parsed)

    def compare(
        self,
        a: CharacterAppearance,
        b: CharacterAppearance,
        context: Optional[str] = None,
    ) -> ComparisonVerdict:
        user_prompt = (
            "Compare these two character appearances:\n\n"
            f"Appearance 1: {json.dumps(asdict(a), ensure_ascii=True)}\n"
            f"Appearance 2: {json.dumps(asdict(b), ensure_ascii=True)}"
        )
        if context:
            user_prompt += f"\n\nContext: {context}"
        return ComparisonVerdict.model_validate(self._ask(COMPARISON_PROMPT, user_prompt))
