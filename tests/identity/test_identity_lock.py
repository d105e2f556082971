from unittest.mock import MagicMock

import pytest

from previz.errors import NotFoundError, StateConflictError, UpstreamServiceError, ValidationError
from previz.production.identity import (
    IdentityLockEngine,
    basic_consistency_check,
    build_locked_prompt,
    round_half_up,
)
from previz.production.models import CharacterAppearance, CharacterLibraryEntry
from previz.providers.base import BrandContext, ComparisonVerdict, ConsistencyVerdict


def _setup(store, n_frames=3):
    project = store.create_project("u1", "Pilot")
    frames = [store.upsert_frame(project.id, i, f"https://img/{i}.png", f"shot {i}") for i in range(1, n_frames + 1)]
    character = store.create_character("u1", "Mara", "Tall woman, red coat", "https://ref/mara.png")
    return project, frames, character


def test_bind_character_stores_appearance(store):
    _, frames, character = _setup(store)
    engine = IdentityLockEngine(store)
    frame = engine.bind_character(frames[0].id, character.id, {"clothing": "red coat", "expression": "calm", "pose": "standing"})
    assert frame.character_library_id == character.id
    assert frame.character_appearance == CharacterAppearance("red coat", "calm", "standing")


def test_bind_unknown_frame_or_character(store):
    _, frames, character = _setup(store)
    engine = IdentityLockEngine(store)
    with pytest.raises(NotFoundError):
        engine.bind_character(9999, character.id)
    with pytest.raises(NotFoundError):
        engine.bind_character(frames[0].id, 9999)


def test_locked_frame_rejects_mutations(store):
    _, frames, character = _setup(store)
    engine = IdentityLockEngine(store)
    frame_id = frames[0].id
    engine.bind_character(frame_id, character.id)
    engine.update_consistency_score(frame_id, 88)
    engine.lock(frame_id)

    with pytest.raises(StateConflictError):
        engine.bind_character(frame_id, character.id)
    with pytest.raises(StateConflictError):
        engine.update_consistency_score(frame_id, 10)
    with pytest.raises(StateConflictError):
        engine.lock(frame_id)

    frame = engine.get_frame(frame_id)
    assert frame.consistency_score == 88
    assert frame.is_consistency_locked


def test_unlock_and_clear_binding_always_allowed(store):
    _, frames, character = _setup(store)
    engine = IdentityLockEngine(store)
    frame_id = frames[0].id
    engine.bind_character(frame_id, character.id, {"clothing": "coat", "expression": "calm", "pose": "sit"})
    engine.lock(frame_id)

    assert not engine.unlock(frame_id).is_consistency_locked
    engine.lock(frame_id)
    cleared = engine.clear_binding(frame_id)
    assert cleared.character_library_id is None
    assert cleared.character_appearance is None
    assert cleared.consistency_score is None
    assert not cleared.is_consistency_locked


def test_unlock_missing_frame(store):
    with pytest.raises(NotFoundError):
        IdentityLockEngine(store).unlock(404)


@pytest.mark.parametrize("score", [-1, 100.5, True, "90", None, float("nan")])
def test_score_validation(store, score):
    _, frames, _ = _setup(store, 1)
    with pytest.raises(ValidationError):
        IdentityLockEngine(store).update_consistency_score(frames[0].id, score)


@pytest.mark.parametrize("score", [0, 100, 69.5])
def test_score_bounds_inclusive(store, score):
    _, frames, _ = _setup(store, 1)
    frame = IdentityLockEngine(store).update_consistency_score(frames[0].id, score, notes="checked")
    assert frame.consistency_score == score
    assert frame.consistency_notes == "checked"


def test_consistency_report_counts(store):
    project, frames, character = _setup(store, 5)
    other = store.create_character("u1", "Jonah")
    engine = IdentityLockEngine(store)
    for frame, char, score in ((frames[0], character, 90), (frames[1], character, 60), (frames[2], other, 65), (frames[3], other, 100)):
        engine.bind_character(frame.id, char.id)
        engine.update_consistency_score(frame.id, score)
    engine.lock(frames[3].id)

    report = engine.consistency_report(project.id)
    assert report.total_frames == 5
    assert report.frames_with_characters == 4
    assert report.inconsistent_frames == 2
    assert report.locked_frames == 1
    # (90 + 60 + 65 + 100) / 4 = 78.75
    assert report.average_consistency_score == 79
    by_id = {b.character_id: b for b in report.character_breakdown}
    assert by_id[character.id].character_name == "Mara"
    assert by_id[character.id].frame_count == 2
    assert by_id[character.id].average_score == 75
    assert by_id[other.id].average_score == 82.5


def test_consistency_report_without_bindings(store):
    project, _, _ = _setup(store, 2)
    report = IdentityLockEngine(store).consistency_report(project.id)
    assert report.frames_with_characters == 0
    assert report.average_consistency_score == 0
    assert report.character_breakdown == []


def test_report_average_rounds_half_up(store):
    project, frames, character = _setup(store, 2)
    engine = IdentityLockEngine(store)
    for frame, score in ((frames[0], 70), (frames[1], 71)):
        engine.bind_character(frame.id, character.id)
        engine.update_consistency_score(frame.id, score)
    assert engine.consistency_report(project.id).average_consistency_score == 71
    assert round_half_up(2.5) == 3


def test_inconsistent_frames_threshold(store):
    project, frames, _ = _setup(store, 3)
    engine = IdentityLockEngine(store)
    engine.update_consistency_score(frames[0].id, 50)
    engine.update_consistency_score(frames[1].id, 75)
    assert [f.id for f in engine.inconsistent_frames(project.id)] == [frames[0].id]
    assert [f.id for f in engine.inconsistent_frames(project.id, threshold=80)] == [frames[0].id, frames[1].id]


def test_analyze_consistency_empty_inputs(store):
    engine = IdentityLockEngine(store)
    empty = engine.analyze_consistency([], "Mara")
    assert empty.overall_score == 100
    assert empty.recommendations == ["No frames to analyze"]

    _, frames, _ = _setup(store, 2)
    no_data = engine.analyze_consistency(frames, "Mara")
    assert no_data.overall_score == 0


def test_heuristic_flags_wardrobe_changes(store):
    project, frames, character = _setup(store, 3)
    engine = IdentityLockEngine(store)
    outfits = ["red coat", "blue dress", "green jacket"]
    for frame, outfit in zip(frames, outfits):
        engine.bind_character(frame.id, character.id, {"clothing": outfit, "expression": "calm", "pose": "standing"})

    analysis = engine.analyze_character(project.id, character.id)
    assert analysis.overall_score == 60
    assert [i.frame_id for i in analysis.issues] == [frames[1].id, frames[2].id]
    assert analysis.outlier_frame_ids == [frames[1].id, frames[2].id]
    assert analysis.appearance_profile["clothing"] == outfits


def test_heuristic_score_is_clamped():
    appearances = [(i, i, CharacterAppearance(f"outfit {i}", f"mood {i}", f"pose {i}")) for i in range(1, 8)]
    assert basic_consistency_check(appearances).overall_score == 0


def test_analyzer_receives_descriptors_and_outliers_merge(store):
    project, frames, character = _setup(store, 3)
    analyzer = MagicMock()
    analyzer.analyze.return_value = {
        "overallScore": 120,
        "issues": [{"frameId": frames[2].id, "shotNumber": 3, "issue": "Hat appears", "severity": "low"}],
        "recommendations": ["Remove hat"],
    }
    engine = IdentityLockEngine(store, analyzer=analyzer)
    for frame in frames:
        engine.bind_character(frame.id, character.id, {"clothing": "red coat", "expression": "calm", "pose": "standing"})
    engine.update_consistency_score(frames[0].id, 40)

    analysis = engine.analyze_character(project.id, character.id)
    assert analysis.overall_score == 100
    assert analysis.outlier_frame_ids == [frames[0].id, frames[2].id]
    assert analysis.recommendations == ["Remove hat"]

    name, descriptors = analyzer.analyze.call_args.args
    assert name == "Mara"
    assert descriptors[0]["description"].startswith("Frame 1: Clothing: red coat")


def test_analyzer_failure_is_upstream_error(store):
    project, frames, character = _setup(store, 1)
    analyzer = MagicMock()
    analyzer.analyze.side_effect = RuntimeError("model offline")
    engine = IdentityLockEngine(store, analyzer=analyzer)
    engine.bind_character(frames[0].id, character.id, {"clothing": "coat", "expression": "calm", "pose": "sit"})

    with pytest.raises(UpstreamServiceError) as exc_info:
        engine.analyze_character(project.id, character.id)
    assert exc_info.value.service == "consistency_analyzer"


def test_compare_appearances_local_and_analyzer(store):
    a = {"clothing": "coat", "expression": "calm", "pose": "sit"}
    b = {"clothing": "dress", "expression": "calm", "pose": "sit"}
    local = IdentityLockEngine(store).compare_appearances(a, b)
    assert not local.is_consistent
    assert local.score == 75
    assert local.differences == ["Clothing differs"]

    analyzer = MagicMock()
    analyzer.compare.return_value = ComparisonVerdict(is_consistent=True, score=95, differences=[], suggestions=["ok"])
    remote = IdentityLockEngine(store, analyzer=analyzer).compare_appearances(a, a, context="same scene")
    assert remote.is_consistent
    assert remote.score == 95
    assert analyzer.compare.call_args.args[2] == "same scene"

    with pytest.raises(ValidationError):
        IdentityLockEngine(store).compare_appearances(a, None)


def test_verdict_model_accepts_snake_and_camel():
    camel = ConsistencyVerdict.model_validate({"overallScore": 80, "appearanceProfile": {"clothing": ["coat"]}})
    snake = ConsistencyVerdict.model_validate({"overall_score": 80, "appearance_profile": {"clothing": ["coat"]}})
    assert camel == snake


def test_build_locked_prompt_sections():
    character = CharacterLibraryEntry(1, "u1", "Mara", "Tall woman, red coat", "https://ref/mara.png")
    brand = BrandContext(name="Acme", palette=["#1F3A2E"])
    prompt = build_locked_prompt("Wide of the pier", character, CharacterAppearance("red coat", "calm", "standing"), brand)
    assert prompt.startswith("Wide of the pier")
    assert "CRITICAL - CHARACTER LOCK:" in prompt
    assert "Tall woman, red coat (Clothing: red coat" in prompt
    assert "https://ref/mara.png" in prompt
    assert "Primary #1F3A2E" in prompt
    assert "GENERATION RULES:" in prompt


def test_locked_prompt_for_unbound_frame_is_unchanged(store):
    _, frames, _ = _setup(store, 1)
    assert IdentityLockEngine(store).locked_prompt_for_frame(frames[0].id, "base") == "base"


def test_appearance_summary_lists_bound_frames_with_data(store):
    project, frames, character = _setup(store, 3)
    engine = IdentityLockEngine(store)
    engine.bind_character(frames[0].id, character.id, {"clothing": "coat", "expression": "calm", "pose": "sit"})
    engine.bind_character(frames[2].id, character.id)
    engine.update_consistency_score(frames[0].id, 81)

    assert [f.id for f in engine.frames_with_character(project.id, character.id)] == [frames[0].id, frames[2].id]
    summary = engine.appearance_summary(project.id, character.id)
    assert summary == [
        {
            "frame_id": frames[0].id,
            "shot_number": 1,
            "appearance": CharacterAppearance("coat", "calm", "sit"),
            "consistency_score": 81,
        }
    ]
