import asyncio

import pytest

from storyloom.context import ValidationError
from storyloom.pipelines import StageInput
from storyloom.pipelines.common import call_and_validate, common_replacements, scene_lines
from storyloom.steps import PipelineKind, pipeline_for
from storyloom.templates import apply_text, build_prompt, prompt_key_from_filename, template_path_for
from storyloom.validation import validate_itinerary, validate_mapping, validate_scene, validate_text


def _stage(key: str):
    kind = PipelineKind(key.split(".")[0])
    return pipeline_for(kind).stage_by_key(key)


def test_prompt_key_from_filename():
    assert prompt_key_from_filename("first_scene_prompt.md") == "FIRST_SCENE"
    assert prompt_key_from_filename("check.md") == "CHECK"
    assert prompt_key_from_filename("my-file_name.Prompt.MD") == "MY_FILE_NAME_PROMPT"


def test_apply_text_replaces_every_marker():
    out = apply_text("[A] and [A] then [B]", {"[A]": "x", "[B]": "y"})
    assert out == "x and x then y"


def test_custom_prompt_file_overrides_default(base_dir):
    stage = _stage("end_of_day.planner")
    path = template_path_for(stage)
    assert path == base_dir / "prompts" / "end_of_day" / "planner_prompt.md"

    assert build_prompt(stage, "default [DAY]", {"[DAY]": "3"}) == "default 3"
    path.parent.mkdir(parents=True)
    path.write_text("custom plan for day [DAY]", encoding="utf-8")
    assert build_prompt(stage, "default [DAY]", {"[DAY]": "3"}) == "custom plan for day 3"


def test_validate_text():
    assert validate_text(None)[0] is False
    assert validate_text("   ")[0] is False
    assert validate_text("A chapter") == (True, "ok")


def test_validate_mapping_requires_non_empty_fields():
    assert validate_mapping([1, 2])[0] is False
    ok, reason = validate_mapping({"premise": "p", "setting": ""}, ("premise", "setting"))
    assert ok is False
    assert "setting" in reason
    assert validate_mapping({"premise": "p", "setting": "s"}, ("premise", "setting")) == (True, "ok")


@pytest.mark.parametrize(
    "scene, ok",
    [
        ({"dialogue": [{"speaker": "Aiko", "dialogue": "Hi"}]}, True),
        ({"dialogue": []}, False),
        ({"dialogue": "Hi"}, False),
        ({"dialogue": [{"speaker": "", "dialogue": "Hi"}]}, False),
        ({"dialogue": [{"speaker": "Aiko", "dialogue": "  "}]}, False),
        ({"dialogue": ["Hi"]}, False),
    ],
)
def test_validate_scene(scene, ok):
    assert validate_scene(scene)[0] is ok


def test_validate_itinerary_matches_day_structure():
    order = ["Morning", "Night"]
    good = {"segments": [{"segment": "Morning"}, {"segment": "Night"}]}
    assert validate_itinerary(good, order) == (True, "ok")
    assert validate_itinerary({"segments": [{"segment": "Morning"}]}, order)[0] is False
    swapped = {"segments": [{"segment": "Night"}, {"segment": "Morning"}]}
    assert validate_itinerary(swapped, order)[0] is False


def test_scene_lines_stamps_ids_and_position():
    lines = scene_lines({"dialogue": [{"speaker": "Aiko", "dialogue": "a"}, {"speaker": "Ren", "dialogue": "b", "motivation": "m"}]}, 2, "Evening")
    assert [ln["id"] for ln in lines] == ["d2-evening-001", "d2-evening-002"]
    assert all(ln["day"] == 2 and ln["segment"] == "Evening" for ln in lines)
    assert [ln["motivation"] for ln in lines] == ["", "m"]


def test_common_replacements_carry_explicit_context(ctx):
    inp = StageInput(ctx=ctx.with_transcript([{"speaker": "Ren", "dialogue": "morning!"}]), stage=_stage("new_game.foundation"))
    reps = common_replacements(inp)
    assert reps["[PLAYER_NAME]"] == "Kai"
    assert reps["[DAY_STRUCTURE]"] == "Morning, Afternoon, Evening, Night"
    assert "morning!" in reps["[TRANSCRIPT]"]
    assert "Aiko" in reps["[CHARACTERS]"]


def test_call_and_validate_raises_on_invalid_output(base_dir, ctx, make_service):
    service = make_service({"new_game.foundation": {"premise": "only a premise"}})
    inp = StageInput(ctx=ctx, stage=_stage("new_game.foundation"))
    with pytest.raises(ValidationError) as ei:
        asyncio.run(call_and_validate(service, inp, "[DAY]", lambda out: validate_mapping(out, ("premise", "setting"))))
    assert "Building narrative foundation" in str(ei.value)
    assert service.calls[0][1] == {"user": "1"}
