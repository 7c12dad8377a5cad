from storyloom.state import Countdown, CountdownKind, ErrorDetail, ErrorKind, PipelineState
from storyloom.steps import PipelineKind


def test_from_dict_defaults_missing_fields():
    st = PipelineState.from_dict({}, kind=PipelineKind.END_OF_DAY)
    assert st.kind is PipelineKind.END_OF_DAY
    assert st.current_step == 0
    assert st.errors == {}
    assert st.data == {}
    assert st.generated_but_unshown is False


def test_from_dict_accepts_legacy_and_bad_values():
    raw = {
        "kind": "new_game",
        "step": "3",
        "errors": {"4": "quota exceeded", "oops": {"message": "x"}, "5": None},
        "data": "not a dict",
    }
    st = PipelineState.from_dict(raw)
    assert st.current_step == 3
    assert list(st.errors) == [4]
    assert st.errors[4].kind is ErrorKind.SERVICE_ERROR
    assert st.errors[4].message == "quota exceeded"
    assert st.data == {}


def test_negative_and_garbage_steps_clamp_to_zero():
    assert PipelineState.from_dict({"current_step": -2}, kind="new_game").current_step == 0
    assert PipelineState.from_dict({"current_step": "abc"}, kind="new_game").current_step == 0


def test_to_dict_keys_errors_by_string_and_drops_countdown():
    st = PipelineState(PipelineKind.SEGMENT_TRANSITION, current_step=1)
    st.errors[2] = ErrorDetail(ErrorKind.TIMEOUT, "API_ERROR_TIMEOUT", "segment_transition.scene_generation")
    st.countdown = Countdown("segment_transition.scene_generation", 30, CountdownKind.TIMEOUT)
    d = st.to_dict()
    assert set(d) == {"kind", "current_step", "errors", "data", "generated_but_unshown"}
    assert d["errors"]["2"]["kind"] == "timeout"

    back = PipelineState.from_dict(d)
    assert back.errors[2].kind is ErrorKind.TIMEOUT
    assert back.errors[2].stage_key == "segment_transition.scene_generation"
    assert back.countdown is None


def test_unknown_error_kind_falls_back_to_service_error():
    detail = ErrorDetail.from_dict({"kind": "meteor", "message": "boom"})
    assert detail.kind is ErrorKind.SERVICE_ERROR
    assert detail.message == "boom"
    assert detail.at


def test_copy_is_independent():
    st = PipelineState(PipelineKind.NEW_GAME, current_step=1, data={"new_game.foundation": {"premise": "p"}})
    cp = st.copy()
    cp.data["new_game.foundation"]["premise"] = "changed"
    cp.current_step = 2
    assert st.data["new_game.foundation"]["premise"] == "p"
    assert st.current_step == 1
