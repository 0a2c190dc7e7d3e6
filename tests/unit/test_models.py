import pytest
from ditto.core.errors import InvalidStepError
from ditto.core.models import ActionKind, Sequence, Step
from ditto.layers.sense.bundle import BoundingBox, ElementBundle, FrameDescriptor


def make_step(action, label, value=None, step_id=None, **bundle_fields):
    bundle = ElementBundle(**(bundle_fields or {"id": label.lower() or "el", "tag": "input"}))
    kwargs = {"action": action, "bundle": bundle, "label": label, "value": value}
    if step_id:
        kwargs["id"] = step_id
    return Step(**kwargs)


def test_text_entry_requires_value():
    with pytest.raises(InvalidStepError):
        make_step(ActionKind.TEXT_ENTRY, "Email")


def test_text_entry_accepts_empty_string():
    step = make_step(ActionKind.TEXT_ENTRY, "Email", value="")
    assert step.value == ""


def test_negative_delay_rejected():
    with pytest.raises(InvalidStepError):
        Step(action=ActionKind.CLICK, bundle=ElementBundle(id="go"), delay_seconds=-1)


def test_action_kind_coerced_from_string():
    step = Step(action="enter", bundle=ElementBundle(id="q"))
    assert step.action is ActionKind.KEY_SUBMIT


def test_step_ids_are_unique():
    a = make_step(ActionKind.CLICK, "Go")
    b = make_step(ActionKind.CLICK, "Go")
    assert a.id != b.id


def test_step_dict_preserves_bundle_context():
    bundle = ElementBundle(
        xpath="/html[1]/body[1]/form[1]/input[2]",
        id="email",
        data_attrs={"testid": "email-field"},
        bounding=BoundingBox(10, 20, 200, 30),
        frame_chain=[FrameDescriptor(id="checkout", index=0)],
        shadow_hosts=["/html[1]/body[1]/my-form[1]"],
        is_closed_shadow=True,
    )
    step = Step(action=ActionKind.TEXT_ENTRY, bundle=bundle, label="Email", value="a@b.com", delay_seconds=0.5)

    restored = Step.from_dict(step.to_dict())

    assert restored.id == step.id
    assert restored.bundle == bundle
    assert restored.value == "a@b.com"
    assert restored.delay_seconds == 0.5


def test_sequence_rejects_duplicate_ids():
    step = make_step(ActionKind.CLICK, "Go", step_id="s1")
    other = make_step(ActionKind.CLICK, "Stop", step_id="s1")
    with pytest.raises(InvalidStepError):
        Sequence("p", steps=[step, other])

    sequence = Sequence("p", steps=[step])
    with pytest.raises(InvalidStepError):
        sequence.add_step(other)


def test_get_step_and_labels():
    email = make_step(ActionKind.TEXT_ENTRY, "Email", value="x", step_id="e")
    go = make_step(ActionKind.CLICK, "", step_id="g", id="go")
    sequence = Sequence("p", steps=[email, go])

    assert sequence.get_step("e") is email
    assert sequence.labels() == ["Email"]
    with pytest.raises(KeyError):
        sequence.get_step("missing")


def test_move_step_reorders_without_warning():
    a = make_step(ActionKind.TEXT_ENTRY, "First", value="1", step_id="a")
    b = make_step(ActionKind.TEXT_ENTRY, "Last", value="2", step_id="b")
    c = make_step(ActionKind.KEY_SUBMIT, "submit", step_id="c")
    sequence = Sequence("p", steps=[a, b, c])

    warnings = sequence.move_step(1, 0)

    assert [s.id for s in sequence.steps] == ["b", "a", "c"]
    assert warnings == []


def test_move_submit_before_fill_warns_but_moves():
    a = make_step(ActionKind.TEXT_ENTRY, "Email", value="1", step_id="a")
    b = make_step(ActionKind.KEY_SUBMIT, "submit", step_id="b")
    sequence = Sequence("p", steps=[a, b])

    warnings = sequence.move_step(1, 0)

    assert [s.id for s in sequence.steps] == ["b", "a"]
    assert len(warnings) == 1
    assert "submit" in warnings[0] and "Email" in warnings[0]


def test_move_step_out_of_range():
    sequence = Sequence("p", steps=[make_step(ActionKind.CLICK, "Go")])
    with pytest.raises(IndexError):
        sequence.move_step(0, 3)


def test_sequence_dict_keeps_mappings_and_rows():
    sequence = Sequence(
        "signup",
        start_url="https://example.com",
        steps=[make_step(ActionKind.TEXT_ENTRY, "Email", value="x")],
        mappings={"E-mail": "Email"},
        rows=[{"E-mail": "a@b.com"}],
    )
    restored = Sequence.from_dict(sequence.to_dict())

    assert restored.start_url == "https://example.com"
    assert restored.mappings == {"E-mail": "Email"}
    assert restored.rows == [{"E-mail": "a@b.com"}]
    assert restored.steps[0].id == sequence.steps[0].id


def loop_sequence(loop_start=None):
    steps = [
        make_step(ActionKind.CLICK, "Log in", step_id="login"),
        make_step(ActionKind.TEXT_ENTRY, "Email", value="a@x.com", step_id="email"),
        make_step(ActionKind.KEY_SUBMIT, "submit", step_id="submit"),
    ]
    steps[1].page_url = "https://example.com/form"
    return Sequence("p", start_url="https://example.com/login", steps=steps, loop_start=loop_start)


def test_loop_start_must_point_at_a_step():
    with pytest.raises(InvalidStepError):
        loop_sequence(loop_start=3)
    sequence = loop_sequence()
    with pytest.raises(InvalidStepError):
        sequence.set_loop_start(-1)


def test_loop_start_zero_means_every_step():
    sequence = loop_sequence()
    sequence.set_loop_start(0)
    assert sequence.loop_start is None
    assert sequence.loop_url() == "https://example.com/login"


def test_loop_url_uses_loop_step_page():
    sequence = loop_sequence(loop_start=1)
    assert sequence.loop_url() == "https://example.com/form"

    sequence.steps[1].page_url = ""
    assert sequence.loop_url() == "https://example.com/login"


def test_loop_start_follows_its_step_when_moved():
    sequence = loop_sequence(loop_start=1)
    sequence.move_step(1, 2)
    assert sequence.steps[sequence.loop_start].id == "email"


def test_loop_start_round_trips():
    data = loop_sequence(loop_start=1).to_dict()
    assert data["loop_start"] == 1
    assert Sequence.from_dict(data).loop_start == 1

    del data["loop_start"]
    assert Sequence.from_dict(data).loop_start is None
