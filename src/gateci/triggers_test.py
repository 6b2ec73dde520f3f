import pytest

from gateci.dsl import on_pr, schedule, triggers
from gateci.errors import InvalidTemplateError, UnresolvedParameterError
from gateci.pipelines import NIGHTLY, PR_GATE, PYPI_RELEASE
from gateci.triggers import ManualTrigger, TriggerEvent


@pytest.mark.parametrize(
    "branch, expected",
    [
        ("master", True),
        ("refs/heads/master", True),
        ("release/v0.4", True),
        ("feature/widget", False),
        (None, False),
    ],
)
def test_pull_request_branch_filter(branch, expected):
    assert on_pr("master", "release/*").satisfied_by(TriggerEvent("pr", branch)) is expected


def test_schedule_with_always_runs_without_changes():
    nightly = schedule("0 8 * * *", branches=["master"], always=True)
    assert nightly.satisfied_by(TriggerEvent("schedule", "master", changed=False))
    assert not nightly.satisfied_by(TriggerEvent("schedule", "release/v1", changed=True))


def test_schedule_without_always_needs_changes():
    nightly = schedule("0 8 * * *")
    assert nightly.satisfied_by(TriggerEvent("schedule", "master", changed=True))
    assert not nightly.satisfied_by(TriggerEvent("schedule", "master", changed=False))


@pytest.mark.parametrize("cron", ["0 8 * *", "every day", "0 8 * * * *"])
def test_invalid_cron(cron):
    with pytest.raises(InvalidTemplateError):
        schedule(cron)


def test_unknown_event_kind():
    with pytest.raises(ValueError):
        TriggerEvent("push", "master")


def test_manual_parameters_are_required_and_coerced():
    manual = ManualTrigger(parameters={"devVersion": "int", "dryRun": "bool"})

    assert manual.require({"devVersion": "7", "dryRun": "yes"}) == {"devVersion": 7, "dryRun": True}
    with pytest.raises(UnresolvedParameterError):
        manual.require({"dryRun": "no"})
    with pytest.raises(UnresolvedParameterError):
        manual.require({"devVersion": "", "dryRun": "no"})


@pytest.mark.parametrize("value", ["seven", "1.5", True])
def test_manual_parameter_of_wrong_type(value):
    with pytest.raises(UnresolvedParameterError) as exc:
        ManualTrigger(parameters={"devVersion": "int"}).require({"devVersion": value})
    assert exc.value.details["parameter"] == "devVersion"
    assert exc.value.details["reason"]


def test_first_satisfied_trigger_wins():
    policy = triggers(pr=on_pr("master"), schedules=[schedule("0 8 * * *", always=True)])
    events = [TriggerEvent("manual"), TriggerEvent("schedule", "master"), TriggerEvent("pr", "master")]

    assert [t.kind for t in policy.satisfied(events)] == ["pr", "schedule", "manual"]
    assert policy.first_satisfied(events).kind == "pr"
    assert policy.first_satisfied([TriggerEvent("pr", "feature/x")]) is None


def test_bundled_pipeline_policies():
    assert PR_GATE.triggers.automatic
    assert not PR_GATE.triggers.requires_explicit_parameters
    assert NIGHTLY.triggers.schedules[0].always
    assert not PYPI_RELEASE.triggers.automatic
    assert PYPI_RELEASE.triggers.manual.parameters == {"devVersion": "int"}


def test_policy_to_dict_lists_triggers_in_order():
    data = PR_GATE.triggers.to_dict()
    assert data["automatic"] is True
    assert [t["kind"] for t in data["triggers"]] == ["pr", "manual"]
    assert data["triggers"][0]["branches"] == ["master", "release/*"]
