import pytest

from gateci.catalog import ALL_TESTS, BUILD_WIDGET, PROD_PYPI_URL
from gateci.composer import DEFAULT_STAGE, compose_pipeline, compose_stage, expand_job_ref, expand_pipeline, single_stage
from gateci.dsl import job_template, pipeline, script, stage, use
from gateci.errors import (
    DuplicateJobNameError,
    InvalidTemplateError,
    MissingDependencyError,
    UnboundPlaceholderError,
    UnresolvedParameterError,
)
from gateci.model import Stage

ALL_TESTS_ARGS = dict(
    platform="Linux",
    vmImage="ubuntu-16.04",
    testRunType="Unit",
    installationType="None",
    pyVersions=["3.7"],
    freezeArtifactStem="freeze",
    freezeFileStem="requirements-freeze",
)


def _all_tests_job(**overrides):
    args = dict(ALL_TESTS_ARGS)
    args.update(overrides)
    (job,) = expand_job_ref(use(ALL_TESTS, **args))
    return job


def _labels(job):
    return [s.label for s in job.steps]


def _echo(name, *steps, **parameters):
    return job_template(name, *(steps or [script("Say hi", "echo hi")]), parameters=parameters, pool="ubuntu-latest")


# ---- job composer ----

def test_false_condition_removes_exactly_that_step():
    template = job_template(
        "J",
        script("A", "echo a"),
        script("B", "echo b", condition="eq(parameters.flag, true)"),
        script("C", "echo c"),
        parameters={"flag": False},
        pool="ubuntu-latest",
    )
    (off,) = expand_job_ref(use(template))
    (on,) = expand_job_ref(use(template, flag=True))

    assert _labels(off) == ["A", "C"]
    assert _labels(on) == ["A", "B", "C"]


def test_linux_unit_job():
    job = _all_tests_job()
    labels = _labels(job)

    assert job.name == "Linux_Unit_3.7"
    assert job.pool == "ubuntu-16.04"
    assert job.bindings["FreezeArtifact"] == "freezeLinuxUnit3.7"
    assert "Run unit tests" in labels
    assert "Run notebooks as tests" not in labels
    assert not any(label.startswith("Bad testRunType") for label in labels)

    publish = next(s for s in job.steps if s.kind == "publish")
    assert dict(publish.args) == {"path": "requirements-freeze-3.7.txt", "artifact": "freezeLinuxUnit3.7"}


def test_bad_test_run_type_defers_failure_to_guard_step():
    job = _all_tests_job(testRunType="Bogus")

    assert job.name == "Linux_Bogus_3.7"
    assert job.steps[0].label == "Bad testRunType: Bogus"
    assert job.steps[0].args["script"] == "exit 1"
    assert "Run unit tests" not in _labels(job)
    assert "Run notebooks as tests" not in _labels(job)


def test_notebooks_need_an_installed_package():
    with pytest.raises(MissingDependencyError) as exc:
        _all_tests_job(testRunType="Notebooks", installationType="None")
    assert exc.value.details["step"] == "Run notebooks as tests"


def test_notebooks_with_local_install():
    labels = _labels(_all_tests_job(testRunType="Notebooks", installationType="PipLocal"))
    assert labels.index("Install fairlearn from source") < labels.index("Run notebooks as tests")


def test_pypi_install_uses_target_index():
    job = _all_tests_job(
        installationType="PyPI",
        targetType="Prod",
        versionArtifactName="VersionInfoProd",
        versionArtifactFile="version_info.txt",
    )
    install = next(s for s in job.steps if s.label.startswith("Install fairlearn from"))
    download = next(s for s in job.steps if s.kind == "download")

    assert job.bindings["pypiUrl"] == PROD_PYPI_URL
    assert PROD_PYPI_URL in install.args["script"]
    assert "--version-file version_info.txt" in install.args["script"]
    assert download.args["artifact"] == "VersionInfoProd"


def test_run_time_conditions_and_predefined_variables_pass_through():
    job = _all_tests_job()
    publish_results = job.steps[-1]
    unit = next(s for s in job.steps if s.label == "Run unit tests")

    assert publish_results.run_condition == "succeededOrFailed()"
    assert '"$(Agent.JobName)"' in unit.args["script"]


def test_bindings_are_private_and_read_only():
    job = _all_tests_job()
    with pytest.raises(TypeError):
        job.bindings["platform"] = "Windows"


def test_unknown_override_is_rejected():
    with pytest.raises(InvalidTemplateError):
        expand_job_ref(use(ALL_TESTS, platfrom="Linux"))


def test_unbound_runtime_variable():
    template = _echo("J", script("Say", "echo $(undefinedVar)"))
    with pytest.raises(UnboundPlaceholderError):
        expand_job_ref(use(template))


def test_out_of_order_dependency():
    template = _echo(
        "J",
        script("Use", "use-it", consumes=("thing",)),
        script("Make", "make-it", produces=("thing",)),
    )
    with pytest.raises(MissingDependencyError):
        expand_job_ref(use(template))


# ---- stage composer ----

def test_stage_concatenates_template_uses():
    stage_ = compose_stage(
        DEFAULT_STAGE,
        [use(ALL_TESTS, **ALL_TESTS_ARGS), use(BUILD_WIDGET)],
    )
    assert [j.name for j in stage_.jobs] == ["Linux_Unit_3.7", "BuildWidget"]


def test_duplicate_axis_values_collide_in_the_stage():
    args = dict(ALL_TESTS_ARGS, pyVersions=["3.7", "3.7"])
    with pytest.raises(DuplicateJobNameError):
        compose_stage(DEFAULT_STAGE, [use(ALL_TESTS, **args)])


def test_same_template_twice_collides():
    with pytest.raises(DuplicateJobNameError):
        compose_stage(DEFAULT_STAGE, [use(BUILD_WIDGET), use(BUILD_WIDGET)])


def test_stage_parameters_reach_jobs_and_win_over_variables():
    template = _echo("J", script("Vault", "echo $(kvVaultName)"))
    stage_ = compose_stage(
        "Release",
        [use(template)],
        {"kvVaultName": "stage-vault"},
        variables={"kvVaultName": "pipeline-vault"},
    )
    assert stage_.jobs[0].steps[0].args["script"] == "echo stage-vault"


def test_jobs_only_pipelines_get_the_default_stage():
    assert single_stage("", [use(BUILD_WIDGET)]).name == "Default"


# ---- pipeline composer ----

def test_stages_form_a_linear_chain():
    ok = compose_pipeline("p", [Stage("A", ()), Stage("B", (), depends_on=("A",)), Stage("C", ())])
    assert [s.name for s in ok.stages] == ["A", "B", "C"]

    with pytest.raises(InvalidTemplateError):
        compose_pipeline("p", [Stage("A", ()), Stage("B", (), depends_on=("A",)), Stage("C", (), depends_on=("A",))])


def test_pipeline_needs_distinct_stages():
    with pytest.raises(InvalidTemplateError):
        compose_pipeline("p", [])
    with pytest.raises(InvalidTemplateError):
        compose_pipeline("p", [Stage("A", ()), Stage("A", ())])


def test_expand_pipeline_runs_stages_in_order():
    definition = pipeline(
        "p",
        stage("Build", use(BUILD_WIDGET)),
        stage("Test", use(ALL_TESTS, **ALL_TESTS_ARGS), depends_on=["Build"]),
    )
    plan = expand_pipeline(definition)

    assert [s.name for s in plan.stages] == ["Build", "Test"]
    assert plan.stage("Test").job("Linux_Unit_3.7").axis_value == "3.7"


def test_any_error_aborts_the_whole_pipeline():
    definition = pipeline(
        "p",
        stage("Build", use(BUILD_WIDGET)),
        stage("Test", use(ALL_TESTS, **dict(ALL_TESTS_ARGS, freezeArtifactStem=None))),
    )
    with pytest.raises(UnresolvedParameterError):
        expand_pipeline(definition)


def test_values_outside_closed_domains_are_rejected():
    with pytest.raises(InvalidTemplateError) as exc:
        _all_tests_job(installationType="PipLcoal")
    assert exc.value.details["parameter"] == "installationType"

    with pytest.raises(InvalidTemplateError):
        _all_tests_job(platform="Solaris")
    with pytest.raises(InvalidTemplateError):
        _all_tests_job(targetType="Staging")

    job = _all_tests_job(installationType="piplocal")
    assert "Install fairlearn from source" in [s.label for s in job.steps]


def test_jobs_of_one_use_share_an_expansion_group():
    stage_ = compose_stage(
        "Test",
        [
            use(ALL_TESTS, **dict(ALL_TESTS_ARGS, pyVersions=["3.7", "3.8"])),
            use(ALL_TESTS, **dict(ALL_TESTS_ARGS, platform="Windows", pyVersions=["3.7", "3.8"])),
            use(BUILD_WIDGET),
        ],
    )

    groups = [j.group for j in stage_.jobs]
    assert groups == ["Linux_Unit#0", "Linux_Unit#0", "Windows_Unit#1", "Windows_Unit#1", "BuildWidget#2"]
    assert stage_.to_dict()["jobs"][0]["group"] == "Linux_Unit#0"
