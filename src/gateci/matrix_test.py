import pytest

from gateci.catalog import ALL_TESTS, BUILD_WIDGET
from gateci.dsl import job_template, matrix, script
from gateci.errors import InvalidTemplateError, UnresolvedParameterError
from gateci.matrix import expand, freeze_artifact_name, freeze_file_name, requirements_file_name
from gateci.params import resolve


def _all_tests_params(**overrides):
    values = dict(
        platform="Linux",
        vmImage="ubuntu-16.04",
        testRunType="Unit",
        installationType="None",
        pyVersions=["3.7"],
        freezeArtifactStem="freeze",
        freezeFileStem="requirements-freeze",
    )
    values.update(overrides)
    return resolve(ALL_TESTS.parameters, values)


def test_linux_unit_single_version():
    (skeleton,) = expand(ALL_TESTS, _all_tests_params())

    assert skeleton.name == "Linux_Unit_3.7"
    assert skeleton.axis_value == "3.7"
    assert skeleton.parameters["PyVer"] == "3.7"
    assert skeleton.parameters["FreezeArtifact"] == "freezeLinuxUnit3.7"
    assert skeleton.parameters["FreezeFile"] == "requirements-freeze-3.7.txt"
    assert skeleton.parameters["RequirementsFile"] == "requirements-3.7.txt"


def test_derived_names_match_the_naming_rules():
    (skeleton,) = expand(ALL_TESTS, _all_tests_params(platform="Windows", pyVersions=["3.6"], name="win"))

    assert skeleton.parameters["FreezeArtifact"] == freeze_artifact_name("freeze", "Windows", "Unit", "3.6")
    assert skeleton.parameters["FreezeFile"] == freeze_file_name("requirements-freeze", "win", "3.6")
    assert skeleton.parameters["RequirementsFile"] == requirements_file_name("3.6")
    assert freeze_file_name("requirements-freeze", "win", "3.6") == "requirements-freeze-win3.6.txt"


def test_one_job_per_axis_value_in_order():
    versions = ["3.5", "3.6", "3.7", "3.8"]
    skeletons = expand(ALL_TESTS, _all_tests_params(pyVersions=versions))

    assert [s.name for s in skeletons] == [f"Linux_Unit_{v}" for v in versions]
    assert len({s.name for s in skeletons}) == len(versions)
    assert all(s.max_parallel == 2 for s in skeletons)


def test_expansion_is_deterministic():
    first = expand(ALL_TESTS, _all_tests_params(pyVersions=["3.6", "3.7"]))
    second = expand(ALL_TESTS, _all_tests_params(pyVersions=["3.6", "3.7"]))

    assert [dict(s.parameters) for s in first] == [dict(s.parameters) for s in second]


def test_empty_axis_yields_no_jobs():
    assert expand(ALL_TESTS, _all_tests_params(pyVersions=[])) == []


def test_duplicate_axis_values_give_independent_jobs():
    skeletons = expand(ALL_TESTS, _all_tests_params(), axis_values=["3.7", "3.7"])

    assert [s.name for s in skeletons] == ["Linux_Unit_3.7", "Linux_Unit_3.7"]
    assert skeletons[0].parameters is not skeletons[1].parameters


def test_template_without_matrix_is_one_job():
    (skeleton,) = expand(BUILD_WIDGET, resolve(BUILD_WIDGET.parameters))

    assert skeleton.name == "BuildWidget"
    assert skeleton.axis_value is None
    assert skeleton.max_parallel is None


def test_prefix_is_prepended_to_job_names():
    template = job_template(
        "Check",
        script("Use $(PyVer)", "echo $(PyVer)"),
        parameters={"pyVersions": ["3.8"]},
        matrix=matrix("pyVersions", "PyVer"),
        pool="ubuntu-latest",
        prefix="Nightly_",
    )
    (skeleton,) = expand(template, resolve(template.parameters))
    assert skeleton.name == "Nightly_Check_3.8"


def test_dangling_axis_reference_is_rejected():
    template = job_template(
        "Broken",
        script("Use Python $(PyVr)", "echo $(PyVr)"),
        parameters={"pyVersions": ["3.7"]},
        matrix=matrix("pyVersions", "PyVer"),
        pool="ubuntu-latest",
    )
    with pytest.raises(InvalidTemplateError) as exc:
        expand(template, resolve(template.parameters))
    assert "$(PyVr)" in exc.value.message


def test_missing_stem_is_unresolved():
    params = resolve(
        ALL_TESTS.parameters,
        dict(platform="Linux", vmImage="ubuntu-16.04", testRunType="Unit", installationType="None", pyVersions=["3.7"]),
    )
    with pytest.raises(UnresolvedParameterError):
        expand(ALL_TESTS, params)


def test_max_parallel_must_be_positive():
    with pytest.raises(ValueError):
        matrix("pyVersions", "PyVer", max_parallel=0)
