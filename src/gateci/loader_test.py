from pathlib import Path
from textwrap import dedent

import pytest

from gateci.composer import expand_pipeline
from gateci.errors import InvalidTemplateError, UnresolvedParameterError
from gateci.loader import definition_from_dict, find_pipeline_files, load_pipeline, resolve_pipeline
from gateci.pipelines import PR_GATE

PIPELINE_DIR = Path(__file__).resolve().parents[2] / "pipelines"


def _write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(dedent(text), encoding="utf-8")
    return path


def test_bundled_yaml_pipeline():
    definition = load_pipeline(PIPELINE_DIR / "widget-smoke.yml")
    plan = expand_pipeline(definition)

    assert definition.name == "widget-smoke"
    assert definition.triggers.pr.branches == ("master", "release/*")
    assert [s.name for s in plan.stages] == ["Default"]
    assert [j.name for j in plan.jobs] == [
        "BuildWidget",
        "LimitedInstallation_3.8",
        "Docs_Linux_3.7",
        "Docs_Linux_3.8",
    ]
    assert plan.stage("Default").job("Docs_Linux_3.8").max_parallel == 1


def test_bundled_python_pipeline():
    definition = load_pipeline(PIPELINE_DIR / "install_check.py")

    with pytest.raises(UnresolvedParameterError):
        expand_pipeline(definition)
    plan = expand_pipeline(definition, {"pyVersion": "3.9"})
    assert [j.name for j in plan.jobs] == ["LimitedInstallation_3.9"]


def test_yaml_stages_and_catalog_refs(tmp_path):
    path = _write(
        tmp_path,
        "release.yml",
        """
        name: release
        variables:
          FreezeFileStem: requirements-freeze
        trigger:
          parameters:
            devVersion: int
        stages:
          - stage: Validate
            jobs:
              - template: all-tests
                parameters:
                  platform: Linux
                  vmImage: ubuntu-16.04
                  testRunType: Unit
                  installationType: None
                  pyVersions: ["3.7"]
                  freezeArtifactStem: freeze
                  freezeFileStem: $(FreezeFileStem)
          - stage: Widget
            dependsOn: [Validate]
            failFast: false
            jobs:
              - template: build-widget
        """,
    )
    plan = expand_pipeline(load_pipeline(path), {"devVersion": "1"})

    assert [s.name for s in plan.stages] == ["Validate", "Widget"]
    assert plan.stage("Widget").fail_fast is False
    job = plan.stage("Validate").job("Linux_Unit_3.7")
    assert job.bindings["FreezeFile"] == "requirements-freeze-3.7.txt"


def test_yaml_step_kinds(tmp_path):
    path = _write(
        tmp_path,
        "steps.yml",
        """
        name: steps
        templates:
          ship:
            name: Ship
            pool: ubuntu-latest
            parameters:
              target: Test
            variables:
              - name: url
                branches:
                  - condition: eq(parameters.target, 'Test')
                    value: https://test.example
                otherwise: https://example
            steps:
              - download: VersionInfo
                produces: [version]
              - script: ./ship.sh $(url)
                displayName: Ship it
                workingDirectory: tools
                env:
                  TOKEN: $(secretName)
                consumes: [version]
              - publish: report.txt
                artifact: Report
                runCondition: always()
        variables:
          secretName: shipToken
        jobs:
          - template: ship
            parameters:
              target: Prod
        """,
    )
    (job,) = expand_pipeline(load_pipeline(path)).jobs
    download, ship, publish = job.steps

    assert download.kind == "download"
    assert download.args["path"] == "$(System.DefaultWorkingDirectory)"
    assert ship.label == "Ship it"
    assert ship.args["script"] == "./ship.sh https://example"
    assert ship.args["workingDirectory"] == "tools"
    assert ship.args["env.TOKEN"] == "shipToken"
    assert publish.run_condition == "always()"


@pytest.mark.parametrize(
    "data",
    [
        {"name": "x"},
        {"name": "x", "jobs": [{"template": "build-widget"}], "stages": [{"stage": "A", "jobs": []}]},
        {"name": "x", "jobs": [{"template": "build-widget", "params": {}}]},
        {
            "name": "x",
            "templates": {"t": {"name": "T", "steps": [{"script": "a", "task": "b"}]}},
            "jobs": [{"template": "t"}],
        },
        {"name": "x", "jobs": [{"template": "no-such-template"}]},
    ],
)
def test_invalid_yaml_documents(data):
    with pytest.raises(InvalidTemplateError):
        definition_from_dict(data)


def test_yaml_syntax_error(tmp_path):
    path = _write(tmp_path, "broken.yml", "name: [unclosed\n")
    with pytest.raises(InvalidTemplateError):
        load_pipeline(path)


def test_python_pipeline_factory(tmp_path):
    path = _write(
        tmp_path,
        "factory.py",
        """
        from gateci.catalog import BUILD_WIDGET
        from gateci.dsl import pipeline as make_pipeline, stage, use

        def pipeline():
            return make_pipeline("factory", stage("Default", use(BUILD_WIDGET)))
        """,
    )
    assert load_pipeline(path).name == "factory"


def test_python_file_without_pipeline(tmp_path):
    path = _write(tmp_path, "empty.py", "from gateci.dsl import pipeline\n")
    with pytest.raises(TypeError):
        load_pipeline(path)


def test_load_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_pipeline(tmp_path / "missing.yml")
    with pytest.raises(ValueError):
        load_pipeline(_write(tmp_path, "pipeline.json", "{}"))


def test_resolve_pipeline_order(tmp_path):
    _write(tmp_path, "local.yml", "name: local\njobs:\n  - template: build-widget\n")

    assert resolve_pipeline("pr-gate", tmp_path) is PR_GATE
    assert resolve_pipeline("local", tmp_path).name == "local"
    assert resolve_pipeline(str(tmp_path / "local.yml")).name == "local"
    with pytest.raises(FileNotFoundError):
        resolve_pipeline("elsewhere", tmp_path)


def test_find_pipeline_files(tmp_path):
    _write(tmp_path, "a.yml", "name: a\n")
    _write(tmp_path, "_private.py", "")
    _write(tmp_path, "notes.txt", "")

    assert [p.name for p in find_pipeline_files(tmp_path)] == ["a.yml"]
    assert find_pipeline_files(tmp_path / "nope") == []
