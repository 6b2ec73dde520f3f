# pipelines.py
from __future__ import annotations

from typing import Dict, Iterable

from .catalog import (
    ALL_TESTS,
    BUILD_WIDGET,
    LIMITED_INSTALLATION,
    all_tests_matrix,
    pypi_deployment_stages,
)
from .composer import DEFAULT_STAGE
from .dsl import on_pr, pipeline, schedule, stage, triggers, use
from .model import PipelineDefinition

KV_SUBSCRIPTION = "Fairness - Automation (cecafb73-04ae-4432-9f96-d96925d28058)"
KV_VAULT_NAME = "fairlearndeploy"


_FREEZE = dict(freezeArtifactStem="$(FreezeArtifactStem)", freezeFileStem="$(FreezeFileStem)")

# Pull-request gate. No CI build on push.
# Notebook jobs also get the freeze stems: an empty parameter counts as
# not supplied, so there is no way to leave a stem blank.
PR_GATE = pipeline(
    "pr-gate",
    stage(
        DEFAULT_STAGE,
        use(ALL_TESTS, platform="Linux", vmImage="ubuntu-16.04", testRunType="Unit",
            installationType="None", pyVersions=["3.7"], **_FREEZE),
        use(ALL_TESTS, platform="Windows", vmImage="vs2017-win2016", testRunType="Unit",
            installationType="None", pyVersions=["3.6"], **_FREEZE),
        use(ALL_TESTS, platform="MacOS", vmImage="macos-latest", testRunType="Unit",
            installationType="None", pyVersions=["3.7"], **_FREEZE),
        use(ALL_TESTS, platform="Linux", vmImage="ubuntu-16.04", testRunType="Notebooks",
            installationType="PipLocal", pyVersions=["3.6"], **_FREEZE),
        use(ALL_TESTS, platform="Windows", vmImage="vs2017-win2016", testRunType="Notebooks",
            installationType="PipLocal", pyVersions=["3.8"], **_FREEZE),
        use(BUILD_WIDGET),
        use(LIMITED_INSTALLATION),
    ),
    variables={"FreezeArtifactStem": "freeze", "FreezeFileStem": "requirements-freeze"},
    trigger=triggers(pr=on_pr("master", "release/*")),
    description="Validation run for pull requests against master and release branches.",
)


# Nightly build with pinned requirements. Not on MacOS: the pinned
# requirements do not install there.
NIGHTLY = pipeline(
    "nightly",
    stage(
        DEFAULT_STAGE,
        all_tests_matrix(
            freeze_artifact_stem="$(FreezeArtifactStem)",
            freeze_file_stem="$(FreezeFileStem)",
            include_macos=False,
            pin_requirements=True,
        ),
        use(BUILD_WIDGET),
    ),
    variables={"FreezeArtifactStem": "freeze", "FreezeFileStem": "requirements-freeze"},
    trigger=triggers(schedules=[schedule("0 8 * * *", display_name="Nightly Build", branches=["master"], always=True)]),
    description="Nightly build which uses pinned requirements.",
)


# Release to PyPI:
#   1. pre-deployment validation, like the regular builds
#   2. release to PyPI-Test and run the tests against that package
#   3. release to PyPI itself, repeating the same stages
# devVersion turns the PyPI-Test packages into release candidates so minor
# fixes do not need a separate checkin before the real release.
PYPI_RELEASE = pipeline(
    "pypi-release",
    stage(
        "PreDeploymentValidation",
        all_tests_matrix(
            freeze_artifact_stem="PreDeployment",
            freeze_file_stem="$(FreezeFileStem)",
        ),
        use(LIMITED_INSTALLATION),
    ),
    pypi_deployment_stages(
        target_type="Test",
        kv_subscription=KV_SUBSCRIPTION,
        kv_vault_name=KV_VAULT_NAME,
        kv_username="usernametest",
        kv_password="passwordtest",
        freeze_artifact_stem="Freeze",
        freeze_file_stem="requirements-freeze",
    ),
    pypi_deployment_stages(
        target_type="Prod",
        target_environment="PyPI Deployment",
        kv_subscription=KV_SUBSCRIPTION,
        kv_vault_name=KV_VAULT_NAME,
        kv_username="usernameprod",
        kv_password="passwordprod",
        freeze_artifact_stem="Freeze",
        freeze_file_stem="requirements-freeze",
    ),
    variables={
        "poolImage": "ubuntu-latest",
        "poolPythonVersion": "3.6",
        "FreezeFileStem": "requirements-freeze-predeploy",
    },
    trigger=triggers(required={"devVersion": "int"}),
    description="Release fairlearn to PyPI-Test, then to PyPI.",
)


_PIPELINES: Dict[str, PipelineDefinition] = {}


def register_pipeline(definition: PipelineDefinition) -> None:
    if definition.name in _PIPELINES:
        raise ValueError(f"Pipeline '{definition.name}' already registered.")
    _PIPELINES[definition.name] = definition


def get_pipeline(name: str) -> PipelineDefinition:
    try:
        return _PIPELINES[name]
    except KeyError as exc:
        available = ", ".join(sorted(_PIPELINES))
        raise KeyError(f"Unknown pipeline '{name}'. Available pipelines: {available}.") from exc


def list_pipelines() -> Iterable[PipelineDefinition]:
    return _PIPELINES.values()


for _definition in (PR_GATE, NIGHTLY, PYPI_RELEASE):
    register_pipeline(_definition)
