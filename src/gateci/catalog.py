# catalog.py
# Bundled job and stage templates for the fairlearn validation and release pipelines.
from __future__ import annotations

from typing import Dict, List, Optional

from .dsl import build, download, guard, job_template, matrix, publish, script, stage, task, use, when
from .matrix import freeze_artifact_name, freeze_file_name, requirements_file_name
from .model import InstallationType, JobTemplate, Platform, StageDefinition, TargetType, TestRunType, enum_values

TEST_PYPI_URL = "https://test.pypi.org/simple/"
PROD_PYPI_URL = "https://pypi.org/simple/"
TEST_UPLOAD_URL = "https://test.pypi.org/legacy/"
PROD_UPLOAD_URL = "https://upload.pypi.org/legacy/"

DEFAULT_PY_VERSIONS = ("3.5", "3.6", "3.7", "3.8")

IS_TEST = "eq(parameters.targetType, 'Test')"
IS_PROD = "eq(parameters.targetType, 'Prod')"


# ---------------------------------------------------------------------
# Step groups (the "steps templates" spliced into jobs)
# ---------------------------------------------------------------------

def python_infra_upgrade_steps():
    return [
        script("Upgrade pip", "python -m pip install --upgrade pip"),
        script("Upgrade setuptools and wheel", "pip install --upgrade setuptools wheel"),
    ]


def requirements_installation_steps():
    pinned = "eq(parameters.pinRequirements, true)"
    return [
        script(
            "Pin requirements for Python $(PyVer)",
            "python ./scripts/pin_reqs.py requirements.txt --output $(RequirementsFile)",
            condition=pinned,
        ),
        script(
            "Install pinned requirements",
            "pip install -r $(RequirementsFile)",
            condition=pinned,
            produces=("requirements",),
        ),
        script(
            "Install requirements",
            "pip install -r requirements.txt",
            condition="not(parameters.pinRequirements)",
            produces=("requirements",),
        ),
        script("Install development requirements", "pip install -r requirements-dev.txt", consumes=("requirements",)),
    ]


def pip_freeze_to_artifact_steps():
    return [
        script("Freeze installed packages", "pip freeze --all > $(FreezeFile)", produces=("freeze-file",)),
        publish("Publish $(FreezeFile)", "$(FreezeFile)", "$(FreezeArtifact)", consumes=("freeze-file",)),
    ]


def package_installation_steps():
    return [
        script(
            "Install fairlearn from source",
            "pip install -e .",
            condition="eq(parameters.installationType, 'PipLocal')",
            produces=("package",),
        ),
        download(
            "Fetch version information",
            "${{ parameters.versionArtifactName }}",
            "$(System.DefaultWorkingDirectory)",
            condition="eq(parameters.installationType, 'PyPI')",
            produces=("version-file",),
        ),
        script(
            "Install fairlearn from $(pypiUrl)",
            "python ./scripts/install_from_pypi.py --index-url $(pypiUrl) "
            "--version-file ${{ parameters.versionArtifactFile }} --pip-version-variable variableForPipVersion",
            condition="eq(parameters.installationType, 'PyPI')",
            consumes=("version-file",),
            produces=("package",),
        ),
    ]


def publish_test_results_step():
    return task(
        "Publish Test Results **/TEST-*.xml",
        "PublishTestResults@2",
        run_condition="succeededOrFailed()",
        testResultsFiles="**/TEST-*.xml",
    )


# ---------------------------------------------------------------------
# Job templates
# ---------------------------------------------------------------------

# platform: human readable, should match vmImage
# testRunType: {Unit, Notebooks}
# installationType: {None, PipLocal, PyPI}; Notebooks need an installed package.
#   PyPI also needs targetType, versionArtifactName and versionArtifactFile.
ALL_TESTS = job_template(
    "${{ parameters.platform }}_${{ parameters.testRunType }}",
    guard("testRunType", enum_values(TestRunType)),
    task("Use Python $(PyVer)", "UsePythonVersion@0", versionSpec="$(PyVer)", addToPath="true"),
    python_infra_upgrade_steps(),
    requirements_installation_steps(),
    pip_freeze_to_artifact_steps(),
    package_installation_steps(),
    script("Run flake8", "flake8 ."),
    script(
        "Run unit tests",
        'python -m pytest test/ --ignore=test/install -m "not notebooks" '
        '--junitxml=./TEST--TEST.xml -o junit_suite_name="$(Agent.JobName)"',
        condition="eq(parameters.testRunType, 'Unit')",
    ),
    script(
        "Run notebooks as tests",
        'python -m pytest test/ -m notebooks --junitxml=./TEST-TEST.xml -o junit_suite_name="$(Agent.JobName)"',
        condition="eq(parameters.testRunType, 'Notebooks')",
        consumes=("package",),
    ),
    publish_test_results_step(),
    parameters={
        "platform": "",
        "vmImage": "",
        "testRunType": "",
        "installationType": "",
        "pyVersions": DEFAULT_PY_VERSIONS,
        "pinRequirements": False,
        "freezeArtifactStem": None,
        "freezeFileStem": None,
        "name": "",
        # used when installationType is PyPI
        "targetType": "Test",
        "versionArtifactName": None,
        "versionArtifactFile": None,
    },
    matrix=matrix(
        "pyVersions",
        "PyVer",
        max_parallel=2,
        RequirementsFile=requirements_file_name("$(PyVer)"),
        FreezeArtifact=freeze_artifact_name(
            "${{ parameters.freezeArtifactStem }}",
            "${{ parameters.platform }}",
            "${{ parameters.testRunType }}",
            "$(PyVer)",
        ),
        FreezeFile=freeze_file_name("${{ parameters.freezeFileStem }}", "${{ parameters.name }}", "$(PyVer)"),
    ),
    variables=[when("pypiUrl", (IS_TEST, TEST_PYPI_URL), (IS_PROD, PROD_PYPI_URL))],
    domains={
        "platform": enum_values(Platform),
        "installationType": enum_values(InstallationType),
        "targetType": enum_values(TargetType),
    },
)


BUILD_WIDGET = (
    build("BuildWidget")
    .param("vmImage", "ubuntu-latest")
    .param("nodeVersion", "12.x")
    .param("pyVersion", "3.7")
    .define_step(
        task("Use Node ${{ parameters.nodeVersion }}", "NodeTool@0", versionSpec="${{ parameters.nodeVersion }}"),
        task("Use Python ${{ parameters.pyVersion }}", "UsePythonVersion@0", versionSpec="${{ parameters.pyVersion }}"),
        python_infra_upgrade_steps(),
        script("Install yarn", "npm install -g yarn"),
        script("Install widget dependencies", "yarn install --frozen-lockfile", cwd="fairlearn/widget/js"),
        script("Build widget", "python ./scripts/build_widget.py --yarn-path $(which yarn)", produces=("widget",)),
        script("Check widget is up to date", "git diff --exit-code", consumes=("widget",)),
        script("Run widget tests", "yarn test", cwd="fairlearn/widget/js", consumes=("widget",)),
    )
    .build()
)


LIMITED_INSTALLATION = job_template(
    "LimitedInstallation",
    task("Use Python $(PyVer)", "UsePythonVersion@0", versionSpec="$(PyVer)", addToPath="true"),
    python_infra_upgrade_steps(),
    script("Install core requirements only", "pip install -r requirements.txt", produces=("requirements",)),
    script("Install fairlearn", "pip install -e .", consumes=("requirements",), produces=("package",)),
    script("Install pytest", "pip install pytest"),
    script(
        "Run installation tests",
        "python -m pytest test/install --junitxml=./TEST-TEST.xml -o junit_suite_name=\"$(Agent.JobName)\"",
        consumes=("package",),
    ),
    publish_test_results_step(),
    parameters={"vmImage": "ubuntu-16.04", "pyVersions": DEFAULT_PY_VERSIONS},
    matrix=matrix("pyVersions", "PyVer", max_parallel=2),
)


# Stage parameters visible here: targetEnvironment, kvSubscription,
# kvVaultName, kvUsername, kvPassword. devVersion comes from the invocation.
PYPI_BUILD_UPLOAD = job_template(
    "BuildAndUpload_${{ parameters.targetType }}",
    task("Use Python $(poolPythonVersion)", "UsePythonVersion@0", versionSpec="$(poolPythonVersion)", addToPath="true"),
    python_infra_upgrade_steps(),
    script("Install build requirements", "pip install -r requirements-dev.txt"),
    task(
        "Fetch PyPI credentials",
        "AzureKeyVault@1",
        azureSubscription="$(kvSubscription)",
        KeyVaultName="$(kvVaultName)",
        SecretsFilter="$(kvUsername),$(kvPassword)",
        produces=("credentials",),
    ),
    script(
        "Build wheel for ${{ parameters.targetType }}",
        "python ./scripts/build_wheels.py --target-type ${{ parameters.targetType }} "
        "--version-filename ${{ parameters.versionArtifactFile }}",
        env={"DEV_VERSION": "$(devVersion)"},
        produces=("wheel", "version-file"),
    ),
    publish(
        "Publish version information",
        "${{ parameters.versionArtifactFile }}",
        "${{ parameters.versionArtifactName }}",
        consumes=("version-file",),
    ),
    script(
        "Upload to ${{ parameters.targetType }} package index",
        "twine upload --repository-url $(uploadUrl) dist/*",
        env={
            "TWINE_USERNAME_SECRET": "$(kvUsername)",
            "TWINE_PASSWORD_SECRET": "$(kvPassword)",
            "DEPLOY_ENVIRONMENT": "$(targetEnvironment)",
        },
        consumes=("wheel", "credentials"),
    ),
    parameters={
        "poolImage": "ubuntu-latest",
        "targetType": None,
        "versionArtifactName": None,
        "versionArtifactFile": "version_info.txt",
    },
    variables=[when("uploadUrl", (IS_TEST, TEST_UPLOAD_URL), (IS_PROD, PROD_UPLOAD_URL))],
    pool="${{ parameters.poolImage }}",
)


# ---------------------------------------------------------------------
# Job sets and stage templates
# ---------------------------------------------------------------------

def all_tests_matrix(
    *,
    freeze_artifact_stem: str,
    freeze_file_stem: str,
    py_versions=DEFAULT_PY_VERSIONS,
    installation_type: str = "None",
    notebooks_installation_type: str = "PipLocal",
    include_macos: bool = True,
    pin_requirements: bool = False,
    **extra,
):
    """The standard spread of all-tests jobs: unit tests per platform plus notebooks."""
    platforms = [("Linux", "ubuntu-16.04"), ("Windows", "vs2017-win2016")]
    if include_macos:
        platforms.append(("MacOS", "macos-latest"))

    common = dict(
        pyVersions=list(py_versions),
        freezeArtifactStem=freeze_artifact_stem,
        freezeFileStem=freeze_file_stem,
        pinRequirements=pin_requirements,
        **extra,
    )
    refs = [
        use(ALL_TESTS, platform=p, vmImage=image, testRunType="Unit", installationType=installation_type, **common)
        for p, image in platforms
    ]
    refs += [
        use(ALL_TESTS, platform=p, vmImage=image, testRunType="Notebooks", installationType=notebooks_installation_type, **common)
        for p, image in platforms
        if p != "MacOS"
    ]
    return refs


def pypi_deployment_stages(
    *,
    target_type: str,
    kv_subscription: str,
    kv_vault_name: str,
    kv_username: str,
    kv_password: str,
    freeze_artifact_stem: str,
    freeze_file_stem: str,
    pool_image: str = "$(poolImage)",
    target_environment: Optional[str] = None,
) -> List[StageDefinition]:
    """
    Release to one package index and validate what landed there.

    Relies on the implicit dependence on the previous stage.
    """
    version_artifact = f"VersionInfo{target_type}"
    stage_parameters = {
        "targetEnvironment": target_environment or "",
        "kvSubscription": kv_subscription,
        "kvVaultName": kv_vault_name,
        "kvUsername": kv_username,
        "kvPassword": kv_password,
    }
    release = stage(
        f"PyPI{target_type}Release",
        use(
            PYPI_BUILD_UPLOAD,
            poolImage=pool_image,
            targetType=target_type,
            versionArtifactName=version_artifact,
        ),
        parameters=stage_parameters,
        display_name=f"Release to PyPI {target_type}",
    )
    validation = stage(
        f"PyPI{target_type}Validation",
        all_tests_matrix(
            freeze_artifact_stem=freeze_artifact_stem,
            freeze_file_stem=freeze_file_stem,
            installation_type="PyPI",
            notebooks_installation_type="PyPI",
            targetType=target_type,
            versionArtifactName=version_artifact,
            versionArtifactFile="version_info.txt",
        ),
        display_name=f"Validate PyPI {target_type} package",
    )
    return [release, validation]


JOB_TEMPLATES: Dict[str, JobTemplate] = {
    "all-tests": ALL_TESTS,
    "build-widget": BUILD_WIDGET,
    "limited-installation": LIMITED_INSTALLATION,
    "pypi-build-upload": PYPI_BUILD_UPLOAD,
}
