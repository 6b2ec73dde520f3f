# Manually queued installation check against a chosen Python.
from gateci.catalog import LIMITED_INSTALLATION
from gateci.dsl import pipeline, stage, triggers, use

PIPELINE = pipeline(
    "install-check",
    stage("Install", use(LIMITED_INSTALLATION, pyVersions=["$(pyVersion)"])),
    trigger=triggers(required={"pyVersion": "str"}),
    description="Install fairlearn with core requirements only and run test/install.",
)
