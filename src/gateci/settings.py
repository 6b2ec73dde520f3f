from __future__ import annotations
import os

DATABASE_URL = os.environ.get("GATECI_DATABASE_URL", "sqlite+aiosqlite:///./gateci.db")
PIPELINE_DIR = os.environ.get("GATECI_PIPELINE_DIR", "pipelines")
OUTPUT_FORMAT = os.environ.get("GATECI_OUTPUT_FORMAT", "json")

OUTPUT_FORMATS = ("json", "yaml")
