"""
Runtime configuration for the curriculum core.

A ``PipelineConfig`` can be saved to and loaded from JSON, so a tuned
setup (database path, polling interval, roadmap title) can be reused
across runs::

    config = load_config("./data/pipeline_config.json")
"""

import json
import logging
import os
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "./data/curriculum.db"


class PipelineConfig(BaseModel):
    db_path: str = DEFAULT_DB_PATH
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    roadmap_title: str = "Learning Roadmap"
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> PipelineConfig:
    """Load a config from *path*; defaults when *path* is ``None``."""
    if path is None:
        return PipelineConfig()

    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    config = PipelineConfig.model_validate(data)
    logger.info("Loaded pipeline config from %s", path)
    return config


def save_config(config: PipelineConfig, path: str) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(config.model_dump(), fh, indent=2)
    logger.info("Saved config -> %s", path)
