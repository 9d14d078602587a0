"""
pytest suite for pipeline configuration.
"""

import json
import os
import sys

import pytest
from pydantic import ValidationError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from curriculum_core.config import PipelineConfig, load_config, save_config


class TestConfig:

    def test_defaults(self):
        config = load_config()
        assert config.db_path == "./data/curriculum.db"
        assert config.poll_interval_seconds == 1.0
        assert config.roadmap_title == "Learning Roadmap"

    def test_save_and_load(self, tmp_path):
        path = str(tmp_path / "configs" / "pipeline.json")
        config = PipelineConfig(db_path="/tmp/x.db", poll_interval_seconds=0.25)
        save_config(config, path)

        with open(path) as fh:
            assert json.load(fh)["poll_interval_seconds"] == 0.25
        assert load_config(path) == config

    def test_partial_file_uses_defaults(self, tmp_path):
        path = tmp_path / "partial.json"
        path.write_text(json.dumps({"roadmap_title": "Intro to Rust"}))
        config = load_config(str(path))
        assert config.roadmap_title == "Intro to Rust"
        assert config.poll_interval_seconds == 1.0

    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValidationError):
            PipelineConfig(poll_interval_seconds=0)

    def test_save_logs_ascii_path(self, tmp_path, caplog):
        path = str(tmp_path / "pipeline.json")
        with caplog.at_level("INFO", logger="curriculum_core.config"):
            save_config(PipelineConfig(), path)
        assert f"Saved config -> {path}" in caplog.text
