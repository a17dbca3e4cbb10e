"""
Tests for layered analytics configuration (defaults -> YAML -> env).
"""

from unittest.mock import patch

import pytest
from pydantic import ValidationError

from models.pipeline_models import BucketSize, Stage
from scripts.lib.config import (
    CONFIG_PATH,
    DEFAULT_CONFIG,
    AnalyticsConfig,
    load_analytics_config,
)
from scripts.lib.errors import ConfigError

CLEAN_ENV = {"GOAL_MRR_USD": "", "REPORTING_TIMEZONE": "", "ANALYTICS_CACHE_TTL": ""}


class TestLoadAnalyticsConfig:
    def test_missing_file_means_defaults(self, tmp_path):
        with patch.dict("os.environ", CLEAN_ENV, clear=False):
            config = load_analytics_config(tmp_path / "missing.yaml")

        assert config.goal_mrr_usd == 50000
        assert config.reporting_timezone == "UTC"
        assert config.probability(Stage.PROPUESTA) == 0.75
        assert config.trend.bucket_count == 12
        assert config.max_insights is None
        assert len(config.insight_rules) == len(DEFAULT_CONFIG["insight_rules"])

    def test_yaml_merges_over_defaults(self, tmp_path):
        path = tmp_path / "analytics.yaml"
        path.write_text(
            "goal_mrr_usd: 70000\n"
            "trend:\n"
            "  bucket_count: 6\n"
            "stage_probabilities:\n"
            "  PROPUESTA: 0.8\n"
        )
        with patch.dict("os.environ", CLEAN_ENV, clear=False):
            config = load_analytics_config(path)

        assert config.goal_mrr_usd == 70000
        assert config.trend.bucket_count == 6
        assert config.trend.bucket_size == BucketSize.MONTH
        assert config.probability(Stage.PROPUESTA) == 0.8
        assert config.probability(Stage.DEMOSTRACION) == 0.5

    def test_env_overrides_yaml(self, tmp_path):
        path = tmp_path / "analytics.yaml"
        path.write_text("goal_mrr_usd: 70000\n")
        env = {**CLEAN_ENV, "GOAL_MRR_USD": "90000", "REPORTING_TIMEZONE": "America/Bogota"}
        with patch.dict("os.environ", env, clear=False):
            config = load_analytics_config(path)

        assert config.goal_mrr_usd == 90000
        assert config.tz.key == "America/Bogota"

    def test_explicit_overrides_apply_last(self, tmp_path):
        with patch.dict("os.environ", CLEAN_ENV, clear=False):
            config = load_analytics_config(
                tmp_path / "missing.yaml", overrides={"max_insights": 3},
            )
        assert config.max_insights == 3

    def test_shipped_config_is_valid(self):
        with patch.dict("os.environ", CLEAN_ENV, clear=False):
            config = load_analytics_config(CONFIG_PATH)
        assert config.reporting_timezone == "America/Bogota"
        assert config.closeable_stages == [Stage.DEMOSTRACION, Stage.PROPUESTA]


class TestValidation:
    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "analytics.yaml"
        path.write_text("goal_mrr_usd: [unclosed\n")
        with pytest.raises(ConfigError):
            load_analytics_config(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "analytics.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError):
            load_analytics_config(path)

    def test_probabilities_must_not_decrease(self, tmp_path):
        with pytest.raises(ConfigError):
            load_analytics_config(
                tmp_path / "missing.yaml",
                overrides={"stage_probabilities": {"PROPUESTA": 0.2}},
            )

    def test_probability_outside_unit_interval(self, tmp_path):
        with pytest.raises(ConfigError):
            load_analytics_config(
                tmp_path / "missing.yaml",
                overrides={"stage_probabilities": {"CERRADO_GANADO": 1.5}},
            )

    def test_every_stage_needs_a_probability(self):
        data = dict(DEFAULT_CONFIG, stage_probabilities={"PROSPECTO": 0.1})
        with pytest.raises(ValidationError):
            AnalyticsConfig.model_validate(data)

    def test_unknown_timezone(self, tmp_path):
        with patch.dict("os.environ", {**CLEAN_ENV, "REPORTING_TIMEZONE": "Mars/Olympus"}):
            with pytest.raises(ConfigError):
                load_analytics_config(tmp_path / "missing.yaml")

    def test_unknown_key_rejected(self, tmp_path):
        with patch.dict("os.environ", CLEAN_ENV, clear=False):
            with pytest.raises(ConfigError):
                load_analytics_config(
                    tmp_path / "missing.yaml", overrides={"reporting_currency": "EUR"},
                )

    def test_conversion_pair_to_itself(self, tmp_path):
        with pytest.raises(ConfigError):
            load_analytics_config(
                tmp_path / "missing.yaml",
                overrides={"conversion_pairs": [["PROPUESTA", "PROPUESTA"]]},
            )
