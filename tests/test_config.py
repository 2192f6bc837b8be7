"""Tests for pipeline configuration."""

import pytest
from pydantic import ValidationError

from rankscope.config import DEFAULT_PHASE_WEIGHTS, PipelineConfig, parse_phase_weights
from rankscope.executor.errors import InvalidInputError


class TestPhaseWeights:
    """Parsing and validation of phase weights."""

    def test_defaults_are_equal(self):
        assert parse_phase_weights(None) == DEFAULT_PHASE_WEIGHTS
        assert set(DEFAULT_PHASE_WEIGHTS.values()) == {20.0}

    def test_partial_override(self):
        weights = parse_phase_weights("scraping=40, data_save=0")
        assert weights["scraping"] == 40.0
        assert weights["data_save"] == 0.0
        assert weights["ai_analysis"] == 20.0

    @pytest.mark.parametrize("raw", ["scraping", "scraping=lots"])
    def test_malformed(self, raw):
        with pytest.raises(InvalidInputError):
            parse_phase_weights(raw)

    def test_weights_must_sum_to_100(self):
        with pytest.raises(ValidationError):
            PipelineConfig(phase_weights=parse_phase_weights("scraping=50"))

    def test_unknown_phase_rejected(self):
        weights = dict(DEFAULT_PHASE_WEIGHTS, publishing=0)
        with pytest.raises(ValidationError):
            PipelineConfig(phase_weights=weights)

    def test_valid_custom_weights(self):
        config = PipelineConfig(phase_weights=parse_phase_weights("scraping=40,data_save=0"))
        assert sum(config.phase_weights.values()) == 100


class TestFromEnv:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("RANKSCOPE_PHASE_WEIGHTS", raising=False)
        monkeypatch.delenv("RANKSCOPE_RANK_BATCH_SIZE", raising=False)
        config = PipelineConfig.from_env()
        assert config.rank_batch_size == 5
        assert config.phase_weights == DEFAULT_PHASE_WEIGHTS

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("RANKSCOPE_RANK_BATCH_SIZE", "3")
        monkeypatch.setenv("RANKSCOPE_RANK_BATCH_DELAY", "0.5")
        config = PipelineConfig.from_env()
        assert config.rank_batch_size == 3
        assert config.rank_batch_delay == 0.5

    @pytest.mark.parametrize("name,value", [
        ("RANKSCOPE_PHASE_WEIGHTS", "scraping=50"),
        ("RANKSCOPE_RANK_BATCH_SIZE", "0"),
        ("RANKSCOPE_COLLABORATOR_TIMEOUT", "soon"),
    ])
    def test_invalid_values(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(InvalidInputError):
            PipelineConfig.from_env()
