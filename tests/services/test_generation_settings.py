"""
Tests for GenerationSettings, BackendSettings and model validation.
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from comicforge.core.config import Config
from comicforge.core.errors import ConfigurationError
from comicforge.services.models import AspectRatio, BackendId, Job, Placement, PollState
from comicforge.services.settings import (
    PROVIDER_INFO,
    BackendSettings,
    ConcurrencyMode,
    GenerationSettings,
)


class TestGenerationSettings:
    """Tests for settings defaults."""

    def test_defaults_per_family(self):
        settings = GenerationSettings()

        replicate = settings.for_backend(BackendId.FLUX_SCHNELL)
        assert replicate.mode == ConcurrencyMode.PACED_SEQUENTIAL
        assert replicate.concurrency == 1
        assert replicate.pacing_delay == Config.REPLICATE_PACING_DELAY

        runpod = settings.for_backend(BackendId.RUNPOD_FLUX)
        assert runpod.mode == ConcurrencyMode.POOLED_PARALLEL
        assert runpod.sync_timeout == Config.RUNPOD_SYNC_TIMEOUT

        kontext = settings.for_backend(BackendId.FLUX_KONTEXT)
        assert kontext.sync_timeout is None
        assert kontext.poll_timeout == Config.KONTEXT_POLL_TIMEOUT

    def test_from_config_reads_provider(self, monkeypatch):
        monkeypatch.setattr(Config, "IMAGE_PROVIDER", "runpod-flux")
        monkeypatch.setattr(Config, "JOB_TIMEOUT", 600.0)

        settings = GenerationSettings.from_config()

        assert settings.default_backend == BackendId.RUNPOD_FLUX
        assert settings.job_timeout == 600.0

    def test_every_job_has_a_deadline_by_default(self):
        assert GenerationSettings().job_timeout == 900.0

    @pytest.mark.parametrize("timeout", [0, -1.0])
    def test_job_timeout_must_be_positive(self, timeout):
        with pytest.raises(ConfigurationError, match="job_timeout"):
            GenerationSettings(job_timeout=timeout)

    def test_from_config_rejects_unknown_provider(self, monkeypatch):
        monkeypatch.setattr(Config, "IMAGE_PROVIDER", "stable-diffusion")
        with pytest.raises(ConfigurationError):
            GenerationSettings.from_config()

    def test_missing_backend_settings(self):
        settings = GenerationSettings(backends={})
        with pytest.raises(ConfigurationError):
            settings.for_backend(BackendId.FLUX_DEV)

    @pytest.mark.parametrize("kwargs", [
        {"concurrency": 0},
        {"max_attempts": 0},
        {"pacing_delay": -1},
    ])
    def test_backend_settings_validation(self, kwargs):
        with pytest.raises(ConfigurationError):
            BackendSettings(mode=ConcurrencyMode.POOLED_PARALLEL, **kwargs)

    def test_every_backend_has_provider_info(self):
        assert set(PROVIDER_INFO) == set(BackendId)


class TestModels:
    """Tests for model invariants."""

    def test_job_requires_id_and_prompt(self):
        with pytest.raises(PydanticValidationError):
            Job(id="", prompt="p")
        with pytest.raises(PydanticValidationError):
            Job(id="j", prompt="")

    def test_job_is_frozen(self):
        job = Job(id="j", prompt="p")
        with pytest.raises(PydanticValidationError):
            job.prompt = "changed"

    def test_placement_must_fit_frame(self):
        with pytest.raises(PydanticValidationError):
            Placement(block_id="b", x=90, y=0, width=20, height=10)

    def test_backend_parse(self):
        assert BackendId.parse("flux-kontext") == BackendId.FLUX_KONTEXT
        with pytest.raises(ConfigurationError, match="flux-schnell"):
            BackendId.parse("sdxl")

    def test_aspect_ratio_dimensions(self):
        assert AspectRatio.PORTRAIT.dimensions == (768, 1344)
        assert AspectRatio.STANDARD.ratio == pytest.approx(4 / 3)

    def test_terminal_states(self):
        assert {s for s in PollState if s.is_terminal} == {
            PollState.COMPLETED, PollState.FAILED, PollState.CANCELLED, PollState.TIMED_OUT
        }
