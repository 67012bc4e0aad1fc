from __future__ import annotations

import pytest

from exampipe.config import PipelineConfig, load_config
from exampipe.errors import ConfigurationError

REQUIRED = {
    "DATABASE_URL": "postgresql://localhost/exams",
    "OPENAI_API_KEY": "sk-test",
    "FIREBASE_STORAGE_BUCKET": "exam-bucket",
    "PDF_CO_API_KEY": "pdfco-test",
}
OPTIONAL = (
    "CROPPER_BACKEND",
    "PDF_CO_BASE_URL",
    "BATCH_SIZE",
    "BATCH_OVERLAP",
    "SIDE_EFFECT_CONCURRENCY",
    "SIDE_EFFECT_DELAY",
    "LLM_MAX_ATTEMPTS",
    "RETRY_BASE_DELAY",
    "EXTRACTION_MODEL",
)


@pytest.fixture
def env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in OPTIONAL:
        monkeypatch.delenv(name, raising=False)
    for name, value in REQUIRED.items():
        monkeypatch.setenv(name, value)
    return monkeypatch


def test_defaults(env: pytest.MonkeyPatch) -> None:
    config = load_config()

    assert config.database.dsn == REQUIRED["DATABASE_URL"]
    assert config.cropper.backend == "pdfco"
    assert config.cropper.base_url == "https://api.pdf.co/v1/"
    assert config.storage.bucket_name == "exam-bucket"
    assert config.storage.folder == "figures"
    assert (config.pipeline.batch_size, config.pipeline.overlap) == (10, 0)
    assert config.model.max_attempts == config.pipeline.max_attempts == 3


def test_missing_required_variable(env: pytest.MonkeyPatch) -> None:
    env.delenv("OPENAI_API_KEY")

    with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
        load_config()


def test_overlap_must_be_smaller_than_batch(env: pytest.MonkeyPatch) -> None:
    env.setenv("BATCH_SIZE", "4")
    env.setenv("BATCH_OVERLAP", "4")

    with pytest.raises(ConfigurationError, match="overlap"):
        load_config()


def test_non_numeric_batch_size(env: pytest.MonkeyPatch) -> None:
    env.setenv("BATCH_SIZE", "ten")

    with pytest.raises(ConfigurationError, match="BATCH_SIZE"):
        load_config()


def test_local_cropper_needs_no_pdfco_key(env: pytest.MonkeyPatch) -> None:
    env.setenv("CROPPER_BACKEND", "local")
    env.delenv("PDF_CO_API_KEY")

    config = load_config()

    assert config.cropper.backend == "local"
    assert config.cropper.api_key is None


def test_unknown_cropper_backend(env: pytest.MonkeyPatch) -> None:
    env.setenv("CROPPER_BACKEND", "imagemagick")

    with pytest.raises(ConfigurationError, match="CROPPER_BACKEND"):
        load_config()


def test_pipeline_config_validates_itself() -> None:
    with pytest.raises(ConfigurationError):
        PipelineConfig(batch_size=0)
    with pytest.raises(ConfigurationError):
        PipelineConfig(side_effect_concurrency=0)
