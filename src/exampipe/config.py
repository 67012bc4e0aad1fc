"""Application configuration helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
import os

from dotenv import load_dotenv

from .errors import ConfigurationError, PartitionError
from .partition import validate_batching

load_dotenv()

CROPPER_BACKENDS = ("pdfco", "local")


@dataclass(slots=True)
class DatabaseConfig:
    """PostgreSQL connection settings."""

    dsn: str
    min_pool_size: int = 1
    max_pool_size: int = 10


@dataclass(slots=True)
class ModelConfig:
    """Settings for the extraction and grading model."""

    api_key: str
    model: str = "gpt-4.1-mini"
    timeout_seconds: float = 120.0
    max_attempts: int = 3
    base_delay: float = 1.0


@dataclass(slots=True)
class CropperConfig:
    """Which figure cropping backend to use and how to reach it."""

    backend: str = "pdfco"
    api_key: str | None = None
    base_url: str = "https://api.pdf.co/v1/"
    padding_points: float = 10.0


@dataclass(slots=True)
class StorageConfig:
    """Blob storage bucket holding cropped figures."""

    bucket_name: str
    folder: str = "figures"


@dataclass(slots=True)
class PipelineConfig:
    """Batching and pacing for a single analysis run."""

    batch_size: int = 10
    overlap: int = 0
    side_effect_concurrency: int = 1
    side_effect_delay: float = 1.0
    max_attempts: int = 3
    base_delay: float = 1.0
    http_timeout_seconds: float = 60.0

    def __post_init__(self) -> None:
        try:
            validate_batching(self.batch_size, self.overlap)
        except PartitionError as exc:
            raise ConfigurationError(str(exc)) from exc
        if self.side_effect_concurrency < 1:
            raise ConfigurationError("SIDE_EFFECT_CONCURRENCY must be at least 1.")
        if self.max_attempts < 1:
            raise ConfigurationError("Retry attempts must be at least 1.")


@dataclass(slots=True)
class AppConfig:
    """Container for all runtime configuration."""

    database: DatabaseConfig
    model: ModelConfig
    cropper: CropperConfig
    storage: StorageConfig
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)


def load_config() -> AppConfig:
    """Load configuration from environment variables.

    Returns:
        AppConfig: Fully populated configuration object.

    Raises:
        ConfigurationError: If required environment variables are not set
            or hold values that cannot be used.
    """

    dsn = _require_env("DATABASE_URL")
    api_key = _require_env("OPENAI_API_KEY")
    bucket = _require_env("FIREBASE_STORAGE_BUCKET")

    backend = os.getenv("CROPPER_BACKEND", "pdfco").strip().lower()
    if backend not in CROPPER_BACKENDS:
        raise ConfigurationError(
            f"CROPPER_BACKEND must be one of {', '.join(CROPPER_BACKENDS)}; got {backend!r}.",
        )
    pdfco_key = _require_env("PDF_CO_API_KEY") if backend == "pdfco" else os.getenv("PDF_CO_API_KEY")
    pdfco_url = os.getenv("PDF_CO_BASE_URL", "https://api.pdf.co/v1/").rstrip("/") + "/"

    max_attempts = _int_env("LLM_MAX_ATTEMPTS", 3)
    base_delay = _float_env("RETRY_BASE_DELAY", 1.0)

    return AppConfig(
        database=DatabaseConfig(dsn=dsn),
        model=ModelConfig(
            api_key=api_key,
            model=os.getenv("EXTRACTION_MODEL", "gpt-4.1-mini"),
            timeout_seconds=_float_env("OPENAI_TIMEOUT_SECONDS", 120.0),
            max_attempts=max_attempts,
            base_delay=base_delay,
        ),
        cropper=CropperConfig(
            backend=backend,
            api_key=pdfco_key,
            base_url=pdfco_url,
            padding_points=_float_env("CROP_PADDING_POINTS", 10.0),
        ),
        storage=StorageConfig(bucket_name=bucket),
        pipeline=PipelineConfig(
            batch_size=_int_env("BATCH_SIZE", 10),
            overlap=_int_env("BATCH_OVERLAP", 0),
            side_effect_concurrency=_int_env("SIDE_EFFECT_CONCURRENCY", 1),
            side_effect_delay=_float_env("SIDE_EFFECT_DELAY", 1.0),
            max_attempts=max_attempts,
            base_delay=base_delay,
            http_timeout_seconds=_float_env("HTTP_TIMEOUT_SECONDS", 60.0),
        ),
    )


def _require_env(var_name: str) -> str:
    """Fetch a variable from the environment or raise an error."""

    try:
        value = os.environ[var_name]
    except KeyError as exc:
        raise ConfigurationError(f"Environment variable {var_name} is required.") from exc
    if not value.strip():
        raise ConfigurationError(f"Environment variable {var_name} must not be empty.")
    return value


def _int_env(var_name: str, default: int) -> int:
    raw = os.getenv(var_name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{var_name} must be an integer value.") from exc


def _float_env(var_name: str, default: float) -> float:
    raw = os.getenv(var_name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{var_name} must be a float value.") from exc
