from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Project root: two levels up from this file (config/settings.py)
ROOT_DIR: Path = Path(__file__).resolve().parent.parent


class PreprocessorSettings(BaseSettings):
    """Canonicalisation chain applied to every face crop."""

    model_config = SettingsConfigDict(env_prefix="PREPROCESS_", extra="ignore")

    # Side length of the canonical square face
    face_size: int = Field(
        default=160,
        ge=16,
        le=1024,
        description="Side length (pixels) of the canonical square face image.",
    )
    # Light denoise before contrast work
    blur_enabled: bool = Field(default=True, description="Apply the Gaussian pre-blur stage.")
    blur_kernel: int = Field(
        default=3,
        ge=1,
        description="Gaussian pre-blur kernel size (odd).",
    )
    blur_sigma: float = Field(default=0.5, ge=0.0, description="Gaussian pre-blur sigma.")
    # Local contrast equalisation
    clahe_enabled: bool = Field(default=True, description="Apply the CLAHE stage.")
    clahe_clip_limit: float = Field(
        default=3.0,
        gt=0.0,
        description="CLAHE clip limit.",
    )
    clahe_tile_grid: int = Field(
        default=8,
        ge=1,
        description="CLAHE tile grid size (N x N).",
    )
    # Gamma correction through a lookup table
    gamma_enabled: bool = Field(default=True, description="Apply the gamma LUT stage.")
    gamma: float = Field(
        default=0.8,
        gt=0.0,
        le=5.0,
        description="Gamma exponent applied through a 256-entry lookup table.",
    )
    # Edge-preserving denoise
    bilateral_enabled: bool = Field(default=True, description="Apply the bilateral filter stage.")
    bilateral_diameter: int = Field(default=9, ge=1, description="Bilateral filter diameter.")
    bilateral_sigma_color: float = Field(default=80.0, gt=0.0, description="Bilateral colour sigma.")
    bilateral_sigma_space: float = Field(default=80.0, gt=0.0, description="Bilateral space sigma.")
    # Laplacian sharpening
    sharpen_enabled: bool = Field(default=True, description="Apply the Laplacian sharpening stage.")
    sharpen_weight: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Weight of the Laplacian added back onto the denoised image.",
    )

    @field_validator("blur_kernel")
    @classmethod
    def kernel_must_be_odd(cls, v: int) -> int:
        if v % 2 == 0:
            raise ValueError(f"blur_kernel must be odd, got {v}")
        return v


class QualitySettings(BaseSettings):
    """Face quality scoring weights and normalisers."""

    model_config = SettingsConfigDict(env_prefix="QUALITY_", extra="ignore")

    size_weight: float = Field(default=0.3, ge=0.0, le=1.0, description="Weight of the size term.")
    sharpness_weight: float = Field(
        default=0.4, ge=0.0, le=1.0, description="Weight of the sharpness term."
    )
    illumination_weight: float = Field(
        default=0.3, ge=0.0, le=1.0, description="Weight of the illumination term."
    )
    # Smallest side (px) that counts as a full-size face
    min_face_size: int = Field(
        default=80,
        ge=1,
        description="Smallest side length that earns the full size score.",
    )
    # Laplacian variance that counts as perfectly sharp
    sharpness_normaliser: float = Field(
        default=1000.0,
        gt=0.0,
        description="Laplacian variance mapped to a sharpness score of 1.0.",
    )
    illumination_mode: Literal["balanced", "inverse_mean"] = Field(
        default="balanced",
        description=(
            "'balanced' peaks at mid-grey and penalises both over- and under-exposure; "
            "'inverse_mean' scores 1 - mean/255."
        ),
    )
    # Returned when scoring is impossible
    neutral_score: float = Field(
        default=0.5, ge=0.0, le=1.0, description="Score returned for unusable input."
    )


class SpoofSettings(BaseSettings):
    """Advisory print / screen replay heuristic."""

    model_config = SettingsConfigDict(env_prefix="SPOOF_", extra="ignore")

    min_variance: float = Field(
        default=200.0,
        ge=0.0,
        description="Intensity variance below which the face looks like a flat print.",
    )
    max_edge_ratio: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Canny edge-pixel ratio above which the face looks like a screen.",
    )
    canny_low: int = Field(default=50, ge=0, le=255, description="Canny lower threshold.")
    canny_high: int = Field(default=150, ge=0, le=255, description="Canny upper threshold.")


class FeatureSettings(BaseSettings):
    """Embedding extraction settings."""

    model_config = SettingsConfigDict(env_prefix="FEATURES_", extra="ignore")

    recognition_mode: Literal["fast", "standard", "ultra_precision"] = Field(
        default="ultra_precision",
        description="Feature and fusion profile: 'fast', 'standard' or 'ultra_precision'.",
    )
    embedding_dim: int = Field(
        default=1536,
        ge=16,
        description="Length of every embedding produced under this configuration.",
    )
    histogram_bins: int = Field(
        default=256,
        ge=1,
        le=256,
        description="Number of intensity histogram buckets.",
    )
    # Standard edge grid
    edge_grid: int = Field(default=4, ge=1, description="Edge grid size (R x R) in full modes.")
    edge_canny_low: int = Field(default=50, ge=0, le=255)
    edge_canny_high: int = Field(default=150, ge=0, le=255)
    # Fast edge grid
    fast_edge_grid: int = Field(default=8, ge=1, description="Edge grid size (R x R) in fast mode.")
    fast_canny_low: int = Field(default=100, ge=0, le=255)
    fast_canny_high: int = Field(default=200, ge=0, le=255)
    # 0 = sequential sub-extractors
    parallel_workers: int = Field(
        default=0,
        ge=0,
        le=8,
        description="Thread pool size for sub-extractors. 0 runs them sequentially.",
    )


class SignatureSettings(BaseSettings):
    """Coarse 128-dim biometric signature."""

    model_config = SettingsConfigDict(env_prefix="SIGNATURE_", extra="ignore")

    grid_rows: int = Field(default=8, ge=1, description="Region grid rows.")
    grid_cols: int = Field(default=4, ge=1, description="Region grid columns.")
    direction_bins: int = Field(default=32, ge=1, description="Gradient direction histogram bins.")
    max_lag: int = Field(default=8, ge=1, description="Largest pixel lag for frequency energy.")

    @model_validator(mode="after")
    def blocks_fill_32(self) -> "SignatureSettings":
        if self.grid_rows * self.grid_cols != 32:
            raise ValueError("grid_rows * grid_cols must equal 32")
        if self.direction_bins != 32 or self.max_lag * 4 != 32:
            raise ValueError("direction_bins must be 32 and max_lag must be 8")
        return self


class SimilaritySettings(BaseSettings):
    """Fusion weights per recognition mode."""

    model_config = SettingsConfigDict(env_prefix="SIMILARITY_", extra="ignore")

    # standard: cosine / euclidean / correlation
    standard_cosine: float = Field(default=0.5, ge=0.0)
    standard_euclidean: float = Field(default=0.3, ge=0.0)
    standard_correlation: float = Field(default=0.2, ge=0.0)
    # ultra_precision: cosine / euclidean / manhattan / correlation
    ultra_cosine: float = Field(default=0.35, ge=0.0)
    ultra_euclidean: float = Field(default=0.25, ge=0.0)
    ultra_manhattan: float = Field(default=0.20, ge=0.0)
    ultra_correlation: float = Field(default=0.20, ge=0.0)
    # Quality weighting: factor = clamp(q + offset, min, max)
    quality_offset: float = Field(default=0.3)
    quality_factor_min: float = Field(default=0.5, ge=0.0)
    quality_factor_max: float = Field(default=1.2, ge=0.0)

    @model_validator(mode="after")
    def factor_range_ordered(self) -> "SimilaritySettings":
        if self.quality_factor_min > self.quality_factor_max:
            raise ValueError("quality_factor_min must not exceed quality_factor_max")
        return self


class MatcherSettings(BaseSettings):
    """Gallery scan, dynamic thresholds and adaptive statistics."""

    model_config = SettingsConfigDict(env_prefix="MATCHER_", extra="ignore")

    base_threshold: float = Field(
        default=0.90, ge=0.0, le=1.0, description="Base recognition threshold."
    )
    high_quality_threshold: float = Field(default=0.90, ge=0.0, le=1.0)
    medium_quality_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    low_quality_threshold: float = Field(default=0.80, ge=0.0, le=1.0)
    # Floors applied when strict and ultra-precision are both on
    high_quality_floor: float = Field(default=0.80, ge=0.0, le=1.0)
    medium_quality_floor: float = Field(default=0.75, ge=0.0, le=1.0)
    low_quality_floor: float = Field(default=0.70, ge=0.0, le=1.0)
    very_low_quality_floor: float = Field(default=0.75, ge=0.0, le=1.0)
    # Quality tier boundaries
    high_quality_cutoff: float = Field(default=0.8, ge=0.0, le=1.0)
    medium_quality_cutoff: float = Field(default=0.6, ge=0.0, le=1.0)
    low_quality_cutoff: float = Field(default=0.4, ge=0.0, le=1.0)

    fallback_enabled: bool = Field(
        default=True,
        description="Run a plain-cosine pass when no identity clears the dynamic threshold.",
    )
    fallback_margin: float = Field(
        default=0.10,
        ge=0.0,
        le=1.0,
        description="Fallback acceptance is base_threshold - fallback_margin.",
    )
    strict_mode: bool = Field(default=True, description="Apply low-quality / cold-start penalties.")
    biometric_analysis: bool = Field(
        default=True, description="Blend the coarse biometric signature into identity scores."
    )
    # Identity score weights
    max_weight: float = Field(default=0.4, ge=0.0)
    avg_weight: float = Field(default=0.3, ge=0.0)
    biometric_weight: float = Field(default=0.2, ge=0.0)
    geometric_weight: float = Field(default=0.1, ge=0.0)
    geometric_scale: float = Field(
        default=10.0, ge=0.0, description="Consistency = exp(-var(embedding) * scale) * quality."
    )
    # Strict-mode penalties
    low_quality_penalty: float = Field(default=0.9, ge=0.0, le=1.0)
    penalty_quality_cutoff: float = Field(default=0.6, ge=0.0, le=1.0)
    cold_start_penalty: float = Field(default=0.95, ge=0.0, le=1.0)
    cold_start_count: int = Field(default=3, ge=0)
    # Adaptive statistics
    ema_alpha: float = Field(default=0.2, gt=0.0, le=1.0, description="Weight of the newest confidence.")
    history_size: int = Field(default=10, ge=1, description="Quality scores kept per identity.")
    # Optional gates (off: the spoof check is advisory)
    reject_spoofed: bool = Field(
        default=False, description="Return Unknown when the spoof heuristic trips."
    )
    min_quality: float = Field(
        default=0.0, ge=0.0, le=1.0, description="Return Unknown below this quality. 0 disables."
    )

    @model_validator(mode="after")
    def cutoffs_ordered(self) -> "MatcherSettings":
        if not (
            self.low_quality_cutoff <= self.medium_quality_cutoff <= self.high_quality_cutoff
        ):
            raise ValueError("quality cutoffs must satisfy low <= medium <= high")
        return self


class CacheSettings(BaseSettings):
    """Bounded in-process caches."""

    model_config = SettingsConfigDict(env_prefix="CACHE_", extra="ignore")

    max_size: int = Field(
        default=1000,
        ge=0,
        description="Maximum entries per cache. 0 disables caching.",
    )


class DetectorSettings(BaseSettings):
    """Haar cascade face detector settings."""

    model_config = SettingsConfigDict(env_prefix="DETECTOR_", extra="ignore")

    cascade_name: str = Field(
        default="haarcascade_frontalface_alt.xml",
        description="Cascade file name inside cv2.data.haarcascades, or an absolute path.",
    )
    scale_factor: float = Field(default=1.05, gt=1.0)
    min_neighbors: int = Field(default=3, ge=0)
    min_size: int = Field(default=20, ge=1)
    max_size: int = Field(default=500, ge=1)
    # Relaxed second pass when the first pass finds nothing
    relaxed_pass: bool = Field(default=True)
    relaxed_scale_factor: float = Field(default=1.03, gt=1.0)
    relaxed_min_neighbors: int = Field(default=2, ge=0)
    relaxed_min_size: int = Field(default=15, ge=1)
    # Contrast enhancement before detection
    enhance: bool = Field(default=True)
    sharpen_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    max_faces: int = Field(default=20, ge=1, description="Maximum faces returned per frame.")


class GallerySettings(BaseSettings):
    """In-memory gallery store."""

    model_config = SettingsConfigDict(env_prefix="GALLERY_", extra="ignore")

    max_embeddings_per_identity: int = Field(
        default=10,
        ge=1,
        description="Oldest samples are dropped once an identity exceeds this many.",
    )
    db_path: Optional[Path] = Field(
        default=None,
        description=(
            "Pickle file read by GalleryStore.from_settings() when it exists"
            " and written by save(). None = memory only."
        ),
    )


class LoggingSettings(BaseSettings):
    """Logging settings (Loguru-based)."""

    model_config = SettingsConfigDict(env_prefix="LOG_", extra="ignore")

    level: Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Minimum log level to emit.",
    )
    # Log file path (None = stdout only)
    file_path: Optional[Path] = Field(
        default=None,
        description="Path to log file. Leave empty to log to stdout only.",
    )
    rotation: str = Field(default="10 MB", description="Loguru rotation threshold.")
    retention: str = Field(default="7 days", description="How long to retain rotated log files.")
    json_logs: bool = Field(
        default=False,
        description="Emit logs as JSON objects (for log aggregation pipelines).",
    )
    colorize: bool = Field(default=True, description="ANSI colours on the stdout sink.")


class Settings(BaseSettings):
    """
    Master settings object.

    Priority (highest → lowest):
      1. Environment variables  (e.g. MATCHER_BASE_THRESHOLD=0.88)
      2. .env file              (loaded from project root)
      3. Default values below

    Build one with ``load_settings()`` at startup and hand the sub-settings
    to the components that need them.
    """

    model_config = SettingsConfigDict(
        env_file=str(ROOT_DIR / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    app_name: str = Field(default="Biometric Matching Core", description="Application name.")
    app_version: str = Field(default="1.0.0", description="Application version string.")

    preprocessor: PreprocessorSettings = Field(default_factory=PreprocessorSettings)
    quality: QualitySettings = Field(default_factory=QualitySettings)
    spoof: SpoofSettings = Field(default_factory=SpoofSettings)
    features: FeatureSettings = Field(default_factory=FeatureSettings)
    signature: SignatureSettings = Field(default_factory=SignatureSettings)
    similarity: SimilaritySettings = Field(default_factory=SimilaritySettings)
    matcher: MatcherSettings = Field(default_factory=MatcherSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    detector: DetectorSettings = Field(default_factory=DetectorSettings)
    gallery: GallerySettings = Field(default_factory=GallerySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(**overrides) -> Settings:
    """
    Build a fresh ``Settings`` from defaults, ``.env`` and the environment.

    Keyword overrides replace whole sub-settings, e.g.
    ``load_settings(matcher=MatcherSettings(strict_mode=False))``.
    """
    return Settings(**overrides)
