"""Configuration module for the Loopia pipeline.

Every tunable constant of loop generation lives here. None of them are load
bearing invariants: step count, blend window and inference size only trade
quality against processing time.
"""
import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".loopia"
DEFAULT_CONFIG_PATH = DEFAULT_HOME / "config.json"
ENV_PREFIX = "LOOPIA_"

DEFAULT_MODEL_ID = "rife"
DEFAULT_MODEL_VERSION = "4.6"
DEFAULT_MODEL_URL = "https://huggingface.co/nickmuchi/rife-onnx/resolve/main/rife_v4.6.onnx"

FALLBACK_FILTERS = ("xfade", "minterpolate")
X264_PRESETS = (
    "ultrafast", "superfast", "veryfast", "faster", "fast",
    "medium", "slow", "slower", "veryslow",
)


@dataclass
class LoopConfig:
    """Configuration for loop generation.

    Attributes:
        ffmpeg_path: Explicit ffmpeg binary (None = search PATH)
        ffprobe_path: Explicit ffprobe binary (None = search PATH)
        scratch_dir: Parent directory for scratch storage (None = system temp)
        model_dir: Persistent model cache directory
        model_id: Identifier of the interpolation model
        model_version: Version of the model weights (part of the cache key)
        model_url: Download URL for the ONNX weights
        model_sha256: Optional checksum verified after download

        # AI bridge
        ai_enabled: Allow the AI interpolation path at all
        allow_cpu_inference: Treat CPU-only inference as an available AI backend
        interpolation_steps: Frames generated between last and first frame
        max_inference_edge: Long-edge bound of the inference resolution
        frame_alignment: Model input dimensions must be multiples of this
        edge_epsilon: Offset from clip boundaries when grabbing frames
        bridge_duration: Target length of the AI bridge in seconds
        min_bridge_fps: Floor for the bridge input frame rate

        # Fallback bridge
        blend_seconds: Maximum crossfade window length
        blend_fraction: Window cap as a fraction of source duration
        fallback_filter: Native filter used for the fallback bridge
        minterpolate_fps: Frame rate for the minterpolate filter

        # Encoding
        crf: x264 CRF when no compression is needed
        compressed_crf: x264 CRF when compression is needed
        preset: x264 preset for every re-encode
        size_ceiling_mb: Projected output size that triggers compression
        duration_threshold_minutes: Target length that triggers compression

        # Downloads
        download_retries: Attempts before a model download is given up
        download_retry_delay: Base delay between download attempts
    """

    ffmpeg_path: Optional[str] = None
    ffprobe_path: Optional[str] = None
    scratch_dir: Optional[Path] = None
    model_dir: Path = DEFAULT_HOME / "models"
    model_id: str = DEFAULT_MODEL_ID
    model_version: str = DEFAULT_MODEL_VERSION
    model_url: str = DEFAULT_MODEL_URL
    model_sha256: Optional[str] = None

    ai_enabled: bool = True
    allow_cpu_inference: bool = False
    interpolation_steps: int = 8
    max_inference_edge: int = 512
    frame_alignment: int = 32
    edge_epsilon: float = 0.05
    bridge_duration: float = 0.5
    min_bridge_fps: float = 10.0

    blend_seconds: float = 0.5
    blend_fraction: float = 0.15
    fallback_filter: str = "xfade"
    minterpolate_fps: int = 30

    crf: int = 23
    compressed_crf: int = 28
    preset: str = "fast"
    size_ceiling_mb: float = 2000.0
    duration_threshold_minutes: float = 30.0

    download_retries: int = 3
    download_retry_delay: float = 2.0

    def __post_init__(self) -> None:
        """Normalize paths and validate configuration."""
        if self.scratch_dir is not None and not isinstance(self.scratch_dir, Path):
            self.scratch_dir = Path(self.scratch_dir).expanduser()
        if not isinstance(self.model_dir, Path):
            self.model_dir = Path(self.model_dir).expanduser()

        if self.interpolation_steps < 1:
            raise ValueError("interpolation_steps must be at least 1")
        if self.max_inference_edge < self.frame_alignment:
            raise ValueError("max_inference_edge must be at least frame_alignment")
        if self.frame_alignment < 1:
            raise ValueError("frame_alignment must be positive")
        if self.edge_epsilon < 0:
            raise ValueError("edge_epsilon must not be negative")
        if self.bridge_duration <= 0:
            raise ValueError("bridge_duration must be positive")
        if self.min_bridge_fps <= 0:
            raise ValueError("min_bridge_fps must be positive")
        if self.blend_seconds <= 0:
            raise ValueError("blend_seconds must be positive")
        if not 0.0 < self.blend_fraction <= 0.5:
            raise ValueError("blend_fraction must be in (0, 0.5]")
        if self.fallback_filter not in FALLBACK_FILTERS:
            raise ValueError(
                f"fallback_filter must be one of {FALLBACK_FILTERS}, got '{self.fallback_filter}'"
            )
        for key in ("crf", "compressed_crf"):
            if not 0 <= getattr(self, key) <= 51:
                raise ValueError(f"{key} must be between 0 and 51")
        if self.preset not in X264_PRESETS:
            raise ValueError(f"preset must be one of {X264_PRESETS}")
        if self.size_ceiling_mb <= 0:
            raise ValueError("size_ceiling_mb must be positive")
        if self.duration_threshold_minutes <= 0:
            raise ValueError("duration_threshold_minutes must be positive")
        if self.download_retries < 1:
            raise ValueError("download_retries must be at least 1")

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a JSON-serializable dictionary."""
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Path):
                data[key] = str(value)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoopConfig":
        """Create configuration from a dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**{k: v for k, v in data.items() if k in known})

    def save(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2) + "\n")
        return path


def _coerce_env_value(raw: str, template: Any) -> Any:
    """Convert an environment string to the type of the default value."""
    if isinstance(template, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(template, int):
        return int(raw)
    if isinstance(template, float):
        return float(raw)
    return raw


def load_config(path: Optional[Union[str, Path]] = None) -> LoopConfig:
    """Build configuration with priority: env vars > config file > defaults.

    Args:
        path: Explicit JSON config file. When omitted, ~/.loopia/config.json
            is used if it exists.

    Raises:
        ValueError: If a value is invalid or the explicit file cannot be parsed
        FileNotFoundError: If an explicit path does not exist
    """
    data: Dict[str, Any] = {}

    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if config_path.exists():
        try:
            data.update(json.loads(config_path.read_text()))
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid config file {config_path}: {e}") from e
        logger.debug(f"Loaded configuration from {config_path}")
    elif path:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    defaults = LoopConfig()
    for f in fields(LoopConfig):
        env_name = f"{ENV_PREFIX}{f.name.upper()}"
        if env_name in os.environ:
            data[f.name] = _coerce_env_value(os.environ[env_name], getattr(defaults, f.name))

    return LoopConfig.from_dict(data)
