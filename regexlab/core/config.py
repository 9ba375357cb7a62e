"""
regexlab/core/config.py: typed configuration loader for regexlab.

Loads ``config/regexlab.yaml`` and validates all values into frozen
dataclasses. Downstream modules take these objects; never read YAML directly.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from regexlab.core.constants import C, ModelVariant

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Dataclass hierarchy: mirrors regexlab.yaml
# ──────────────────────────────────────────────


@dataclass(frozen=True)
class EngineConfig:
    """Inference engine lifecycle configuration."""

    primary_model_id: str = C.PRIMARY_MODEL_ID
    fallback_model_id: str = C.FALLBACK_MODEL_ID
    cache_dir: Optional[str] = None
    device_map: str = "cuda"
    max_retries: int = C.MAX_RETRIES
    base_retry_delay_s: float = C.BASE_RETRY_DELAY_S

    def model_id_for(self, variant: ModelVariant) -> str:
        """Return the configured model id for *variant*."""
        if variant is ModelVariant.FALLBACK:
            return self.fallback_model_id
        return self.primary_model_id

    @property
    def resolved_cache_dir(self) -> Optional[Path]:
        """Return the cache directory as an absolute Path, or ``None`` for the HF default."""
        if self.cache_dir is None:
            return None
        return Path(os.path.expanduser(self.cache_dir))


@dataclass(frozen=True)
class TranslatorConfig:
    """Description-to-regex request parameters."""

    max_new_tokens: int = C.TRANSLATE_MAX_TOKENS
    temperature: float = C.TRANSLATE_TEMPERATURE
    ready_timeout_s: float = 300.0


@dataclass(frozen=True)
class PipelineConfig:
    """Workbench recomputation tuning."""

    recompute_debounce_ms: int = 0


@dataclass(frozen=True)
class StorageConfig:
    """Key-value store location."""

    path: str = "~/.regexlab/store.json"

    @property
    def resolved_path(self) -> Path:
        return Path(os.path.expanduser(self.path))


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""

    level: str = "WARNING"


@dataclass(frozen=True)
class RegexLabConfig:
    """Root configuration object."""

    engine: EngineConfig = field(default_factory=EngineConfig)
    translator: TranslatorConfig = field(default_factory=TranslatorConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# ──────────────────────────────────────────────
# Loader
# ──────────────────────────────────────────────


def load_config(config_path: Path | str | None = None) -> RegexLabConfig:
    """
    Load, validate, and return a :class:`RegexLabConfig` from a YAML file.

    The search order for the config file is:
    1. *config_path* argument (if provided)
    2. ``REGEXLAB_CONFIG`` environment variable
    3. ``config/regexlab.yaml`` in the current directory or the project root
    4. Built-in defaults (no file required)

    Args:
        config_path: Optional path to a ``regexlab.yaml`` file.

    Returns:
        A fully populated and frozen :class:`RegexLabConfig` instance.

    Raises:
        ValueError: If a YAML field has an invalid type or value.
        FileNotFoundError: If *config_path* is explicitly given but does not exist.
    """
    resolved_path: Path | None = None

    if config_path is not None:
        resolved_path = Path(config_path)
        if not resolved_path.exists():
            raise FileNotFoundError(f"Config file not found: {resolved_path}")
    elif "REGEXLAB_CONFIG" in os.environ:
        resolved_path = Path(os.environ["REGEXLAB_CONFIG"])
        if not resolved_path.exists():
            raise FileNotFoundError(
                f"REGEXLAB_CONFIG points to missing file: {resolved_path}"
            )
    else:
        here = Path(__file__).resolve()
        for parent in [Path.cwd(), here.parent.parent.parent]:
            candidate = parent / "config" / "regexlab.yaml"
            if candidate.exists():
                resolved_path = candidate
                break

    raw: dict = {}
    if resolved_path is not None:
        logger.info("Loading config from: %s", resolved_path)
        with resolved_path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file must be a YAML mapping, got: {type(loaded)}")
        raw = loaded
    else:
        logger.info("No config file found, using built-in defaults")

    try:
        engine_cfg = EngineConfig(**raw.get("engine", {}))
        translator_cfg = TranslatorConfig(**raw.get("translator", {}))
        pipeline_cfg = PipelineConfig(**raw.get("pipeline", {}))
        storage_cfg = StorageConfig(**raw.get("storage", {}))
        log_cfg = LoggingConfig(**raw.get("logging", {}))
    except TypeError as exc:
        raise ValueError(f"Invalid config value: {exc}") from exc

    _validate_config(engine_cfg, translator_cfg, pipeline_cfg, log_cfg)

    config = RegexLabConfig(
        engine=engine_cfg,
        translator=translator_cfg,
        pipeline=pipeline_cfg,
        storage=storage_cfg,
        logging=log_cfg,
    )
    logger.debug("Config loaded: %s", config)
    return config


def _validate_config(
    engine: EngineConfig,
    translator: TranslatorConfig,
    pipeline: PipelineConfig,
    log_cfg: LoggingConfig,
) -> None:
    """
    Validate range constraints on the loaded configuration.

    Raises:
        ValueError: If any configured value violates a hard constraint.
    """
    if engine.max_retries < 0:
        raise ValueError(f"engine.max_retries must be >= 0, got {engine.max_retries}")
    if engine.base_retry_delay_s < 0:
        raise ValueError(
            f"engine.base_retry_delay_s must be >= 0, got {engine.base_retry_delay_s}"
        )
    if not engine.primary_model_id or not engine.fallback_model_id:
        raise ValueError("engine.primary_model_id and engine.fallback_model_id are required")
    if not (0 < translator.max_new_tokens <= 512):
        raise ValueError(
            f"translator.max_new_tokens must be in (0, 512], got {translator.max_new_tokens}"
        )
    if translator.temperature < 0:
        raise ValueError(f"translator.temperature must be >= 0, got {translator.temperature}")
    if pipeline.recompute_debounce_ms < 0:
        raise ValueError(
            f"pipeline.recompute_debounce_ms must be >= 0, got {pipeline.recompute_debounce_ms}"
        )
    if log_cfg.level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ValueError(f"logging.level is not a logging level name: {log_cfg.level!r}")
