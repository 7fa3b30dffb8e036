"""
Loads and handles config from config.yml
Any key can be overridden by an environment variable of the same name (.env is loaded first)
"""
import logging
import math
import os
from datetime import timedelta
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class ClusteringSettings(BaseModel):
    """Static clustering defaults. Per-run overrides come from the settings table."""
    model_config = ConfigDict(allow_inf_nan=False)

    similarity_threshold: float = 0.75
    coherence_threshold: float = 0.70
    time_window_hours: float = 36
    cross_topic_enabled: bool = False
    cross_topic_threshold: float = 0.90
    evidence_enabled: bool = True
    evidence_boost: float = 0.15
    evidence_min_agreement: float = 0.5
    max_items: int = 500
    digest_language: str = ""
    link_enrichment_scope: str = "summary"


class DedupSettings(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    mode: str = "semantic"  # semantic, strict
    similarity_threshold: float = 0.9
    window_days: int = 7

    @property
    def window(self) -> timedelta:
        return timedelta(days=self.window_days)


class Config(BaseModel):
    # Core
    DATABASE_PATH: str = "data/digest.db"
    DIGEST_WINDOW_MINUTES: int = 60

    # Ollama
    LLM_ENABLED: bool = True
    OLLAMA_BASE_URL: str = "http://localhost:11434"
    OLLAMA_MODEL: str = "llama3.1:8b"
    OLLAMA_EMBED_MODEL: str = "nomic-embed-text"

    clustering: ClusteringSettings = ClusteringSettings()
    dedup: DedupSettings = DedupSettings()


def _bool(value: str | bool) -> bool:
    """Convert string or bool to boolean."""
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("1", "true", "yes", "on")


def _get_config_path() -> Optional[str]:
    """Get the path to config.yml, handling different working directories."""
    if os.path.exists('resources/config.yml'):
        return 'resources/config.yml'

    project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    config_path = os.path.join(project_root, 'resources', 'config.yml')
    if os.path.exists(config_path):
        return config_path

    return None


def _setting(config: Dict[str, Any], key: str, default: Any) -> Any:
    """Environment first, then config.yml, then the default."""
    env_value = os.getenv(key)
    if env_value is not None and env_value != "":
        return env_value
    return config.get(key, default)


def _float(config: Dict[str, Any], key: str, default: float) -> float:
    """Float setting; non-finite values (nan, inf) fall back to the default."""
    value = float(_setting(config, key, default))
    if not math.isfinite(value):
        logger.warning(f"Ignoring non-finite {key}={value}, using {default}")
        return default
    return value


def _parse_clustering_settings(config: Dict[str, Any]) -> ClusteringSettings:
    d = ClusteringSettings()
    return ClusteringSettings(
        similarity_threshold=_float(config, "CLUSTER_SIMILARITY_THRESHOLD", d.similarity_threshold),
        coherence_threshold=_float(config, "CLUSTER_COHERENCE_THRESHOLD", d.coherence_threshold),
        time_window_hours=_float(config, "CLUSTER_TIME_WINDOW_HOURS", d.time_window_hours),
        cross_topic_enabled=_bool(_setting(config, "CROSS_TOPIC_CLUSTERING_ENABLED", d.cross_topic_enabled)),
        cross_topic_threshold=_float(config, "CROSS_TOPIC_SIMILARITY_THRESHOLD", d.cross_topic_threshold),
        evidence_enabled=_bool(_setting(config, "EVIDENCE_CLUSTERING_ENABLED", d.evidence_enabled)),
        evidence_boost=_float(config, "EVIDENCE_CLUSTERING_BOOST", d.evidence_boost),
        evidence_min_agreement=_float(config, "EVIDENCE_CLUSTERING_MIN_SCORE", d.evidence_min_agreement),
        max_items=int(_setting(config, "CLUSTER_MAX_ITEMS", d.max_items)),
        digest_language=str(_setting(config, "DIGEST_LANGUAGE", d.digest_language) or ""),
        link_enrichment_scope=str(_setting(config, "LINK_ENRICHMENT_SCOPE", d.link_enrichment_scope) or ""),
    )


def _parse_dedup_settings(config: Dict[str, Any]) -> DedupSettings:
    d = DedupSettings()
    return DedupSettings(
        mode=str(_setting(config, "DEDUP_MODE", d.mode)).lower(),
        similarity_threshold=_float(config, "DEDUP_SIMILARITY_THRESHOLD", d.similarity_threshold),
        window_days=int(_setting(config, "DEDUP_WINDOW_DAYS", d.window_days)),
    )


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration from config.yml with environment overrides."""
    load_dotenv()

    config_path = config_path or _get_config_path()
    config: Dict[str, Any] = {}

    if config_path:
        with open(config_path, 'r') as file:
            config = yaml.safe_load(file) or {}
    else:
        logger.warning("resources/config.yml not found, using environment and defaults")

    d = Config()
    return Config(
        DATABASE_PATH=_setting(config, "DATABASE_PATH", d.DATABASE_PATH),
        DIGEST_WINDOW_MINUTES=int(_setting(config, "DIGEST_WINDOW_MINUTES", d.DIGEST_WINDOW_MINUTES)),

        LLM_ENABLED=_bool(_setting(config, "LLM_ENABLED", d.LLM_ENABLED)),
        OLLAMA_BASE_URL=_setting(config, "OLLAMA_BASE_URL", d.OLLAMA_BASE_URL),
        OLLAMA_MODEL=_setting(config, "OLLAMA_MODEL", d.OLLAMA_MODEL),
        OLLAMA_EMBED_MODEL=_setting(config, "OLLAMA_EMBED_MODEL", d.OLLAMA_EMBED_MODEL),

        clustering=_parse_clustering_settings(config),
        dedup=_parse_dedup_settings(config),
    )
