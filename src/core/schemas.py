"""
Pydantic schemas shared across the clustering engine
"""
from pydantic import BaseModel, ConfigDict, Field


class ClusteringConfig(BaseModel):
    """
    Run-scoped snapshot of clustering thresholds.
    Built once per run and passed explicitly; never mutated afterwards.
    """
    model_config = ConfigDict(frozen=True)

    similarity_threshold: float = 0.75
    cross_topic_enabled: bool = False
    cross_topic_threshold: float = 0.90
    coherence_threshold: float = 0.70
    cluster_window_hours: float = 0.0
    digest_language: str = ""
    evidence_enabled: bool = True
    evidence_boost: float = Field(0.15, ge=0.0)
    evidence_min_agreement: float = Field(0.5, ge=0.0, le=1.0)
