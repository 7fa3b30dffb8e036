"""
Workflows module - Clustering and dedup orchestration for digest generation.
"""
from workflows.clustering import ClusterPipeline
from workflows.dedup_gate import DedupGate, DedupGateResult

__all__ = [
    "ClusterPipeline",
    "DedupGate",
    "DedupGateResult",
]
