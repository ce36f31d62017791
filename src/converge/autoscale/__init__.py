from .engine import (
    AutoscaleEngine,
    Behavior,
    Decision,
    MetricSample,
    MetricTarget,
    SampleBuffer,
    ScalingPolicy,
    ScalingRules,
    compute_desired_replicas,
    desired_from_metric,
)
from .metrics import MemoryMetricSource, MetricSource, PrometheusMetricSource

__all__ = [
    'AutoscaleEngine',
    'Behavior',
    'Decision',
    'MemoryMetricSource',
    'MetricSample',
    'MetricSource',
    'MetricTarget',
    'PrometheusMetricSource',
    'SampleBuffer',
    'ScalingPolicy',
    'ScalingRules',
    'compute_desired_replicas',
    'desired_from_metric',
]
