"""
Replica count decisions from metric samples.

Every metric proposes `ceil(current * value / target)` and the largest
proposal wins. The proposal is then stabilized: scale ups use the lowest
and scale downs the highest recommendation seen over the direction's
stabilization window, so a short dip never removes replicas that a spike
just added. Finally the scaling policies limit how far the count may move
within a policy period, measured from the count at the start of that period.
"""

import collections
import dataclasses
import logging
import math
from typing import List

from kubernetes.utils.quantity import parse_quantity

from ..clock import Clock
from ..exceptions import ValidationError


log = logging.getLogger(__name__)


UTILIZATION = 'Utilization'
AVERAGE_VALUE = 'AverageValue'

POLICY_TYPES = ('Pods', 'Percent')
SELECT_POLICIES = ('Max', 'Min', 'Disabled')


@dataclasses.dataclass
class MetricSample:
    resource_key: str
    metric_name: str
    value: float
    timestamp: float


def _quantity(value, field):
    try:
        return float(parse_quantity(value))
    except (TypeError, ValueError, ArithmeticError):
        raise ValidationError(f'{field}: invalid quantity {value!r}') from None


@dataclasses.dataclass
class MetricTarget:
    """Desired per replica average of one metric.

    `Utilization` targets are percentages and expect samples in percent of
    the requested resource. `AverageValue` targets are plain quantities
    (`0.5`, `500m`, `256Mi`) compared with the raw samples.
    """

    name: str
    target: float
    type: str = AVERAGE_VALUE

    def __post_init__(self):
        if self.type not in (UTILIZATION, AVERAGE_VALUE):
            raise ValidationError(f'metric {self.name}: unknown target type {self.type!r}')
        if not self.target or self.target <= 0:
            raise ValidationError(f'metric {self.name}: target must be positive')

    @classmethod
    def from_dict(cls, data):
        """Parse `{name, target}` where target is a quantity or a
        `{type, averageUtilization|averageValue}` mapping. The
        HorizontalPodAutoscaler form `{type: Resource, resource: {...}}` is
        accepted too."""
        if not isinstance(data, dict):
            raise ValidationError(f'invalid metric {data!r}')
        if isinstance(data.get('resource'), dict):
            data = data['resource']
        name = data.get('name')
        if not name or 'target' not in data:
            raise ValidationError(f'invalid metric {data!r}: expected name and target')
        target = data['target']
        if not isinstance(target, dict):
            return cls(name, _quantity(target, f'metric {name}'))
        match target.get('type', AVERAGE_VALUE):
            case 'Utilization':
                value = target.get('averageUtilization')
                if isinstance(value, bool) or not isinstance(value, int):
                    raise ValidationError(
                        f'metric {name}: averageUtilization must be an integer, got {value!r}'
                    )
                return cls(name, float(value), UTILIZATION)
            case 'AverageValue':
                return cls(name, _quantity(target.get('averageValue'), f'metric {name}'))
            case other:
                raise ValidationError(f'metric {name}: unknown target type {other!r}')


@dataclasses.dataclass
class ScalingPolicy:
    type: str
    value: int
    period: float = 15

    def __post_init__(self):
        if self.type not in POLICY_TYPES:
            raise ValidationError(f'policy type must be one of {POLICY_TYPES}, got {self.type!r}')
        if isinstance(self.value, bool) or not isinstance(self.value, int) or self.value <= 0:
            raise ValidationError(f'policy value must be a positive integer, got {self.value!r}')
        if isinstance(self.period, bool) or not isinstance(self.period, (int, float)) or self.period <= 0:
            raise ValidationError(f'policy periodSeconds must be positive, got {self.period!r}')

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise ValidationError(f'invalid policy {data!r}')
        return cls(data.get('type'), data.get('value'), data.get('periodSeconds', 15))


@dataclasses.dataclass
class ScalingRules:
    """Stabilization and rate limits for one direction."""

    stabilization_window: float = 0
    policies: List[ScalingPolicy] = dataclasses.field(default_factory=list)
    select_policy: str = 'Max'

    def __post_init__(self):
        if self.stabilization_window < 0:
            raise ValidationError('stabilizationWindowSeconds must not be negative')
        if self.select_policy not in SELECT_POLICIES:
            raise ValidationError(
                f'selectPolicy must be one of {SELECT_POLICIES}, got {self.select_policy!r}'
            )

    @property
    def period(self):
        return max((p.period for p in self.policies), default=0)

    def merged(self, data):
        """These rules with the fields given in a `scaleUp`/`scaleDown` block."""
        if data is None:
            return self
        if not isinstance(data, dict):
            raise ValidationError(f'invalid scaling rules {data!r}')
        window = data.get('stabilizationWindowSeconds', self.stabilization_window)
        if isinstance(window, bool) or not isinstance(window, (int, float)):
            raise ValidationError(f'stabilizationWindowSeconds: expected seconds, got {window!r}')
        policies = self.policies
        if 'policies' in data:
            if not isinstance(data['policies'], list):
                raise ValidationError('policies: expected a list')
            policies = [ScalingPolicy.from_dict(p) for p in data['policies']]
        return ScalingRules(window, policies, data.get('selectPolicy', self.select_policy))


def _default_scale_up():
    return ScalingRules(
        0, [ScalingPolicy('Percent', 100), ScalingPolicy('Pods', 4)], 'Max'
    )


def _default_scale_down():
    return ScalingRules(5 * 60, [ScalingPolicy('Percent', 100)], 'Max')


@dataclasses.dataclass
class Behavior:
    scale_up: ScalingRules = dataclasses.field(default_factory=_default_scale_up)
    scale_down: ScalingRules = dataclasses.field(default_factory=_default_scale_down)
    tolerance: float = 0.1
    missing_window: float = 5 * 60

    @classmethod
    def from_settings(cls, settings):
        period = settings.scaling_period
        return cls(
            scale_up=ScalingRules(
                settings.scale_up_window,
                [
                    ScalingPolicy('Percent', settings.scale_up_percent, period),
                    ScalingPolicy('Pods', settings.scale_up_pods, period),
                ],
            ),
            scale_down=ScalingRules(
                settings.stabilization_window,
                [ScalingPolicy('Percent', settings.scale_down_percent, period)],
            ),
            tolerance=settings.tolerance,
            missing_window=settings.metrics_missing_window,
        )

    def merged(self, data):
        """This behavior overridden by an Autoscaler's `spec.behavior`."""
        if not data:
            return self
        if not isinstance(data, dict):
            raise ValidationError(f'behavior: expected a mapping, got {data!r}')
        return dataclasses.replace(
            self,
            scale_up=self.scale_up.merged(data.get('scaleUp')),
            scale_down=self.scale_down.merged(data.get('scaleDown')),
        )

    @property
    def horizon(self):
        return max(self.scale_up.stabilization_window, self.scale_down.stabilization_window)


@dataclasses.dataclass
class Decision:
    desired: int
    degraded: bool = False
    reason: str = ''
    message: str = ''


class SampleBuffer:
    """Ring buffer of samples per (resource, metric)."""

    def __init__(self, maxlen=128):
        self.maxlen = maxlen
        self._buffers = collections.defaultdict(
            lambda: collections.deque(maxlen=self.maxlen)
        )

    def add(self, sample):
        self._buffers[(sample.resource_key, sample.metric_name)].append(sample)

    def extend(self, samples):
        for sample in samples:
            self.add(sample)

    def samples(self, resource_key, metric_name, since=None):
        buffer = self._buffers.get((resource_key, metric_name), ())
        return [s for s in buffer if since is None or s.timestamp >= since]

    def latest(self, resource_key, metric_name, since=None):
        samples = self.samples(resource_key, metric_name, since)
        if not samples:
            return None
        return max(samples, key=lambda s: s.timestamp)

    def forget(self, resource_key):
        for key in [k for k in self._buffers if k[0] == resource_key]:
            del self._buffers[key]


def desired_from_metric(current, value, target, tolerance=0.1):
    ratio = value / target
    if abs(ratio - 1.0) <= tolerance:
        return current
    return math.ceil(current * ratio)


def compute_desired_replicas(current, samples, targets, tolerance=0.1):
    """The raw proposal for `current` replicas, before any smoothing.

    `samples` are the latest sample per metric, `targets` the
    `MetricTarget`s. Returns `(desired, missing)` where `missing` names the
    metrics without a sample and `desired` is None if no metric had one.
    """
    latest = {}
    for sample in samples:
        seen = latest.get(sample.metric_name)
        if seen is None or sample.timestamp >= seen.timestamp:
            latest[sample.metric_name] = sample
    proposals = []
    missing = []
    for target in targets:
        sample = latest.get(target.name)
        if sample is None:
            missing.append(target.name)
            continue
        proposals.append(desired_from_metric(current, sample.value, target.target, tolerance))
    if not proposals:
        return None, missing
    return max(proposals), missing


def _select(limits, select_policy, prefer_high):
    if not limits:
        return None
    if (select_policy == 'Max') == prefer_high:
        return max(limits)
    return min(limits)


class AutoscaleEngine:
    """Stateful decisions for any number of scaled resources.

    Keeps the recommendation history of each resource for the
    stabilization windows, its recent scale events for the policy periods
    and the time since metrics went missing.
    """

    def __init__(self, behavior=None, clock=None):
        self.behavior = behavior or Behavior()
        self.clock = clock or Clock()
        self._recommendations = collections.defaultdict(collections.deque)
        self._events = collections.defaultdict(collections.deque)
        self._missing_since = {}

    def __repr__(self):
        return f'<AutoscaleEngine tracking: {len(self._recommendations)}>'

    def _record(self, key, now, recommendation, behavior):
        history = self._recommendations[key]
        history.append((now, recommendation))
        while history and history[0][0] < now - behavior.horizon:
            history.popleft()

    def _record_event(self, key, now, change, behavior):
        events = self._events[key]
        events.append((now, change))
        horizon = max(behavior.scale_up.period, behavior.scale_down.period)
        while events and events[0][0] <= now - horizon:
            events.popleft()

    def _changed_since(self, key, since, sign):
        return sum(
            abs(change)
            for t, change in self._events.get(key, ())
            if t > since and change * sign > 0
        )

    def _stabilize(self, key, now, current, raw, behavior):
        up = down = raw
        for t, recommendation in self._recommendations[key]:
            if t > now - behavior.scale_up.stabilization_window:
                up = min(up, recommendation)
            if t > now - behavior.scale_down.stabilization_window:
                down = max(down, recommendation)
        return min(max(current, up), down)

    def _scale_up_limit(self, key, now, current, rules):
        if rules.select_policy == 'Disabled':
            return current
        limits = []
        for policy in rules.policies:
            start = current - self._changed_since(key, now - policy.period, 1)
            if policy.type == 'Pods':
                limits.append(start + policy.value)
            else:
                limits.append(math.ceil(start * (1 + policy.value / 100)))
        return _select(limits, rules.select_policy, prefer_high=True)

    def _scale_down_limit(self, key, now, current, rules):
        if rules.select_policy == 'Disabled':
            return current
        limits = []
        for policy in rules.policies:
            start = current + self._changed_since(key, now - policy.period, -1)
            if policy.type == 'Pods':
                limits.append(start - policy.value)
            else:
                limits.append(math.floor(start * (1 - policy.value / 100)))
        return _select(limits, rules.select_policy, prefer_high=False)

    def _degraded(self, key, now, missing, behavior):
        if not missing:
            self._missing_since.pop(key, None)
            return False
        since = self._missing_since.setdefault(key, now)
        return now - since >= behavior.missing_window

    def forget(self, key):
        self._recommendations.pop(key, None)
        self._events.pop(key, None)
        self._missing_since.pop(key, None)

    def decide(self, key, current, samples, targets, min_replicas, max_replicas, behavior=None):
        behavior = behavior or self.behavior
        now = self.clock.now()

        def clamp(value):
            return max(min_replicas, min(max_replicas, value))

        if current == 0:
            return Decision(clamp(min_replicas), reason='ScaledFromZero')

        raw, missing = compute_desired_replicas(current, samples, targets, behavior.tolerance)
        degraded = self._degraded(key, now, missing, behavior)

        if raw is None:
            log.warning('%s: no metrics available, keeping %d replicas', key, current)
            return Decision(
                clamp(current),
                degraded=degraded,
                reason='MetricsMissing',
                message=f'no samples for {", ".join(missing)}',
            )

        if missing and raw < current:
            # Never scale down on partial data.
            raw = current
        self._record(key, now, raw, behavior)

        desired = self._stabilize(key, now, current, raw, behavior)
        reason = 'DesiredWithinRange'
        if desired != raw:
            reason = 'ScaleDownStabilized' if raw < current else 'ScaleUpStabilized'

        if desired > current:
            limit = self._scale_up_limit(key, now, current, behavior.scale_up)
            if limit is not None and desired > limit:
                desired = max(limit, current)
                reason = 'ScaleUpLimited'
        elif desired < current:
            limit = self._scale_down_limit(key, now, current, behavior.scale_down)
            if limit is not None and desired < limit:
                desired = min(limit, current)
                reason = 'ScaleDownLimited'

        clamped = clamp(desired)
        if clamped != desired:
            reason = 'TooFewReplicas' if clamped > desired else 'TooManyReplicas'
        if missing:
            reason = 'MetricsMissing'
        if clamped != current:
            self._record_event(key, now, clamped - current, behavior)
        log.debug(
            '%s: current: %d raw: %d desired: %d (%s)', key, current, raw, clamped, reason
        )
        return Decision(
            clamped,
            degraded=degraded,
            reason=reason,
            message=f'no samples for {", ".join(missing)}' if missing else '',
        )
