import copy
import logging

from ..actions import Update
from ..autoscale import AutoscaleEngine, Behavior, MemoryMetricSource, MetricTarget, SampleBuffer
from ..clock import Clock, format_time, parse_time
from ..controller import Reconciler, Result, status_update
from ..exceptions import MetricsUnavailable, NotFoundError, ValidationError
from ..resources import conditions
from ..tasks import nonblocking


log = logging.getLogger(__name__)


SCALABLE_KINDS = ('ReplicaGroup', 'OrderedSet')


class AutoscalerReconciler(Reconciler):
    """Sets `spec.replicas` of a workload from metric samples.

    Spec:

        scaleTargetRef: {kind: ReplicaGroup, name: web}
        minReplicas: int (default 1)
        maxReplicas: int
        metrics:
          - name: cpu
            target: 0.5   # desired average value per replica
          - name: memory
            target: {type: AverageValue, averageValue: 256Mi}
          - name: cpu
            target: {type: Utilization, averageUtilization: 50}
        behavior:         # optional, per direction
          scaleDown:
            stabilizationWindowSeconds: 300
            policies: [{type: Percent, value: 100, periodSeconds: 15}]
            selectPolicy: Max

    Evaluates once per evaluation period, tracked in
    `status.lastEvaluationTime`. Samples taken before the last scale are
    ignored, they describe a replica count that no longer exists.
    """

    kind = 'Autoscaler'
    reads = SCALABLE_KINDS

    def __init__(
        self,
        metrics=None,
        behavior=None,
        clock=None,
        evaluation_period=15,
        sample_window=60,
    ):
        self.clock = clock or Clock()
        self.metrics = metrics or MemoryMetricSource(clock=self.clock)
        self.engine = AutoscaleEngine(behavior or Behavior(), clock=self.clock)
        self.samples = SampleBuffer()
        self.evaluation_period = evaluation_period
        self.sample_window = sample_window
        # Autoscaler -> target, to drop the samples of deleted autoscalers.
        self._targets = {}

    @nonblocking
    def validate(self, obj):
        spec = obj.spec
        ref = spec.get('scaleTargetRef')
        if not isinstance(ref, dict) or not ref.get('name'):
            raise ValidationError('scaleTargetRef: expected {kind, name}')
        if ref.get('kind') not in SCALABLE_KINDS:
            raise ValidationError(f'scaleTargetRef: can not scale {ref.get("kind")!r}')
        min_replicas = spec.get('minReplicas', 1)
        max_replicas = spec.get('maxReplicas')
        for field, value in (('minReplicas', min_replicas), ('maxReplicas', max_replicas)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f'{field}: expected a non negative integer, got {value!r}')
        if max_replicas < min_replicas or max_replicas == 0:
            raise ValidationError('maxReplicas must be positive and not below minReplicas')
        metrics = spec.get('metrics')
        if not isinstance(metrics, list) or not metrics:
            raise ValidationError('metrics: expected a non empty list')
        self.targets(obj)
        self.behavior(obj)

    def targets(self, obj):
        return [MetricTarget.from_dict(metric) for metric in obj.spec['metrics']]

    def behavior(self, obj):
        return self.engine.behavior.merged(obj.spec.get('behavior'))

    def _until_next_evaluation(self, obj, now):
        """Seconds left in the current evaluation period, 0 if it is over."""
        status = obj.status
        last = parse_time(status.get('lastEvaluationTime'))
        if last is None or status.get('observedGeneration') != obj.generation:
            return 0
        return max(last + self.evaluation_period - now, 0)

    async def observe(self, target_key, targets, since):
        """Fetch fresh samples and return the latest one per metric."""
        latest = []
        for target in targets:
            try:
                samples = await self.metrics.query(target_key, target.name, self.sample_window)
            except MetricsUnavailable as e:
                log.warning('%s: %r', target_key, e)
                samples = []
            self.samples.extend(samples)
            sample = self.samples.latest(str(target_key), target.name, since=since)
            if sample is not None:
                latest.append(sample)
        return latest

    async def plan(self, obj, view):
        spec = obj.spec
        now = self.clock.now()
        remaining = self._until_next_evaluation(obj, now)
        if remaining > 0:
            return [], Result(requeue_after=remaining)

        status = copy.deepcopy(obj.status)
        ref = spec['scaleTargetRef']
        result = Result(requeue_after=self.evaluation_period)
        conditions.set_condition(status, conditions.VALID, True, 'Valid', now=now)

        try:
            target = view.get(ref['kind'], obj.namespace, ref['name'])
        except NotFoundError:
            conditions.set_condition(
                status,
                conditions.ABLE_TO_SCALE,
                False,
                'FailedGetScale',
                f'{ref["kind"]} {ref["name"]} not found',
                now=now,
            )
            return status_update(obj, status), result
        self._targets[str(obj.key)] = str(target.key)

        current = target.spec.get('replicas', 1)
        targets = self.targets(obj)
        since = now - self.sample_window
        last_scale = parse_time(status.get('lastScaleTime'))
        if last_scale is not None:
            # Strictly newer than the last scale.
            since = max(since, last_scale + 1e-6)
        samples = await self.observe(target.key, targets, since)
        decision = self.engine.decide(
            str(obj.key),
            current,
            samples,
            targets,
            spec.get('minReplicas', 1),
            spec['maxReplicas'],
            behavior=self.behavior(obj),
        )

        actions = []
        if decision.desired != current:
            log.info(
                '%s: scaling %s from %d to %d (%s)',
                obj.key, target.key, current, decision.desired, decision.reason,
            )
            scaled = copy.deepcopy(target)
            scaled.spec['replicas'] = decision.desired
            actions.append(Update(scaled))
            status['lastScaleTime'] = format_time(now)

        status['currentReplicas'] = current
        status['desiredReplicas'] = decision.desired
        status['observedGeneration'] = obj.generation
        status['lastEvaluationTime'] = format_time(now)
        conditions.set_condition(
            status, conditions.ABLE_TO_SCALE, True, 'SucceededGetScale', now=now
        )
        if decision.reason == 'MetricsMissing' and not samples:
            conditions.set_condition(
                status,
                conditions.SCALING_ACTIVE,
                False,
                'MetricsMissing',
                decision.message,
                now=now,
            )
        else:
            conditions.set_condition(
                status, conditions.SCALING_ACTIVE, True, decision.reason, now=now
            )
        if decision.degraded:
            conditions.set_condition(
                status,
                conditions.DEGRADED,
                True,
                'MetricsMissing',
                decision.message,
                now=now,
            )
        elif (conditions.get_condition(status, conditions.DEGRADED) or {}).get('reason') == 'MetricsMissing':
            conditions.set_condition(
                status, conditions.DEGRADED, False, 'MetricsAvailable', now=now
            )
        actions.extend(status_update(obj, status))
        return actions, result

    @nonblocking
    def cleanup(self, key, view):
        self.engine.forget(str(key))
        target_key = self._targets.pop(str(key), None)
        if target_key is not None and target_key not in self._targets.values():
            self.samples.forget(target_key)
        return []
