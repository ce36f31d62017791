import httpx
import pytest

from converge.autoscale import (
    AutoscaleEngine,
    Behavior,
    MemoryMetricSource,
    MetricSample,
    MetricTarget,
    PrometheusMetricSource,
    SampleBuffer,
    ScalingPolicy,
    ScalingRules,
    compute_desired_replicas,
    desired_from_metric,
)
from converge.exceptions import MetricsUnavailable, ValidationError
from converge.resources import ReconcileKey


pytestmark = pytest.mark.anyio


KEY = ReconcileKey('ReplicaGroup', 'default', 'web')
CPU = MetricTarget('cpu', 0.5)
MEMORY = MetricTarget('memory', 100)


def sample(name, value, timestamp):
    return MetricSample(str(KEY), name, value, timestamp)


class TestProposals:
    def test_desired_from_metric(self):
        assert desired_from_metric(2, 1.0, 0.5) == 4
        assert desired_from_metric(3, 0.1, 0.5) == 1
        # Within tolerance.
        assert desired_from_metric(2, 0.52, 0.5) == 2

    def test_largest_proposal_wins(self):
        samples = [sample('cpu', 1.0, 1), sample('memory', 300, 1)]
        assert compute_desired_replicas(2, samples, [CPU, MEMORY]) == (6, [])

    def test_latest_sample_is_used(self):
        samples = [sample('cpu', 1.0, 2), sample('cpu', 0.1, 1)]
        assert compute_desired_replicas(2, samples, [CPU]) == (4, [])

    def test_missing(self):
        assert compute_desired_replicas(2, [], [CPU]) == (None, ['cpu'])

    def test_invalid_targets(self):
        with pytest.raises(ValidationError):
            MetricTarget('cpu', 0)
        with pytest.raises(ValidationError):
            MetricTarget.from_dict({'name': 'cpu'})
        assert MetricTarget.from_dict({'name': 'cpu', 'target': '0.5'}) == CPU

    @pytest.mark.parametrize('data, expected', [
        ({'name': 'cpu', 'target': '500m'}, MetricTarget('cpu', 0.5)),
        (
            {'name': 'memory', 'target': {'type': 'AverageValue', 'averageValue': '256Mi'}},
            MetricTarget('memory', 268435456.0),
        ),
        (
            {'name': 'cpu', 'target': {'type': 'Utilization', 'averageUtilization': 50}},
            MetricTarget('cpu', 50.0, 'Utilization'),
        ),
        (
            {'type': 'Resource', 'resource': {
                'name': 'cpu',
                'target': {'type': 'Utilization', 'averageUtilization': 80},
            }},
            MetricTarget('cpu', 80.0, 'Utilization'),
        ),
    ])
    def test_target_types(self, data, expected):
        assert MetricTarget.from_dict(data) == expected

    @pytest.mark.parametrize('target', [
        'lots',
        None,
        {'type': 'Utilization', 'averageUtilization': '50'},
        {'type': 'Utilization', 'averageUtilization': 0},
        {'type': 'Value', 'value': 1},
        {'type': 'AverageValue'},
    ])
    def test_invalid_target_types(self, target):
        with pytest.raises(ValidationError):
            MetricTarget.from_dict({'name': 'cpu', 'target': target})


class TestBehavior:
    def test_defaults(self):
        behavior = Behavior()
        assert behavior.scale_up.stabilization_window == 0
        assert behavior.scale_down.stabilization_window == 300
        assert behavior.horizon == 300

    def test_merged(self):
        behavior = Behavior().merged({
            'scaleDown': {
                'stabilizationWindowSeconds': 60,
                'policies': [{'type': 'Pods', 'value': 1, 'periodSeconds': 30}],
                'selectPolicy': 'Min',
            },
        })
        assert behavior.scale_down == ScalingRules(60, [ScalingPolicy('Pods', 1, 30)], 'Min')
        # Untouched direction keeps the defaults.
        assert behavior.scale_up == Behavior().scale_up
        assert Behavior().merged(None) == Behavior()

    @pytest.mark.parametrize('data', [
        'fast',
        {'scaleUp': 'fast'},
        {'scaleUp': {'selectPolicy': 'Sometimes'}},
        {'scaleUp': {'stabilizationWindowSeconds': -1}},
        {'scaleUp': {'stabilizationWindowSeconds': 'long'}},
        {'scaleDown': {'policies': {'type': 'Pods', 'value': 1}}},
        {'scaleDown': {'policies': [{'type': 'Pods', 'value': 0}]}},
        {'scaleDown': {'policies': [{'type': 'Replicas', 'value': 1}]}},
        {'scaleDown': {'policies': [{'type': 'Pods', 'value': 1, 'periodSeconds': 0}]}},
    ])
    def test_invalid(self, data):
        with pytest.raises(ValidationError):
            Behavior().merged(data)


class TestEngine:
    @pytest.fixture
    def engine(self, clock):
        return AutoscaleEngine(Behavior(), clock=clock)

    def decide(self, engine, current, *samples, targets=(CPU,), bounds=(1, 100)):
        return engine.decide(str(KEY), current, list(samples), list(targets), *bounds)

    def test_scale_up(self, engine, clock):
        decision = self.decide(engine, 2, sample('cpu', 1.0, clock.now()))
        assert decision.desired == 4
        assert decision.reason == 'DesiredWithinRange'
        assert not decision.degraded

    def test_spike_then_drop_is_stabilized(self, engine, clock):
        assert self.decide(engine, 2, sample('cpu', 1.0, clock.now())).desired == 4

        clock.advance(60)
        decision = self.decide(engine, 4, sample('cpu', 0.25, clock.now()))
        assert decision.desired == 4
        assert decision.reason == 'ScaleDownStabilized'

        clock.advance(340)
        decision = self.decide(engine, 4, sample('cpu', 0.25, clock.now()))
        assert decision.desired == 2

    def test_scale_up_rate_is_limited(self, engine, clock):
        decision = self.decide(engine, 2, sample('cpu', 5.0, clock.now()))
        assert decision.desired == 6
        assert decision.reason == 'ScaleUpLimited'

    def test_scale_up_limit_counts_from_period_start(self, engine, clock):
        assert self.decide(engine, 2, sample('cpu', 5.0, clock.now())).desired == 6

        # Same period: 6 is already the most 2 may grow to.
        decision = self.decide(engine, 6, sample('cpu', 5.0, clock.now()))
        assert decision.desired == 6
        assert decision.reason == 'ScaleUpLimited'

        clock.advance(15)
        assert self.decide(engine, 6, sample('cpu', 5.0, clock.now())).desired == 12

    def test_scale_down_without_window(self, engine, clock):
        behavior = Behavior().merged({'scaleDown': {'stabilizationWindowSeconds': 0}})
        decision = engine.decide(str(KEY), 4, [sample('cpu', 0.25, clock.now())], [CPU], 1, 10, behavior)
        assert decision.desired == 2
        assert decision.reason == 'DesiredWithinRange'

    def test_scale_down_pods_policy(self, engine, clock):
        behavior = Behavior().merged({'scaleDown': {
            'stabilizationWindowSeconds': 0,
            'policies': [{'type': 'Pods', 'value': 1, 'periodSeconds': 60}],
        }})
        decision = engine.decide(str(KEY), 4, [sample('cpu', 0.25, clock.now())], [CPU], 1, 10, behavior)
        assert decision.desired == 3
        assert decision.reason == 'ScaleDownLimited'

        clock.advance(30)
        decision = engine.decide(str(KEY), 3, [sample('cpu', 0.25, clock.now())], [CPU], 1, 10, behavior)
        assert decision.desired == 3

        clock.advance(30)
        decision = engine.decide(str(KEY), 3, [sample('cpu', 0.25, clock.now())], [CPU], 1, 10, behavior)
        assert decision.desired == 2

    def test_select_policy(self, engine, clock):
        rules = {'policies': [
            {'type': 'Pods', 'value': 1},
            {'type': 'Percent', 'value': 100},
        ]}
        low = Behavior().merged({'scaleUp': dict(rules, selectPolicy='Min')})
        decision = engine.decide(str(KEY), 2, [sample('cpu', 5.0, clock.now())], [CPU], 1, 100, low)
        assert decision.desired == 3

        disabled = Behavior().merged({'scaleUp': {'selectPolicy': 'Disabled'}})
        decision = engine.decide('other', 2, [sample('cpu', 5.0, clock.now())], [CPU], 1, 100, disabled)
        assert decision.desired == 2
        assert decision.reason == 'ScaleUpLimited'

    def test_clamped_to_bounds(self, engine, clock):
        decision = self.decide(engine, 2, sample('cpu', 0.05, clock.now()), bounds=(2, 10))
        assert decision.desired == 2
        assert decision.reason == 'TooFewReplicas'
        decision = self.decide(engine, 4, sample('cpu', 1.0, clock.now()), bounds=(1, 5))
        assert decision.desired == 5
        assert decision.reason == 'TooManyReplicas'

    def test_missing_metrics_keep_current_and_degrade(self, engine, clock):
        decision = self.decide(engine, 3)
        assert decision.desired == 3
        assert decision.reason == 'MetricsMissing'
        assert not decision.degraded

        clock.advance(300)
        assert self.decide(engine, 3).degraded

        # Recovers as soon as samples are back.
        decision = self.decide(engine, 3, sample('cpu', 0.5, clock.now()))
        assert not decision.degraded

    def test_no_scale_down_on_partial_data(self, engine, clock):
        decision = self.decide(
            engine, 4, sample('cpu', 0.1, clock.now()), targets=(CPU, MEMORY)
        )
        assert decision.desired == 4
        assert decision.reason == 'MetricsMissing'

    def test_scale_from_zero(self, engine, clock):
        decision = self.decide(engine, 0, bounds=(2, 10))
        assert decision.desired == 2
        assert decision.reason == 'ScaledFromZero'

    def test_forget(self, engine, clock):
        self.decide(engine, 2, sample('cpu', 1.0, clock.now()))
        engine.forget(str(KEY))
        clock.advance(1)
        # Without the earlier recommendation nothing holds the count up.
        assert self.decide(engine, 4, sample('cpu', 0.25, clock.now())).desired == 2


class TestSampleBuffer:
    def test_latest_and_window(self):
        buffer = SampleBuffer(maxlen=2)
        buffer.extend([sample('cpu', 1, 10), sample('cpu', 2, 20), sample('cpu', 3, 30)])
        assert [s.value for s in buffer.samples(str(KEY), 'cpu')] == [2, 3]
        assert buffer.latest(str(KEY), 'cpu').value == 3
        assert buffer.samples(str(KEY), 'cpu', since=25) == [sample('cpu', 3, 30)]
        buffer.forget(str(KEY))
        assert buffer.latest(str(KEY), 'cpu') is None


class TestMemoryMetricSource:
    async def test_query_window(self, clock):
        source = MemoryMetricSource(clock=clock)
        source.record(KEY, 'cpu', 1, timestamp=clock.now() - 120)
        source.record(KEY, 'cpu', 2)
        samples = await source.query(KEY, 'cpu', 60)
        assert [s.value for s in samples] == [2.0]
        assert await source.query(KEY, 'memory', 60) == []

    async def test_unavailable(self, clock):
        source = MemoryMetricSource(clock=clock)
        source.set_unavailable('cpu')
        with pytest.raises(MetricsUnavailable):
            await source.query(KEY, 'cpu', 60)
        source.set_unavailable('cpu', False)
        assert await source.query(KEY, 'cpu', 60) == []


QUERIES = {'cpu': 'avg(cpu{{namespace="{namespace}",workload="{name}"}})'}


def prometheus(handler, clock):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PrometheusMetricSource('http://prometheus:9090/', QUERIES, client=client, clock=clock)


class TestPrometheusMetricSource:
    async def test_query_range(self, clock):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={
                'status': 'success',
                'data': {'resultType': 'matrix', 'result': [
                    {'metric': {}, 'values': [[clock.now(), '0.75'], [clock.now() - 15, '0.5']]},
                ]},
            })

        source = prometheus(handler, clock)
        samples = await source.query(KEY, 'cpu', 60)
        await source.aclose()

        assert [s.value for s in samples] == [0.5, 0.75]
        assert samples[-1].resource_key == str(KEY)
        [request] = requests
        assert request.url.path == '/api/v1/query_range'
        assert request.url.params['query'] == 'avg(cpu{namespace="default",workload="web"})'
        assert float(request.url.params['end']) - float(request.url.params['start']) == 60

    async def test_http_error(self, clock):
        source = prometheus(lambda request: httpx.Response(503), clock)
        with pytest.raises(MetricsUnavailable):
            await source.query(KEY, 'cpu', 60)

    async def test_query_error(self, clock):
        def handler(request):
            return httpx.Response(200, json={'status': 'error', 'error': 'bad query'})

        source = prometheus(handler, clock)
        with pytest.raises(MetricsUnavailable, match='bad query'):
            await source.query(KEY, 'cpu', 60)

    async def test_unknown_metric(self, clock):
        source = prometheus(lambda request: httpx.Response(200, json={}), clock)
        with pytest.raises(MetricsUnavailable):
            await source.query(KEY, 'memory', 60)
