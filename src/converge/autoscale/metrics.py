import collections
import logging

import httpx

from ..clock import Clock
from ..exceptions import MetricsUnavailable
from .engine import MetricSample


log = logging.getLogger(__name__)


class MetricSource:
    async def query(self, resource_key, metric_name, window):
        """Samples of `metric_name` for `resource_key` over the trailing `window` seconds."""
        raise NotImplementedError()

    async def aclose(self):
        pass


class MemoryMetricSource(MetricSource):
    """Samples recorded in process, e.g. by tests or a simulation."""

    def __init__(self, clock=None, maxlen=1024):
        self.clock = clock or Clock()
        self.maxlen = maxlen
        self._samples = collections.defaultdict(
            lambda: collections.deque(maxlen=self.maxlen)
        )
        self._unavailable = set()

    def record(self, resource_key, metric_name, value, timestamp=None):
        if timestamp is None:
            timestamp = self.clock.now()
        sample = MetricSample(str(resource_key), metric_name, float(value), timestamp)
        self._samples[(sample.resource_key, metric_name)].append(sample)
        return sample

    def set_unavailable(self, metric_name, unavailable=True):
        if unavailable:
            self._unavailable.add(metric_name)
        else:
            self._unavailable.discard(metric_name)

    async def query(self, resource_key, metric_name, window):
        if metric_name in self._unavailable:
            raise MetricsUnavailable(f'{metric_name} is unavailable')
        since = self.clock.now() - window
        return [
            s for s in self._samples.get((str(resource_key), metric_name), ())
            if s.timestamp >= since
        ]


class PrometheusMetricSource(MetricSource):
    """Query the Prometheus HTTP API.

    `queries` maps metric names to PromQL templates which are formatted
    with the `kind`, `namespace` and `name` of the scaled resource, e.g.

        {'cpu': 'avg(rate(cpu_seconds_total{{namespace="{namespace}",'
                'workload="{name}"}}[1m]))'}

    Literal braces in PromQL have to be doubled for `str.format`.
    """

    def __init__(self, url, queries, client=None, step=15, timeout=10, clock=None):
        self.url = url.rstrip('/')
        self.queries = dict(queries)
        self.step = step
        self.clock = clock or Clock()
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def __repr__(self):
        return f'<PrometheusMetricSource {self.url}>'

    def render(self, resource_key, metric_name):
        try:
            template = self.queries[metric_name]
        except KeyError:
            raise MetricsUnavailable(f'no query configured for {metric_name}') from None
        return template.format(
            kind=resource_key.kind,
            namespace=resource_key.namespace or '',
            name=resource_key.name,
        )

    async def query(self, resource_key, metric_name, window):
        now = self.clock.now()
        params = {
            'query': self.render(resource_key, metric_name),
            'start': now - window,
            'end': now,
            'step': self.step,
        }
        try:
            response = await self._client.get(f'{self.url}/api/v1/query_range', params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise MetricsUnavailable(
                f'HTTP {e.response.status_code} while querying {metric_name}'
            ) from e
        except httpx.RequestError as e:
            raise MetricsUnavailable(f'{e!r} while querying {metric_name}') from e
        except ValueError as e:
            raise MetricsUnavailable(f'invalid response for {metric_name}') from e

        if payload.get('status') != 'success':
            raise MetricsUnavailable(f'{metric_name}: {payload.get("error", "query failed")}')

        samples = []
        for series in payload.get('data', {}).get('result', []):
            for timestamp, value in series.get('values', []):
                try:
                    samples.append(
                        MetricSample(str(resource_key), metric_name, float(value), float(timestamp))
                    )
                except (TypeError, ValueError):
                    log.debug('%s: skipping sample %r', metric_name, value)
        samples.sort(key=lambda s: s.timestamp)
        return samples

    async def aclose(self):
        await self._client.aclose()
