"""
Controller settings.

Defaults can be overridden by a YAML file and by environment variables
named `CONVERGE_<FIELD>` (e.g. `CONVERGE_WORKERS=4`), in that order.
Lists may be given as comma separated values, mappings as JSON.
"""

from typing import Dict, List, Optional

import pydantic
import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict, SettingsError
from typing_extensions import Annotated

from .exceptions import ConfigError


class Settings(BaseSettings):
    """All tunables with their defaults.

    Keyword arguments are how the file layer is applied, so the environment
    takes precedence over them.
    """

    model_config = SettingsConfigDict(
        env_prefix='CONVERGE_',
        extra='forbid',
    )

    # Reconcile workers per controller.
    workers: int = Field(2, ge=1)
    # Full relist of every informer.
    resync_period: float = 10 * 60
    watch_timeout: int = 5 * 60
    # Per key exponential backoff for failed reconciles.
    backoff_base: float = 0.005
    backoff_max: float = 1000
    # Longer backoff while blocked by a quota.
    quota_backoff_base: float = 5
    quota_backoff_max: float = 300
    # Continuous failure after which a key is reported Degraded.
    degraded_after: float = 5 * 60
    # Time granted to in-flight reconciles on shutdown.
    drain_timeout: float = 30

    # Leader election.
    leader_election: bool = True
    lease_name: str = 'converge-controller'
    lease_namespace: str = 'default'
    lease_duration: float = 15
    renew_deadline: float = 10
    retry_period: float = 2

    # Autoscaling defaults, an Autoscaler's spec.behavior overrides them.
    stabilization_window: float = 5 * 60
    scale_up_window: float = 0
    scale_up_percent: int = 100
    scale_up_pods: int = 4
    scale_down_percent: int = 100
    scaling_period: float = 15
    tolerance: float = 0.1
    evaluation_period: float = 15
    metrics_missing_window: float = 5 * 60
    # Prometheus base URL, metrics come from memory only when unset.
    prometheus_url: Optional[str] = None
    # Metric name -> PromQL template with {kind}, {namespace} and {name}.
    metric_queries: Optional[Dict[str, str]] = None

    # Controller revisions kept per workload.
    revision_history_limit: int = Field(10, ge=0)

    namespaces: Annotated[Optional[List[str]], NoDecode] = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return env_settings, init_settings

    @field_validator('namespaces', mode='before')
    @classmethod
    def split_namespaces(cls, value):
        if isinstance(value, str):
            return [name.strip() for name in value.split(',') if name.strip()]
        return value

    @model_validator(mode='after')
    def check_lease_timings(self):
        if self.renew_deadline >= self.lease_duration:
            raise ValueError('renew_deadline must be shorter than lease_duration')
        if self.retry_period >= self.renew_deadline:
            raise ValueError('retry_period must be shorter than renew_deadline')
        return self

    @classmethod
    def load(cls, path=None):
        """Defaults, then the YAML file at `path`, then the environment."""
        data = {}
        if path is not None:
            try:
                with open(path) as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f'can not read {path}: {e}') from e
            if not isinstance(data, dict):
                raise ConfigError(f'{path}: expected a mapping')
        try:
            return cls(**data)
        except (pydantic.ValidationError, SettingsError) as e:
            raise ConfigError(f'invalid settings: {e}') from e
