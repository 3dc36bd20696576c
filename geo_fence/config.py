import logging
import pathlib
import typing

import sentry_sdk
import yaml
from pydantic import AnyHttpUrl
from pydantic import confloat
from pydantic import conint
from pydantic import field_validator
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict
from sentry_sdk.integrations.logging import LoggingIntegration

from . import __version__
from .dict_merge import dict_merge
from .exceptions import ConfigError
from .fetcher import RetryPolicy
from .logging import setup_logging
from .models import parse_countries
from .models import parse_interfaces

__all__ = (
    'Settings',
    'ConfigError',
    'load_settings',
    'settings',
)

logger = logging.getLogger('geofence.config')


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_prefix='GEOFENCE_', extra='forbid')

    allowed_countries: str = 'se'
    ipset_name: str = 'geo_fence_allowlist_ipv4_v1'
    update_interval: conint(gt=0) = 604800
    max_consecutive_failures: conint(gt=0) = 3

    registry_url: str = 'https://www.ipdeny.com/ipblocks/data/countries/{country}.zone'
    fetch_timeout: confloat(gt=0) = 30
    fetch_retries: conint(ge=0) = 3
    fetch_retry_delay: confloat(ge=0) = 5
    fetch_max_retry_time: confloat(gt=0) = 120
    fetch_max_bytes: conint(gt=0) = 4 * 1024 * 1024

    probe_url: str = 'https://www.ipdeny.com'
    probe_attempts: conint(gt=0) = 30
    probe_delay: confloat(ge=0) = 10
    probe_timeout: confloat(gt=0) = 10
    sleep_chunk: confloat(gt=0) = 60

    chain_name: str = 'GEO_FENCE'
    ssh_port: conint(ge=1, le=65535) = 22
    allow_icmp: bool = True
    container_chain: typing.Optional[str] = 'DOCKER-USER'
    container_interfaces: str = 'docker0,br-+'
    iptables: str = 'iptables'

    health_file: pathlib.Path = pathlib.Path('/tmp/geo-fence-health')
    health_max_age: typing.Optional[confloat(gt=0)] = None

    confdir: pathlib.Path = pathlib.Path('/etc/geo-fence/conf.d/')
    error_log: pathlib.Path = pathlib.Path('/dev/null')
    loglevel: str = 'INFO'
    piddir: typing.Optional[pathlib.Path] = None
    sentry_dsn: typing.Optional[AnyHttpUrl] = None

    @field_validator('registry_url')
    @classmethod
    def _check_registry_url(cls, v):
        if not v.startswith('https://'):
            raise ValueError('registry must be reached over https')
        if '{country}' not in v:
            raise ValueError('registry url must contain "{country}" placeholder')
        return v

    @field_validator('probe_url')
    @classmethod
    def _check_probe_url(cls, v):
        if not v.startswith('https://'):
            raise ValueError('registry must be reached over https')
        return v

    @field_validator('container_chain')
    @classmethod
    def _empty_container_chain(cls, v):
        return v or None

    @field_validator('loglevel')
    @classmethod
    def _check_loglevel(cls, v):
        from logging import _checkLevel  # noqa

        _checkLevel(v)
        return v

    @property
    def countries(self) -> typing.List[str]:
        return parse_countries(self.allowed_countries)

    @property
    def bridge_interfaces(self) -> typing.List[str]:
        if not self.container_chain:
            return []
        return parse_interfaces(self.container_interfaces)

    @property
    def max_health_age(self) -> float:
        if self.health_max_age is not None:
            return self.health_max_age
        return self.update_interval * 2

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            retries=self.fetch_retries,
            delay=self.fetch_retry_delay,
            max_time=self.fetch_max_retry_time,
        )


def iter_config_files(*confdirs):
    for confdir in confdirs:
        if not confdir.exists():
            logger.debug('No config directory at %s', confdir.absolute().as_posix())
            continue

        if not confdir.is_dir():
            logger.warning('%s is not a directory, config files there are ignored', confdir.absolute().as_posix())
            continue

        for file in sorted(confdir.iterdir(), key=lambda f: f.name):
            if not file.is_file() or not file.name.endswith('.yaml'):
                logger.debug('Skip %s: not a *.yaml file', file.as_posix())
                continue

            logger.info('Using config file %s', file.as_posix())
            yield file


def load_configs(paths: typing.Iterable[pathlib.Path]) -> dict:
    merged = {}

    for path in paths:
        data = yaml.safe_load(path.read_text())
        if data is None:
            continue

        if not isinstance(data, dict):
            raise ConfigError(f'Config file {path.as_posix()} must contain a mapping')

        merged = dict_merge(merged, data)

    return merged


def load_settings() -> Settings:
    """Settings from conf.d files overridden by environment"""
    env_settings = Settings()

    file_data = load_configs(iter_config_files(env_settings.confdir))
    if not file_data:
        return env_settings

    return Settings(**dict_merge(file_data, env_settings.model_dump(exclude_unset=True)))


def setup_sentry(dsn):
    sentry_sdk.init(
        dsn=str(dsn),
        integrations=[
            # breadcrumbs from DEBUG, events from ERROR
            LoggingIntegration(level=logging.DEBUG, event_level=logging.ERROR),
        ],
        release=__version__,
    )


def setup(settings_: Settings = None, reread: bool = False) -> Settings:
    global settings
    if settings_ is None or reread:
        logger.info('Loading settings')
        settings_ = load_settings()

    settings = settings_

    if settings.sentry_dsn:
        setup_sentry(settings.sentry_dsn)

    setup_logging(loglevel=settings.loglevel, error_filename=settings.error_log.as_posix())
    logger.debug('Error reporting to sentry %s', 'enabled' if settings.sentry_dsn else 'disabled')

    return settings


settings = load_settings()

setup(settings)
