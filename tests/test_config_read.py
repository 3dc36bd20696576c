import pathlib
from unittest.mock import create_autospec

import pytest
from pydantic import ValidationError

from geo_fence import config as geofence_config
from geo_fence.exceptions import ConfigError


def test_config_files_iterated_in_ascending_order():
    """listdir return paths in arbitrary order, we need expected order"""

    def make_fake_config_file(name):
        obj = create_autospec(pathlib.Path)
        obj.is_file.return_value = True
        obj.name = name
        obj.as_posix.return_value = f'/as/posix/{obj.name}'
        return obj

    arbitrary_ordered_files = [
        make_fake_config_file('10.yaml'),
        make_fake_config_file('README.md'),
        make_fake_config_file('arbitrary.yaml'),
        make_fake_config_file('01.yaml'),
    ]

    fake_dir = create_autospec(pathlib.Path)
    fake_dir.exists.return_value = True
    fake_dir.is_dir.return_value = True
    fake_dir.iterdir.side_effect = lambda: iter(arbitrary_ordered_files)

    assert [f.name for f in geofence_config.iter_config_files(fake_dir)] == [
        '01.yaml',
        '10.yaml',
        'arbitrary.yaml',
    ]


def test_missing_confdir_is_skipped(tmp_path):
    assert list(geofence_config.iter_config_files(tmp_path / 'missing')) == []


def test_defaults(config_manager):
    with config_manager.setup() as settings:
        assert settings.countries == ['se']
        assert settings.ipset_name == 'geo_fence_allowlist_ipv4_v1'
        assert settings.update_interval == 604800
        assert settings.max_consecutive_failures == 3
        assert settings.container_chain == 'DOCKER-USER'
        assert settings.bridge_interfaces == ['docker0', 'br-+']
        assert settings.max_health_age == 2 * 604800


def test_files_merged_in_order(config_manager):
    config_manager.add_config('01-countries.yaml', {'allowed_countries': 'se,no', 'ssh_port': 2222})
    config_manager.add_config('02-ssh.yaml', {'ssh_port': 2200})

    with config_manager.setup() as settings:
        assert settings.countries == ['se', 'no']
        assert settings.ssh_port == 2200


def test_environment_overrides_files(config_manager):
    config_manager.add_config('01-ssh.yaml', {'ssh_port': 2222, 'allow_icmp': False})

    with config_manager.setup(ssh_port=2200) as settings:
        assert settings.ssh_port == 2200
        assert settings.allow_icmp is False


def test_empty_config_file_ignored(config_manager):
    config_manager.add_config('01-empty.yaml', '# nothing here\n')

    with config_manager.setup() as settings:
        assert settings.countries == ['se']


def test_config_must_be_mapping(config_manager):
    config_manager.add_config('01-list.yaml', '- se\n- no\n')

    with pytest.raises(ConfigError, match='must contain a mapping'), config_manager.setup():
        ...


def test_unknown_option_rejected(config_manager):
    config_manager.add_config('01-typo.yaml', {'alowed_countries': 'no'})

    with pytest.raises(ValidationError), config_manager.setup():
        ...


@pytest.mark.parametrize(
    'registry_url',
    [
        'http://www.ipdeny.com/ipblocks/data/countries/{country}.zone',
        'https://www.ipdeny.com/ipblocks/data/countries/all.zone',
    ],
)
def test_registry_url_validated(config_manager, registry_url):
    with pytest.raises(ValidationError), config_manager.setup(registry_url=registry_url):
        ...


@pytest.mark.parametrize('option, value', [('update_interval', 0), ('ssh_port', 70000), ('loglevel', 'LOUD')])
def test_invalid_values_rejected(config_manager, option, value):
    with pytest.raises(ValidationError), config_manager.setup(**{option: value}):
        ...


def test_empty_container_chain_disables_hook(config_manager):
    with config_manager.setup(container_chain='') as settings:
        assert settings.container_chain is None
        assert settings.bridge_interfaces == []


def test_health_age(config_manager):
    with config_manager.setup(update_interval=3600) as settings:
        assert settings.max_health_age == 7200

    with config_manager.setup(update_interval=3600, health_max_age=600) as settings:
        assert settings.max_health_age == 600


def test_retry_policy(config_manager):
    with config_manager.setup(fetch_retries=0, fetch_retry_delay=1) as settings:
        policy = settings.retry_policy
        assert policy.max_tries == 1
        assert policy.delay == 1
