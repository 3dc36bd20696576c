import contextlib
import pathlib
import tempfile

import pytest
import yaml


class ConfigManager:
    def __init__(self, directory: pathlib.Path):
        self.directory = directory

    def add_config(self, name: str, content):
        assert name.endswith('.yaml')
        if not isinstance(content, str):
            content = yaml.dump(content)
        self.directory.joinpath(name).write_text(content)

    @contextlib.contextmanager
    def setup(self, **env):
        from geo_fence import config

        mp: pytest.MonkeyPatch
        with pytest.MonkeyPatch.context() as mp:
            mp.setenv('GEOFENCE_CONFDIR', self.directory.as_posix())
            for key, value in env.items():
                mp.setenv(f'GEOFENCE_{key.upper()}', str(value))

            old_settings = config.settings
            try:
                yield config.setup(reread=True)
            finally:
                config.setup(old_settings)


@pytest.fixture()
def config_manager() -> ConfigManager:
    with tempfile.TemporaryDirectory() as directory:
        yield ConfigManager(pathlib.Path(directory))


@pytest.fixture()
def settings_factory(tmp_path):
    """Build settings without reading environment or validating urls

    Tests talk to a plain http registry, which validation refuses.
    """
    from geo_fence.config import Settings

    def factory(**overrides):
        values = {
            'fetch_retry_delay': 0,
            'fetch_timeout': 2,
            'health_file': tmp_path / 'health',
            'confdir': tmp_path / 'conf.d',
        }
        values.update(overrides)
        return Settings.model_construct(**values)

    return factory
