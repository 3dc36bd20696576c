import logging

import pytest

from .fixtures.config import config_manager  # noqa: F401
from .fixtures.config import settings_factory  # noqa: F401
from .fixtures.firewall import rule_backend  # noqa: F401
from .fixtures.firewall import set_backend  # noqa: F401
from .fixtures.registry import registry  # noqa: F401


@pytest.fixture(autouse=True)
def _check_no_errors(request, caplog):
    yield
    if request.node.get_closest_marker('expect_errors'):
        return

    for when in ('setup', 'call'):
        messages = [x.message for x in caplog.get_records(when) if x.levelno >= logging.ERROR]
        if messages:
            pytest.fail(f'error messages encountered during testing: {messages!r}')
