import asyncio
import collections

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer


class RegistryMock:
    """Per-country zone files served over plain http for tests"""

    def __init__(self):
        self.zones = {}
        self.unavailable = collections.Counter()  # country -> 503 answers before serving
        self.redirects = set()
        self.delays = {}
        self.requests = collections.Counter()
        self.server = None

    @property
    def url_template(self):
        return f'http://{self.server.host}:{self.server.port}/ipblocks/data/countries/{{country}}.zone'

    @property
    def root_url(self):
        return f'http://{self.server.host}:{self.server.port}/'

    async def handle_root(self, request):
        return web.Response(text='ok')

    async def handle_zone(self, request):
        country = request.match_info['country']
        self.requests[country] += 1

        delay = self.delays.get(country)
        if delay:
            await asyncio.sleep(delay)

        if country in self.redirects:
            return web.Response(status=302, headers={'Location': f'https://example.invalid/{country}.zone'})

        if self.unavailable[country] > 0:
            self.unavailable[country] -= 1
            return web.Response(status=503)

        zone = self.zones.get(country)
        if zone is None:
            return web.Response(status=404)

        if isinstance(zone, str):
            zone = zone.encode()
        return web.Response(body=zone, content_type='text/plain')


@pytest.fixture()
async def registry() -> RegistryMock:
    registry = RegistryMock()

    app = web.Application()
    app.router.add_get('/', registry.handle_root)
    app.router.add_get('/ipblocks/data/countries/{country}.zone', registry.handle_zone)

    server = TestServer(app)
    await server.start_server()
    registry.server = server
    yield registry
    await server.close()
