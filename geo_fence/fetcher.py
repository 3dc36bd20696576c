import asyncio
import logging
import typing

import aiohttp
import backoff

from . import __version__
from .exceptions import FetchError
from .exceptions import StartupError
from .exceptions import TransientFetchError
from .exceptions import ValidationError
from .models import parse_ranges

logger = logging.getLogger('geofence.fetcher')

CHUNK_SIZE = 64 * 1024
USER_AGENT = f'geo-fence/{__version__}'


class RetryPolicy:
    """How many times and how often a transient fetch failure is retried

    :param retries: retries after the first attempt
    :param delay: seconds between attempts
    :param max_time: give up retrying once this many seconds passed since the first attempt
    """

    def __init__(self, retries: int = 3, delay: float = 5, max_time: typing.Optional[float] = None):
        self.retries = retries
        self.delay = delay
        self.max_time = max_time

    @property
    def max_tries(self):
        return self.retries + 1

    def wrap(self, func):
        return backoff.on_exception(
            backoff.constant,
            TransientFetchError,
            max_tries=self.max_tries,
            max_time=self.max_time,
            interval=self.delay,
            jitter=None,
            logger=logger,
            backoff_log_level=logging.WARNING,
            giveup_log_level=logging.ERROR,
        )(func)

    def __repr__(self):
        return f'RetryPolicy(retries={self.retries}, delay={self.delay}, max_time={self.max_time})'


def make_session() -> aiohttp.ClientSession:
    return aiohttp.ClientSession(headers={'User-Agent': USER_AGENT})


class RangeFetcher:
    """Download and validate per-country CIDR lists from the registry

    Redirects are never followed, payloads are bounded by ``max_bytes``
    and every request by ``timeout`` seconds.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        url_template: str,
        timeout: float = 30,
        max_bytes: int = 4 * 1024 * 1024,
        retry_policy: typing.Optional[RetryPolicy] = None,
    ):
        self.session = session
        self.url_template = url_template
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.retry_policy = retry_policy or RetryPolicy()

    def url_for(self, country: str) -> str:
        return self.url_template.format(country=country)

    async def fetch(self, country: str) -> typing.List[str]:
        logger.info('Downloading %s ...', country)
        payload = await self.retry_policy.wrap(self._download)(country)
        ranges = parse_ranges(country, payload)

        if ranges:
            logger.info('Downloading %s ... done! %s ranges', country, len(ranges))
        else:
            logger.warning('Registry returned no ranges for %s', country)

        return ranges

    async def _download(self, country: str) -> str:
        url = self.url_for(country)
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with self.session.get(url, allow_redirects=False, timeout=timeout) as response:
                self._check_response(country, response)

                body = bytearray()
                async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                    body += chunk
                    if len(body) > self.max_bytes:
                        raise FetchError(
                            f'Payload for {country!r} exceeds {self.max_bytes} bytes',
                            country=country,
                        )
        except asyncio.TimeoutError as exc:
            raise TransientFetchError(f'Timed out after {self.timeout}s fetching {url}', country=country) from exc
        except aiohttp.ClientError as exc:
            raise TransientFetchError(f'Failed to fetch {url}: {exc!r}', country=country) from exc

        try:
            return body.decode('ascii')
        except UnicodeDecodeError as exc:
            raise ValidationError(f'Payload for {country!r} is not plain ASCII text', country=country) from exc

    def _check_response(self, country: str, response: aiohttp.ClientResponse):
        status = response.status
        if 300 <= status < 400:
            raise FetchError(
                f'Registry tried to redirect {country!r} to {response.headers.get("Location")!r}, refused',
                country=country,
            )

        if status == 404:
            raise FetchError(f'Registry has no list for country {country!r}', country=country)

        if status == 429 or status >= 500:
            raise TransientFetchError(f'Registry answered {status} for {country!r}', country=country)

        if status != 200:
            raise FetchError(f'Unexpected registry response {status} for {country!r}', country=country)

        if response.content_length is not None and response.content_length > self.max_bytes:
            raise FetchError(
                f'Payload for {country!r} announced {response.content_length} bytes, limit is {self.max_bytes}',
                country=country,
            )


async def probe_registry(session: aiohttp.ClientSession, url: str, timeout: float = 10) -> bool:
    try:
        async with session.get(url, allow_redirects=False, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
            reachable = response.status < 400
            if not reachable:
                logger.debug('Registry probe got %s', response.status)
            return reachable
    except (asyncio.TimeoutError, aiohttp.ClientError) as exc:
        logger.debug('Registry probe failed: %r', exc)
        return False


async def wait_for_registry(url: str, attempts: int = 30, delay: float = 10, timeout: float = 10):
    """Block until the registry answers, raise :class:`StartupError` when it never does"""
    logger.info('Waiting for network connectivity (%s) ...', url)

    probe = backoff.on_predicate(
        backoff.constant,
        lambda reachable: not reachable,
        max_tries=attempts,
        interval=delay,
        jitter=None,
        logger=logger,
        backoff_log_level=logging.WARNING,
    )(probe_registry)

    async with make_session() as session:
        reachable = await probe(session, url, timeout=timeout)

    if not reachable:
        raise StartupError(f'Registry {url} unreachable after {attempts} attempts')

    logger.info('Waiting for network connectivity (%s) ... done!', url)
