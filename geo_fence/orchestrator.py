import asyncio
import logging
import time
import typing
from contextlib import suppress

from .exceptions import EmptyResultError
from .exceptions import SetBuildError
from .fetcher import RangeFetcher
from .fetcher import make_session
from .ipset import SetBuildResult
from .ipset import SetBuilder
from .iptables import RuleReconciler
from .models import exception_rules
from .models import parse_countries
from .models import parse_interfaces
from .models import validate_chain_name
from .models import validate_set_name

logger = logging.getLogger('geofence.cycle')


class CycleReport(typing.NamedTuple):
    countries: typing.List[str]
    ranges_per_country: typing.Dict[str, int]
    total_ranges: int
    added: int
    failed: int
    scope: str
    duration: float


class UpdateCycle:
    """One fetch -> build -> reconcile pass

    Stages run in order and the first failing stage aborts the cycle by
    raising a :class:`~geo_fence.exceptions.CycleError` subclass.
    Backends are injected so the cycle can run against in-memory doubles.
    """

    def __init__(self, settings, set_backend, rule_backend, session_factory=make_session):
        self.settings = settings
        self.set_backend = set_backend
        self.rule_backend = rule_backend
        self.session_factory = session_factory

    def validate_config(self) -> typing.List[str]:
        countries = parse_countries(self.settings.allowed_countries)
        validate_set_name(self.settings.ipset_name)
        validate_chain_name(self.settings.chain_name)
        if self.settings.container_chain:
            validate_chain_name(self.settings.container_chain)
            parse_interfaces(self.settings.container_interfaces)
        return countries

    async def check_prerequisites(self):
        self.set_backend.check()
        await self.rule_backend.check()

    async def fetch_all(self, countries: typing.Sequence[str]) -> typing.Dict[str, typing.List[str]]:
        settings = self.settings
        country_ranges = {}

        async with self.session_factory() as session:
            fetcher = RangeFetcher(
                session,
                settings.registry_url,
                timeout=settings.fetch_timeout,
                max_bytes=settings.fetch_max_bytes,
                retry_policy=settings.retry_policy,
            )
            for country in countries:
                country_ranges[country] = await fetcher.fetch(country)

        return country_ranges

    async def build_set(self, ranges: typing.Sequence[str]) -> SetBuildResult:
        """Fill and swap the set in a worker thread, netlink calls block"""
        builder = SetBuilder(self.set_backend, self.settings.ipset_name)
        build = asyncio.get_running_loop().run_in_executor(None, builder.replace, ranges)
        try:
            return await asyncio.shield(build)
        except asyncio.CancelledError:
            logger.warning('Update cancelled, stopping set build')
            builder.abort()
            with suppress(SetBuildError):
                await build
            raise

    def make_reconciler(self) -> RuleReconciler:
        settings = self.settings
        return RuleReconciler(
            self.rule_backend,
            chain=settings.chain_name,
            set_name=settings.ipset_name,
            exceptions=exception_rules(
                ssh_port=settings.ssh_port,
                allow_icmp=settings.allow_icmp,
                bridge_interfaces=settings.bridge_interfaces,
            ),
            container_hook=settings.container_chain,
        )

    async def run(self) -> CycleReport:
        started = time.monotonic()
        logger.info('Starting geo-fence update')

        countries = self.validate_config()
        logger.info('Allowed countries: %s', ','.join(countries))

        await self.check_prerequisites()

        country_ranges = await self.fetch_all(countries)

        ranges = list(dict.fromkeys(cidr for country in countries for cidr in country_ranges[country]))
        logger.info('Downloaded %s unique ranges', len(ranges))
        if not ranges:
            raise EmptyResultError(
                f'No ranges downloaded for {",".join(countries)}, refusing to install an empty allow-list'
            )

        result = await self.build_set(ranges)

        reconciler = self.make_reconciler()
        reconciled = await reconciler.reconcile()
        await reconciler.verify(reconciled.hooks)

        report = CycleReport(
            countries=countries,
            ranges_per_country={country: len(country_ranges[country]) for country in countries},
            total_ranges=len(ranges),
            added=result.added,
            failed=result.failed,
            scope=reconciled.scope,
            duration=time.monotonic() - started,
        )
        logger.info(
            'Geo-fence active with %s ranges (%s protected) in %.1fs',
            report.added,
            report.scope,
            report.duration,
        )
        return report
