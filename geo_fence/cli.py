import asyncio
import sys

import click

from .exceptions import GeoFenceError


@click.group()
def geofence():
    """Country based allow-listing of inbound IPv4 traffic"""


@geofence.command()
def run():
    """Run the update loop until stopped"""
    from .__main__ import run

    run()


@geofence.command()
def update():
    """Run a single update cycle"""
    from .__main__ import run_once

    run_once()


@geofence.command()
def healthcheck():
    """Exit with 0 when the last successful update is recent enough"""
    from . import config
    from .liveness import LivenessMarker

    settings = config.settings
    marker = LivenessMarker(settings.health_file)
    last_success = marker.read()

    if marker.is_fresh(settings.max_health_age):
        click.echo(f'healthy: last successful update at {last_success.isoformat()}')
        sys.exit(0)

    if last_success is None:
        click.echo(f'unhealthy: no successful update recorded in {settings.health_file}', err=True)
    else:
        click.echo(f'unhealthy: last successful update at {last_success.isoformat()} is too old', err=True)
    sys.exit(1)


@geofence.command(name='show-rules')
def show_rules():
    """Print the rules of the geo-fence chain"""
    from . import config
    from .iptables import IptablesBackend

    settings = config.settings
    try:
        rules = asyncio.run(IptablesBackend(settings.iptables).list_rules(settings.chain_name))
    except GeoFenceError as exc:
        raise click.ClickException(str(exc))

    for position, rule in enumerate(rules, start=1):
        click.echo(f'{position:>3}  {rule}')


if __name__ == '__main__':
    geofence()
