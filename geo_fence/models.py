import dataclasses
import ipaddress
import re
import typing

from .exceptions import ConfigError
from .exceptions import ValidationError

__all__ = (
    'Rule',
    'parse_countries',
    'parse_ranges',
    'parse_interfaces',
    'validate_set_name',
    'validate_chain_name',
    'exception_rules',
    'deny_rule',
    'jump_rule',
)

COUNTRY_RE = re.compile(r'^[a-z]{2}$')
CIDR_RE = re.compile(r'^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}/\d{1,2}$', flags=re.ASCII)
NAME_RE = re.compile(r'^[A-Za-z0-9_.-]+$')
# trailing '+' is the iptables interface wildcard
IFACE_RE = re.compile(r'^[A-Za-z0-9_.-]+\+?$')

IPSET_MAXNAMELEN = 31
WORKING_SET_SUFFIX = '_tmp'
MAX_SET_NAME_LENGTH = IPSET_MAXNAMELEN - len(WORKING_SET_SUFFIX)
MAX_CHAIN_NAME_LENGTH = 28
MAX_IFACE_NAME_LENGTH = 15
BUILTIN_CHAINS = frozenset({'INPUT', 'OUTPUT', 'FORWARD', 'PREROUTING', 'POSTROUTING'})


def parse_countries(raw: str) -> typing.List[str]:
    """Split comma separated country list

    Entries are trimmed and lower-cased, empty entries are skipped
    and duplicates collapsed (first occurrence wins).
    """
    countries = []
    for item in (raw or '').split(','):
        country = item.strip().lower()
        if not country:
            continue

        if not COUNTRY_RE.match(country):
            raise ConfigError(f'Invalid country code: {item.strip()!r} (expected two letters, e.g. "se")')

        if country not in countries:
            countries.append(country)

    if not countries:
        raise ConfigError('No countries configured, refusing to install an empty allow-list')

    return countries


def parse_ranges(country: str, payload: str) -> typing.List[str]:
    """Validate downloaded payload as a newline delimited list of IPv4 CIDR blocks

    A single bad line rejects the whole payload.
    """
    ranges = []
    for lineno, line in enumerate(payload.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue

        if not CIDR_RE.match(line):
            raise ValidationError(
                f'Malformed line {lineno} in payload for {country!r}: {line[:64]!r}',
                country=country,
                lineno=lineno,
            )

        try:
            network = ipaddress.IPv4Network(line, strict=False)
        except ValueError as exc:
            raise ValidationError(
                f'Invalid network on line {lineno} in payload for {country!r}: {exc}',
                country=country,
                lineno=lineno,
            ) from exc

        ranges.append(str(network))

    return ranges


def parse_interfaces(raw: str) -> typing.List[str]:
    """Split comma separated interface list, ``docker+`` style wildcards allowed"""
    interfaces = []
    for item in (raw or '').split(','):
        iface = item.strip()
        if not iface:
            continue

        if not IFACE_RE.match(iface) or len(iface) > MAX_IFACE_NAME_LENGTH:
            raise ConfigError(f'Invalid interface name: {iface!r}')

        if iface not in interfaces:
            interfaces.append(iface)

    return interfaces


def _validate_name(kind: str, name: str, max_length: int):
    if not name or not NAME_RE.match(name):
        raise ConfigError(f'Invalid {kind} name {name!r}: allowed characters are letters, digits, "_", "." and "-"')

    if len(name) > max_length:
        raise ConfigError(f'Invalid {kind} name {name!r}: longer than {max_length} characters')


def validate_set_name(name: str):
    _validate_name('ipset', name, MAX_SET_NAME_LENGTH)


def validate_chain_name(name: str):
    _validate_name('chain', name, MAX_CHAIN_NAME_LENGTH)
    if name.upper() in BUILTIN_CHAINS:
        raise ConfigError(f'Invalid chain name {name!r}: built-in chains can not be used')


@dataclasses.dataclass(frozen=True)
class Rule:
    """Packet filter rule predicate plus its target

    Two rules are the same rule when all fields are equal, listing order
    of options and implied matches do not matter.
    """

    target: str
    protocol: typing.Optional[str] = None
    in_interface: typing.Optional[str] = None
    ctstate: typing.FrozenSet[str] = frozenset()
    dport: typing.Optional[int] = None
    match_set: typing.Optional[str] = None
    match_set_negated: bool = False
    extra: typing.Tuple[str, ...] = ()

    def to_args(self) -> typing.List[str]:
        args = []
        if self.protocol:
            args += ['-p', self.protocol]
        if self.in_interface:
            args += ['-i', self.in_interface]
        if self.ctstate:
            args += ['-m', 'conntrack', '--ctstate', ','.join(sorted(self.ctstate))]
        if self.dport is not None:
            args += ['--dport', str(self.dport)]
        if self.match_set:
            args += ['-m', 'set']
            if self.match_set_negated:
                args.append('!')
            args += ['--match-set', self.match_set, 'src']
        args += list(self.extra)
        args += ['-j', self.target]
        return args

    def __str__(self):
        return ' '.join(self.to_args())


def exception_rules(
    ssh_port: int = 22,
    allow_icmp: bool = True,
    bridge_interfaces: typing.Sequence[str] = (),
) -> typing.List[Rule]:
    """Traffic that always passes the geo-fence

    Packets entering from ``bridge_interfaces`` come from local containers
    and are never matched against the allow-list.
    """
    rules = [
        Rule(target='RETURN', ctstate=frozenset({'ESTABLISHED', 'RELATED'})),
        Rule(target='RETURN', in_interface='lo'),
    ]
    rules += [Rule(target='RETURN', in_interface=iface) for iface in bridge_interfaces]
    rules.append(Rule(target='RETURN', protocol='tcp', dport=ssh_port))
    if allow_icmp:
        rules.append(Rule(target='RETURN', protocol='icmp'))
    return rules


def deny_rule(set_name: str) -> Rule:
    return Rule(target='DROP', match_set=set_name, match_set_negated=True)


def jump_rule(chain: str) -> Rule:
    return Rule(target=chain)
