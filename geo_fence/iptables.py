import asyncio
import logging
import os
import shlex
import typing

from .exceptions import PrerequisiteError
from .exceptions import RuleReconcileError
from .models import Rule
from .models import deny_rule
from .models import jump_rule

logger = logging.getLogger('geofence.iptables')

# matches iptables adds on its own when listing rules
IMPLIED_MODULES = frozenset({'tcp', 'udp', 'icmp', 'conntrack', 'state', 'set'})

HOST_CHAIN = 'INPUT'


def parse_rule(line: str) -> typing.Optional[typing.Tuple[str, Rule]]:  # noqa: C901
    """Parse one ``iptables -S`` line into ``(chain, Rule)``

    Policy (``-P``) and chain (``-N``) lines give None.
    """
    tokens = shlex.split(line)
    if len(tokens) < 2 or tokens[0] != '-A':
        return None

    chain = tokens[1]
    fields = {}
    extra = []
    negate = False

    it = iter(tokens[2:])
    for token in it:
        if token == '!':
            negate = True
            continue

        if token in ('-p', '--protocol') and not negate:
            fields['protocol'] = next(it, '')
        elif token in ('-i', '--in-interface') and not negate:
            fields['in_interface'] = next(it, '')
        elif token in ('-m', '--match') and not negate:
            module = next(it, '')
            if module not in IMPLIED_MODULES:
                extra += [token, module]
        elif token in ('--ctstate', '--state') and not negate:
            fields['ctstate'] = frozenset(next(it, '').split(','))
        elif token in ('--dport', '--destination-port') and not negate:
            value = next(it, '')
            if value.isdigit():
                fields['dport'] = int(value)
            else:
                extra += [token, value]
        elif token == '--match-set':
            name = next(it, '')
            direction = next(it, '')
            if direction == 'src':
                fields['match_set'] = name
                fields['match_set_negated'] = negate
            else:
                extra += (['!'] if negate else []) + [token, name, direction]
        elif token in ('-j', '--jump') and not negate:
            fields['target'] = next(it, '')
        else:
            if negate:
                extra.append('!')
            extra.append(token)

        negate = False

    fields.setdefault('target', '')
    return chain, Rule(extra=tuple(extra), **fields)


def parse_rules(output: str, chain: str) -> typing.List[Rule]:
    rules = []
    for line in output.splitlines():
        parsed = parse_rule(line)
        if parsed is None:
            continue

        rule_chain, rule = parsed
        if rule_chain == chain:
            rules.append(rule)

    return rules


class IptablesBackend:
    """Run the packet filter executable, one subprocess per operation"""

    def __init__(self, executable: str = 'iptables'):
        self.executable = executable

    async def _run(self, *args, check=True) -> typing.Tuple[int, str]:
        cmd = [self.executable, '-w', *args]
        logger.debug('Run %s', cmd)

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise RuleReconcileError(f'Can not run {self.executable}: {exc}') from exc

        stdout, stderr = await process.communicate()
        retcode = process.returncode

        if check and retcode != os.EX_OK:
            raise RuleReconcileError(f'{" ".join(cmd)} exit with code {retcode}: {stderr.decode().strip()}')

        return retcode, stdout.decode()

    async def check(self):
        try:
            retcode, _ = await self._run('-S', HOST_CHAIN, check=False)
        except RuleReconcileError as exc:
            raise PrerequisiteError(str(exc)) from exc

        if retcode != os.EX_OK:
            raise PrerequisiteError(f'{self.executable} can not list {HOST_CHAIN} (exit code {retcode}), root required?')

    async def chain_exists(self, chain: str) -> bool:
        retcode, _ = await self._run('-S', chain, check=False)
        return retcode == os.EX_OK

    async def create_chain(self, chain: str):
        await self._run('-N', chain)

    async def list_rules(self, chain: str) -> typing.List[Rule]:
        _, output = await self._run('-S', chain)
        return parse_rules(output, chain)

    async def insert(self, chain: str, rule: Rule, position: int = 1):
        await self._run('-I', chain, str(position), *rule.to_args())

    async def append(self, chain: str, rule: Rule):
        await self._run('-A', chain, *rule.to_args())

    async def delete(self, chain: str, rule: Rule):
        await self._run('-D', chain, *rule.to_args())


class ReconcileResult(typing.NamedTuple):
    hooks: typing.List[str]

    @property
    def scope(self) -> str:
        return 'host+containers' if len(self.hooks) > 1 else 'host'


class RuleReconciler:
    """Keep the geo-fence chain and the jumps into it in place

    The dedicated chain holds the exception rules followed by exactly one
    deny rule; every hook chain holds exactly one jump into it.
    Rules are compared structurally, so running it again changes nothing.
    """

    def __init__(
        self,
        backend,
        chain: str,
        set_name: str,
        exceptions: typing.Sequence[Rule],
        container_hook: typing.Optional[str] = 'DOCKER-USER',
    ):
        self.backend = backend
        self.chain = chain
        self.exceptions = list(exceptions)
        self.deny = deny_rule(set_name)
        self.jump = jump_rule(chain)
        self.container_hook = container_hook

    @property
    def policy(self) -> typing.List[Rule]:
        return self.exceptions + [self.deny]

    async def reconcile(self) -> ReconcileResult:
        await self._ensure_chain()
        await self._ensure_policy()

        hooks = await self.get_hooks()
        for hook in hooks:
            await self._ensure_jump(hook)

        return ReconcileResult(hooks=hooks)

    async def get_hooks(self) -> typing.List[str]:
        hooks = [HOST_CHAIN]
        if self.container_hook:
            if await self.backend.chain_exists(self.container_hook):
                hooks.append(self.container_hook)
            else:
                logger.info('Chain %s not found, protecting host traffic only', self.container_hook)
        return hooks

    async def _ensure_chain(self):
        if not await self.backend.chain_exists(self.chain):
            logger.info('Creating chain %s', self.chain)
            await self.backend.create_chain(self.chain)

    async def _ensure_policy(self):
        backend = self.backend
        chain = self.chain
        rules = await backend.list_rules(chain)

        missing = [rule for rule in self.exceptions if rule not in rules]
        for rule in reversed(missing):
            logger.info('Insert into %s: %s', chain, rule)
            await backend.insert(chain, rule, 1)
        rules = missing + rules

        while rules.count(self.deny) > 1:
            logger.warning('Duplicate deny rule in %s, removing', chain)
            await backend.delete(chain, self.deny)
            rules.remove(self.deny)

        if self.deny not in rules:
            logger.info('Append to %s: %s', chain, self.deny)
            await backend.append(chain, self.deny)
            rules.append(self.deny)
        elif any(rules.index(rule) > rules.index(self.deny) for rule in self.exceptions):
            logger.warning('Deny rule in %s precedes an exception, moving it to the end', chain)
            await backend.delete(chain, self.deny)
            await backend.append(chain, self.deny)
            rules.remove(self.deny)
            rules.append(self.deny)

        policy = self.policy
        for rule in [rule for rule in rules if rule not in policy]:
            logger.info('Remove stale rule from %s: %s', chain, rule)
            try:
                await backend.delete(chain, rule)
            except RuleReconcileError as exc:
                logger.warning('Stale rule %s stays in %s: %s', rule, chain, exc)

    async def _ensure_jump(self, hook: str):
        count = (await self.backend.list_rules(hook)).count(self.jump)
        if not count:
            logger.info('Insert jump %s -> %s', hook, self.chain)
            await self.backend.insert(hook, self.jump, 1)

        while count > 1:
            logger.warning('Duplicate jump %s -> %s, removing', hook, self.chain)
            await self.backend.delete(hook, self.jump)
            count -= 1

    async def verify(self, hooks: typing.Sequence[str]):
        rules = await self.backend.list_rules(self.chain)

        deny_count = rules.count(self.deny)
        if deny_count != 1:
            raise RuleReconcileError(f'Expected exactly one deny rule in {self.chain}, found {deny_count}')

        deny_position = rules.index(self.deny)
        for rule in self.exceptions:
            if rule not in rules:
                raise RuleReconcileError(f'Exception rule missing in {self.chain}: {rule}')
            if rules.index(rule) > deny_position:
                raise RuleReconcileError(f'Exception rule placed after deny rule in {self.chain}: {rule}')

        for hook in hooks:
            count = (await self.backend.list_rules(hook)).count(self.jump)
            if count != 1:
                raise RuleReconcileError(f'Expected exactly one jump {hook} -> {self.chain}, found {count}')

        logger.info('Rules verified: %s rules in %s, hooked from %s', len(rules), self.chain, ', '.join(hooks))
