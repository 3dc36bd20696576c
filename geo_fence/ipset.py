import errno
import logging
import socket
import threading
import typing

from pyroute2 import IPSet
from pyroute2.netlink.exceptions import NetlinkError

from .exceptions import PrerequisiteError
from .exceptions import SetBuildError
from .models import WORKING_SET_SUFFIX

logger = logging.getLogger('geofence.ipset')

SET_TYPE = 'hash:net'
DEFAULT_MAXELEM = 65536
MAX_LOGGED_ADD_FAILURES = 10


class IPSetBackend:
    """Kernel ``hash:net`` IPv4 sets over netlink

    Any other object with the same methods can stand in for it,
    :class:`SetBuilder` only relies on this interface.
    """

    def __init__(self):
        self._ipset = None

    @property
    def ipset(self) -> IPSet:
        if self._ipset is None:
            self._ipset = IPSet()
        return self._ipset

    def close(self):
        if self._ipset is not None:
            self._ipset.close()
            self._ipset = None

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def check(self):
        try:
            self.ipset.get_proto_version()
        except (NetlinkError, OSError) as exc:
            raise PrerequisiteError(f'ipset subsystem is not usable (CAP_NET_ADMIN required?): {exc}') from exc

    def exists(self, name: str) -> bool:
        try:
            self.ipset.headers(name)
        except NetlinkError as exc:
            if exc.code == errno.ENOENT:
                return False
            raise
        return True

    def create(self, name: str, maxelem: int = DEFAULT_MAXELEM):
        self.ipset.create(name, stype=SET_TYPE, family=socket.AF_INET, maxelem=maxelem)

    def add(self, name: str, cidr: str):
        self.ipset.add(name, cidr, etype='net')

    def swap(self, set_a: str, set_b: str):
        self.ipset.swap(set_a, set_b)

    def destroy(self, name: str):
        self.ipset.destroy(name)


class SetBuildResult(typing.NamedTuple):
    added: int
    failed: int


class SetBuilder:
    """Replace live set contents through a working set and an atomic swap

    The live set keeps its old contents until the replacement is complete,
    the working set never outlives :meth:`replace`.
    """

    def __init__(self, backend, name: str):
        self.backend = backend
        self.name = name
        self.working_name = name + WORKING_SET_SUFFIX
        self._aborted = threading.Event()

    def abort(self):
        """Stop a running :meth:`replace` from another thread, the live set stays as it was"""
        self._aborted.set()

    def replace(self, ranges: typing.Sequence[str]) -> SetBuildResult:
        try:
            return self._replace(ranges)
        finally:
            self._cleanup()

    def _replace(self, ranges: typing.Sequence[str]) -> SetBuildResult:
        backend = self.backend
        working_name = self.working_name

        maxelem = max(DEFAULT_MAXELEM, int(len(ranges) * 1.25))

        try:
            if backend.exists(working_name):
                logger.warning('Leftover working set %s found, destroying it', working_name)
                backend.destroy(working_name)

            logger.info('Creating working set %s (maxelem=%s)', working_name, maxelem)
            backend.create(working_name, maxelem=maxelem)
        except NetlinkError as exc:
            raise SetBuildError(f'Can not create working set {working_name}: {exc}') from exc

        added = failed = 0
        for cidr in ranges:
            if self._aborted.is_set():
                raise SetBuildError(f'Build of {working_name} aborted, live set {self.name} left untouched')

            try:
                backend.add(working_name, cidr)
            except NetlinkError as exc:
                failed += 1
                if failed <= MAX_LOGGED_ADD_FAILURES:
                    logger.warning('Failed to add %s to %s: %s', cidr, working_name, exc)
            else:
                added += 1

        if failed:
            logger.warning('%s of %s entries could not be added to %s', failed, len(ranges), working_name)

        if not added:
            raise SetBuildError(f'No entries could be added to {working_name}, live set {self.name} left untouched')

        try:
            if not backend.exists(self.name):
                logger.info('Live set %s does not exist yet, creating it', self.name)
                backend.create(self.name, maxelem=maxelem)

            logger.info('Swapping %s <-> %s', working_name, self.name)
            backend.swap(working_name, self.name)
        except NetlinkError as exc:
            raise SetBuildError(f'Can not swap {working_name} into {self.name}: {exc}') from exc

        logger.info('Live set %s now holds %s entries', self.name, added)
        return SetBuildResult(added=added, failed=failed)

    def _cleanup(self):
        try:
            if self.backend.exists(self.working_name):
                self.backend.destroy(self.working_name)
        except NetlinkError as exc:
            logger.error('Failed to destroy working set %s: %s', self.working_name, exc)
            raise SetBuildError(f'Can not destroy working set {self.working_name}: {exc}') from exc
