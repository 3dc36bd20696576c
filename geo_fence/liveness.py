import datetime
import logging
import os
import pathlib
import typing

logger = logging.getLogger('geofence.liveness')


class LivenessMarker:
    """ISO-8601 timestamp of the last successful update cycle"""

    def __init__(self, path: typing.Union[str, pathlib.Path]):
        self.path = pathlib.Path(path)

    def touch(self, now: typing.Optional[datetime.datetime] = None):
        if now is None:
            now = datetime.datetime.now(datetime.timezone.utc)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + '.tmp')
        tmp_path.write_text(now.isoformat(timespec='seconds') + '\n')
        os.replace(tmp_path, self.path)
        logger.debug('Liveness marker %s updated', self.path)

    def read(self) -> typing.Optional[datetime.datetime]:
        try:
            content = self.path.read_text().strip()
        except FileNotFoundError:
            return None

        try:
            timestamp = datetime.datetime.fromisoformat(content)
        except ValueError:
            logger.warning('Liveness marker %s is corrupted: %r', self.path, content[:64])
            return None

        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=datetime.timezone.utc)
        return timestamp

    def is_fresh(self, max_age: float, now: typing.Optional[datetime.datetime] = None) -> bool:
        timestamp = self.read()
        if timestamp is None:
            return False

        if now is None:
            now = datetime.datetime.now(datetime.timezone.utc)

        return (now - timestamp).total_seconds() < max_age
