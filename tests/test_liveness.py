import datetime

from geo_fence.liveness import LivenessMarker

NOW = datetime.datetime(2024, 5, 1, 12, 0, 0, tzinfo=datetime.timezone.utc)


def test_touch_and_read(tmp_path):
    marker = LivenessMarker(tmp_path / 'state' / 'health')
    marker.touch(NOW)

    assert marker.read() == NOW
    assert marker.path.read_text() == '2024-05-01T12:00:00+00:00\n'
    assert [p.name for p in marker.path.parent.iterdir()] == ['health']


def test_missing_marker(tmp_path):
    marker = LivenessMarker(tmp_path / 'health')
    assert marker.read() is None
    assert not marker.is_fresh(3600)


def test_corrupted_marker(tmp_path, caplog):
    marker = LivenessMarker(tmp_path / 'health')
    marker.path.write_text('yesterday\n')

    assert marker.read() is None
    assert 'corrupted' in caplog.text


def test_naive_timestamp_is_utc(tmp_path):
    marker = LivenessMarker(tmp_path / 'health')
    marker.path.write_text('2024-05-01T12:00:00\n')

    assert marker.read() == NOW


def test_freshness(tmp_path):
    marker = LivenessMarker(tmp_path / 'health')
    marker.touch(NOW)

    assert marker.is_fresh(3600, now=NOW + datetime.timedelta(minutes=59))
    assert not marker.is_fresh(3600, now=NOW + datetime.timedelta(minutes=61))


def test_touch_overwrites(tmp_path):
    marker = LivenessMarker(tmp_path / 'health')
    marker.touch(NOW)
    marker.touch(NOW + datetime.timedelta(days=7))

    assert marker.read() == NOW + datetime.timedelta(days=7)
