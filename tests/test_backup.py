import json
from datetime import datetime, timezone

import pytest

from gatewayd import backup
from gatewayd.backup import EPOCH, MountedBackupStore, parse_marker, should_restore


def _seed_remote(settings, marker="2026-01-02T00:00:00+00:00", legacy=False):
    root = settings.backup_dir
    config_dir = root if legacy else root / "clawdbot"
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "clawdbot.json").write_text(json.dumps({"restored": True}))
    skills = root / "skills" / "greet"
    skills.mkdir(parents=True)
    (skills / "SKILL.md").write_text("# greet")
    if marker is not None:
        (root / ".last-sync").write_text(marker)
    return MountedBackupStore(root)


@pytest.mark.parametrize(
    "local,remote,expected",
    [
        (None, None, False),
        (None, EPOCH, True),
        (EPOCH, None, False),
        (datetime(2026, 1, 1, tzinfo=timezone.utc), datetime(2026, 1, 1, tzinfo=timezone.utc), False),
        (datetime(2026, 1, 1, tzinfo=timezone.utc), datetime(2026, 1, 2, tzinfo=timezone.utc), True),
        (datetime(2026, 1, 2, tzinfo=timezone.utc), datetime(2026, 1, 1, tzinfo=timezone.utc), False),
    ],
)
def test_should_restore(local, remote, expected):
    assert should_restore(local, remote) is expected


def test_parse_marker_formats():
    assert parse_marker("2026-01-02T03:04:05Z") == datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert parse_marker("2026-01-02T03:04:05") == datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert parse_marker("0") == EPOCH
    assert parse_marker("garbage") == EPOCH
    assert parse_marker("") == EPOCH


def test_restore_when_no_local_marker(settings):
    store = _seed_remote(settings)

    assert backup.restore(store, settings) is True

    assert json.loads(settings.config_file.read_text()) == {"restored": True}
    assert (settings.workspace_dir / "skills" / "greet" / "SKILL.md").is_file()
    assert (settings.config_dir / ".last-sync").read_text() == "2026-01-02T00:00:00+00:00"


def test_equal_markers_do_not_restore(settings):
    store = _seed_remote(settings)
    settings.config_dir.mkdir(parents=True)
    settings.config_file.write_text(json.dumps({"local": True}))
    (settings.config_dir / ".last-sync").write_text("2026-01-02T00:00:00+00:00")

    assert backup.restore(store, settings) is False
    assert json.loads(settings.config_file.read_text()) == {"local": True}


def test_newer_remote_marker_restores(settings):
    store = _seed_remote(settings, marker="2026-01-03T00:00:00Z")
    settings.config_dir.mkdir(parents=True)
    settings.config_file.write_text(json.dumps({"local": True}))
    (settings.config_dir / ".last-sync").write_text("2026-01-02T00:00:00+00:00")

    assert backup.restore(store, settings) is True
    assert json.loads(settings.config_file.read_text()) == {"restored": True}


def test_missing_remote_marker_never_restores(settings):
    store = _seed_remote(settings, marker=None)
    assert backup.restore(store, settings) is False
    assert not settings.config_file.exists()


def test_legacy_flat_layout_restores_config_only(settings):
    store = _seed_remote(settings, legacy=True)

    assert backup.restore(store, settings) is True

    assert json.loads(settings.config_file.read_text()) == {"restored": True}
    assert not (settings.config_dir / "skills").exists()
    assert not (settings.config_dir / "clawdbot").exists()


def test_unmounted_store_is_skipped(settings):
    assert backup.restore(MountedBackupStore(settings.backup_dir), settings) is False


def test_push_copies_config_and_stamps_markers(settings):
    settings.backup_dir.mkdir()
    settings.config_dir.mkdir(parents=True)
    settings.config_file.write_text("{}")
    (settings.config_dir / "gateway.lock").write_text("")
    skills = settings.workspace_dir / "skills"
    skills.mkdir(parents=True)
    (skills / "note.md").write_text("x")
    store = MountedBackupStore(settings.backup_dir)

    assert backup.push(store, settings) is True

    assert (store.config_dir / "clawdbot.json").is_file()
    assert not (store.config_dir / "gateway.lock").exists()
    assert (store.skills_dir / "note.md").is_file()
    remote = store.read_marker()
    assert remote is not None and remote > EPOCH
    assert (settings.config_dir / ".last-sync").read_text() == store.marker_path.read_text()


def test_push_refuses_without_local_config(settings):
    settings.backup_dir.mkdir()
    store = MountedBackupStore(settings.backup_dir)
    assert backup.push(store, settings) is False
    assert not store.marker_path.exists()


def test_pushed_backup_is_not_restored_over_itself(settings):
    settings.backup_dir.mkdir()
    settings.config_dir.mkdir(parents=True)
    settings.config_file.write_text("{}")
    store = MountedBackupStore(settings.backup_dir)
    backup.push(store, settings)

    assert backup.restore(store, settings) is False


def test_undecodable_remote_marker_counts_as_epoch(settings):
    store = _seed_remote(settings)
    store.marker_path.write_bytes(b"\xff\xfe")
    settings.config_dir.mkdir(parents=True)
    settings.config_file.write_text(json.dumps({"local": True}))
    (settings.config_dir / ".last-sync").write_text("2026-01-02T00:00:00+00:00")

    assert store.read_marker() == EPOCH
    assert backup.restore(store, settings) is False
    assert json.loads(settings.config_file.read_text()) == {"local": True}
