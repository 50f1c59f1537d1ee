"""
Backup sync between the sandbox filesystem and the remote backup store.

The store is a bucket mounted into the sandbox at BACKUP_DIR. Layout:

    <root>/clawdbot/     gateway config tree
    <root>/skills/       workspace skills
    <root>/.last-sync    sync marker

Older backups kept the config tree flat at <root>/clawdbot.json; those are
still restorable. A restore only happens when the remote marker is strictly
newer than the local one, so fresher local state is never clobbered.
"""

import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .config import Config, config
from .models import record_event

logger = logging.getLogger(__name__)

MARKER_NAME = ".last-sync"
CONFIG_NAME = "clawdbot.json"
EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)

PUSH_IGNORE = shutil.ignore_patterns("*.lock", MARKER_NAME, ".clawdbot-*.json")


def parse_marker(text: str) -> datetime:
    """Parse a marker timestamp. Anything unparseable counts as the epoch."""
    text = (text or "").strip()
    if not text:
        return EPOCH
    try:
        stamp = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            stamp = datetime.fromtimestamp(float(text), tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            logger.warning(f"Unparseable sync marker {text!r}, treating as epoch")
            return EPOCH
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp


def read_marker(path: Path) -> Optional[datetime]:
    """Read a marker file. None means there is no marker at all."""
    try:
        return parse_marker(Path(path).read_text(errors="replace"))
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning(f"Could not read sync marker {path}: {e}")
        return EPOCH


def should_restore(local: Optional[datetime], remote: Optional[datetime]) -> bool:
    """Restore only when the remote marker is strictly newer, or there is no local one."""
    if remote is None:
        return False
    if local is None:
        return True
    return remote > local


def now_marker() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _copy_tree(src: Path, dest: Path, ignore=None):
    dest.mkdir(parents=True, exist_ok=True)
    shutil.copytree(src, dest, ignore=ignore, dirs_exist_ok=True)


class MountedBackupStore:
    """Backup store backed by a bucket mounted on the local filesystem."""

    def __init__(self, root: Path):
        self.root = Path(root)

    @property
    def marker_path(self) -> Path:
        return self.root / MARKER_NAME

    @property
    def config_dir(self) -> Path:
        return self.root / "clawdbot"

    @property
    def skills_dir(self) -> Path:
        return self.root / "skills"

    def available(self) -> bool:
        return self.root.is_dir()

    def read_marker(self) -> Optional[datetime]:
        return read_marker(self.marker_path)

    def write_marker(self, stamp: str):
        self.marker_path.write_text(stamp)

    def has_config(self) -> bool:
        return (self.config_dir / CONFIG_NAME).is_file() or self.has_legacy_config()

    def has_legacy_config(self) -> bool:
        return (self.root / CONFIG_NAME).is_file()

    def has_skills(self) -> bool:
        return self.skills_dir.is_dir() and any(self.skills_dir.iterdir())

    def pull_config(self, dest: Path):
        if (self.config_dir / CONFIG_NAME).is_file():
            _copy_tree(self.config_dir, dest)
        else:
            _copy_tree(self.root, dest, ignore=shutil.ignore_patterns("skills", "clawdbot"))

    def pull_skills(self, dest: Path):
        _copy_tree(self.skills_dir, dest)

    def push_config(self, src: Path):
        _copy_tree(src, self.config_dir, ignore=PUSH_IGNORE)

    def push_skills(self, src: Path):
        _copy_tree(src, self.skills_dir)


def get_store(settings: Config = config) -> MountedBackupStore:
    return MountedBackupStore(settings.backup_dir)


def restore(store: MountedBackupStore = None, settings: Config = config) -> bool:
    """Restore config and skills from the store if its marker is newer. Returns True if restored."""
    store = store or get_store(settings)
    if not store.available():
        logger.info(f"Backup store not mounted at {store.root}, starting fresh")
        return False
    if not store.has_config() and not store.has_skills():
        logger.info(f"Backup store at {store.root} has no backup data yet")
        return False

    local_marker_path = settings.config_dir / MARKER_NAME
    local = read_marker(local_marker_path)
    remote = store.read_marker()
    logger.info(f"Backup last sync: {remote}, local last sync: {local}")

    if not should_restore(local, remote):
        logger.info("Local data is newer or same, skipping restore")
        return False

    try:
        if store.has_config():
            store.pull_config(settings.config_dir)
            logger.info(f"Restored config from {store.root}")
        if store.has_skills():
            store.pull_skills(settings.workspace_dir / "skills")
            logger.info(f"Restored skills from {store.skills_dir}")
        settings.config_dir.mkdir(parents=True, exist_ok=True)
        shutil.copy2(store.marker_path, local_marker_path)
    except OSError as e:
        logger.error(f"Backup restore failed: {e}")
        record_event("restore_failed", str(e))
        return False

    record_event("restore", f"Restored backup from {store.root} (marker {remote.isoformat()})")
    return True


def push(store: MountedBackupStore = None, settings: Config = config) -> bool:
    """Push local config and skills to the store and stamp both markers."""
    store = store or get_store(settings)
    if not store.available():
        logger.debug(f"Backup store not mounted at {store.root}, skipping push")
        return False
    if not settings.config_file.is_file():
        logger.warning(f"No {CONFIG_NAME} in {settings.config_dir}, refusing to push an empty backup")
        return False

    try:
        store.push_config(settings.config_dir)
        skills = settings.workspace_dir / "skills"
        if skills.is_dir():
            store.push_skills(skills)
        stamp = now_marker()
        store.write_marker(stamp)
        (settings.config_dir / MARKER_NAME).write_text(stamp)
    except OSError as e:
        logger.error(f"Backup push failed: {e}")
        return False

    logger.info(f"Pushed backup to {store.root} at {stamp}")
    return True
