"""
First-boot seeding of the gateway config file and agent workspace.

Template files are only ever copied where the target is missing, so a
restored or user-edited workspace is left alone.
"""

import json
import logging
import shutil
from pathlib import Path

from .config import Config, config

logger = logging.getLogger(__name__)

TEMPLATE_CONFIG = "moltbot.json.template"
WORKSPACE_FILES = ["SOUL.md", "HEARTBEAT.md", "MEMORY.md", "IDENTITY.md", "USER.md"]
WORKSPACE_SUBDIRS = ["memory", ".learnings"]


def minimal_config(settings: Config = config) -> dict:
    return {
        "agents": {"defaults": {"workspace": str(settings.workspace_dir)}},
        "gateway": {"port": settings.gateway_port, "mode": "local"},
    }


def ensure_config_file(settings: Config = config) -> bool:
    """Create the config file from the template (or a minimal one) if missing.

    Returns True if a new file was written.
    """
    path = settings.config_file
    if path.exists():
        logger.info(f"Using existing config {path}")
        return False

    path.parent.mkdir(parents=True, exist_ok=True)
    template = settings.template_dir / TEMPLATE_CONFIG
    if template.is_file():
        logger.info(f"No existing config found, initializing from {template}")
        shutil.copy2(template, path)
    else:
        logger.info("No config template found, writing minimal config")
        path.write_text(json.dumps(minimal_config(settings), indent=2))
    return True


def _copy_missing(src: Path, dest: Path) -> bool:
    if dest.exists() or not src.is_file():
        return False
    dest.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(src, dest)
    return True


def seed_workspace(settings: Config = config) -> list[str]:
    """Copy identity/memory templates into the workspace. Returns the files created."""
    templates = settings.template_dir / "workspace"
    workspace = settings.workspace_dir
    if not templates.is_dir():
        logger.info("No workspace templates found, skipping initialization")
        return []

    created = []
    for name in WORKSPACE_FILES:
        if _copy_missing(templates / name, workspace / name):
            created.append(name)

    for subdir in WORKSPACE_SUBDIRS:
        (workspace / subdir).mkdir(parents=True, exist_ok=True)
        source = templates / subdir
        if not source.is_dir():
            continue
        for template in sorted(source.glob("*.md")):
            if _copy_missing(template, workspace / subdir / template.name):
                created.append(f"{subdir}/{template.name}")

    for name in created:
        logger.info(f"Initialized {name}")
    return created
