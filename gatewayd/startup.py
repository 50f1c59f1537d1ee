"""
Container-start sequence: restore backup, seed config and workspace,
hydrate the config from the environment, then bring the gateway up.
"""

import logging

from . import backup, hydrator, workspace
from .config import Config, config
from .process import GatewayProcess, GatewaySupervisor, supervisor

logger = logging.getLogger(__name__)


def prepare(settings: Config = config) -> hydrator.ProviderSelection:
    """Everything that must happen before the gateway reads its config."""
    settings.config_dir.mkdir(parents=True, exist_ok=True)
    backup.restore(settings=settings)
    workspace.seed_workspace(settings)
    workspace.ensure_config_file(settings)
    return hydrator.hydrate_file(settings.config_file, settings)


def boot(gateway: GatewaySupervisor = supervisor, settings: Config = config) -> GatewayProcess:
    """Prepare the sandbox and make sure the gateway is running."""
    existing = gateway.find_existing()
    if existing is not None and gateway.is_healthy(existing):
        logger.info(f"Gateway is already running and responsive (PID {existing.pid})")
        return existing

    selection = prepare(settings)
    logger.info(f"Starting gateway with primary model {selection.primary}")
    return gateway.ensure_running()
