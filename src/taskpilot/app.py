"""Composition root — builds providers, tools, audit logging and the service manager."""

from __future__ import annotations

import logging

from taskpilot.agent.service import ServiceManager
from taskpilot.audit.logger import InteractionLogger
from taskpilot.config import TaskPilotConfig
from taskpilot.inference.cloud import CloudProvider
from taskpilot.inference.local import LocalProvider
from taskpilot.inference.model_store import ModelStore, ProgressCallback
from taskpilot.tools.backend import InMemoryTaskBackend, TaskBackend
from taskpilot.tools.registry import create_default_registry

logger = logging.getLogger(__name__)


def build_model_store(config: TaskPilotConfig) -> ModelStore:
    return ModelStore(config.models_dir(), config.local.hf_repo, config.local.hf_file)


async def create_service(
    config: TaskPilotConfig,
    backend: TaskBackend | None = None,
    progress: ProgressCallback | None = None,
) -> ServiceManager:
    """Wire up a ServiceManager with both providers registered but not activated."""
    registry = create_default_registry(backend or InMemoryTaskBackend())
    interaction_logger = await InteractionLogger.open(config.audit_db_path(), config.logging)

    manager = ServiceManager(registry, interaction_logger, config.agent)
    manager.register_provider("cloud", CloudProvider(config.cloud))
    manager.register_provider(
        "local", LocalProvider(config.local, build_model_store(config), progress=progress),
    )
    logger.debug("Service ready with tools: %s", ", ".join(registry.get_available_tools()))
    return manager
