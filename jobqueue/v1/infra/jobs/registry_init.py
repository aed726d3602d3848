"""
Job registry initialization.

Registers the default handler for every job type with the global job registry.
"""

from jobqueue.config.logging import get_logger
from jobqueue.config.settings import Settings, settings as default_settings
from jobqueue.v1.core.registries import JobRegistry, job_registry
from jobqueue.v1.infra.jobs.handlers import DEFAULT_HANDLERS

logger = get_logger(__name__)


def register_job_handlers(
    registry: JobRegistry | None = None, settings: Settings | None = None
) -> JobRegistry:
    """Register all job handlers and verify that no job type is left without one."""
    registry = registry if registry is not None else job_registry
    settings = settings or default_settings

    for handler_cls in DEFAULT_HANDLERS:
        if handler_cls.job_type.value not in registry.list():
            registry.register(handler_cls.job_type, handler_cls(settings))

    registry.ensure_complete()

    logger.info("Job handlers registered", registered_handlers=registry.list())
    return registry
