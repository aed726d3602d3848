import pytest

from jobqueue.config.settings import Settings
from jobqueue.v1.core.registries import JobRegistry, Registry
from jobqueue.v1.infra.jobs.handlers import DelegatingJobHandler, MeetingRescanHandler
from jobqueue.v1.infra.jobs.models import JobType
from jobqueue.v1.infra.jobs.registry_init import register_job_handlers


class NoopHandler:
    async def handle(self, context):
        return None


def test_registry_basic_operations():
    """Test basic registry register, get, list operations."""
    registry = Registry[str]("Test")

    assert registry.list() == []

    registry.register("test_impl", "test_value")
    assert registry.get("test_impl") == "test_value"
    assert registry.list() == ["test_impl"]

    with pytest.raises(KeyError, match="No test implementation registered"):
        registry.get("nonexistent")


def test_registry_freeze():
    """Frozen registries refuse new registrations."""
    registry = Registry[str]("Test")
    registry.register("before", "value")
    registry.freeze()

    assert registry.is_frozen()
    with pytest.raises(RuntimeError, match="registry is frozen"):
        registry.register("after", "value")
    assert registry.get("before") == "value"


def test_job_registry_accepts_enum_and_string_keys():
    registry = JobRegistry()
    handler = NoopHandler()

    registry.register(JobType.FATHOM_SYNC, handler)

    assert registry.get(JobType.FATHOM_SYNC) is handler
    assert registry.get("fathom-sync") is handler


def test_job_registry_rejects_unknown_type():
    registry = JobRegistry()

    with pytest.raises(KeyError, match="Unknown job type"):
        registry.register("send-newsletter", NoopHandler())


def test_ensure_complete_lists_missing_types():
    registry = JobRegistry()
    registry.register(JobType.FATHOM_SYNC, NoopHandler())

    assert "fathom-sync" not in registry.missing()
    assert len(registry.missing()) == len(JobType) - 1

    with pytest.raises(RuntimeError, match="meeting-rescan"):
        registry.ensure_complete()


def test_register_job_handlers_covers_every_type():
    registry = JobRegistry()
    settings = Settings(_env_file=None)

    register_job_handlers(registry, settings)

    registry.ensure_complete()
    assert set(registry.list()) == {jt.value for jt in JobType}
    for job_type in JobType:
        handler = registry.get(job_type)
        assert isinstance(handler, DelegatingJobHandler)
        assert handler.job_type == job_type


def test_register_job_handlers_keeps_existing_overrides():
    registry = JobRegistry()
    custom = NoopHandler()
    registry.register(JobType.MEETING_RESCAN, custom)

    register_job_handlers(registry, Settings(_env_file=None))

    assert registry.get(JobType.MEETING_RESCAN) is custom
    assert not isinstance(registry.get(JobType.MEETING_RESCAN), MeetingRescanHandler)
