from typing import Any, Generic, Protocol, TypeVar

from jobqueue.v1.infra.jobs.models import JobType

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - background processing handlers
class JobHandler(Protocol):
    """Protocol for job handlers that process background tasks."""

    async def handle(self, context: Any) -> dict[str, Any] | None:
        """
        Handle a background job.

        Args:
            context: JobContext with user_id, decoded payload, correlation_id
                and a job-bound logger

        Returns:
            Optional result dictionary to store with the succeeded job

        Raises:
            HandlerError (or any exception) with a human-readable message
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for background job handlers, keyed by the closed JobType set."""

    def __init__(self):
        super().__init__("Job")

    def register(self, name: str | JobType, implementation: JobHandler) -> None:
        try:
            job_type = JobType(name)
        except ValueError:
            raise KeyError(f"Unknown job type: {name}") from None
        super().register(job_type.value, implementation)

    def get(self, name: str | JobType) -> JobHandler:
        key = name.value if isinstance(name, JobType) else name
        return super().get(key)

    def missing(self) -> list[str]:
        """Job types that have no handler yet."""
        return [jt.value for jt in JobType if jt.value not in self._implementations]

    def ensure_complete(self) -> None:
        """Fail startup unless every JobType has a registered handler."""
        missing = self.missing()
        if missing:
            raise RuntimeError(
                f"No job handler registered for: {', '.join(missing)}"
            )


# Global registry instance (singleton)
job_registry = JobRegistry()
