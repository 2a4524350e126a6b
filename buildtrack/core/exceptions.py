"""
Platform-wide exception hierarchy.

Services raise these; blueprints register handlers against them once and
get consistent HTTP status codes everywhere.

Usage:
    from buildtrack.core.exceptions import NotFoundError, InvalidTransitionError

    raise NotFoundError(resource="Task", resource_id=task_id)
    raise InvalidTransitionError("Phase cannot be completed", total_tasks=3, completed_tasks=2)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Args:
        resource: Human-readable entity name (e.g. "Task", "Phase").
        resource_id: The key that was looked up. Included in logs and message.
        project_id: Optional — the project scope that was enforced.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        project_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.project_id = project_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if project_id is not None:
            msg += f" (project={project_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidTransitionError(Exception):
    """Raised when a requested state change is not allowed.

    The phase-completion gate fills ``total_tasks`` / ``completed_tasks`` so
    the caller can show how far the phase is from completion. Maps to
    HTTP 409.
    """

    def __init__(
        self,
        message: str,
        *,
        total_tasks: int | None = None,
        completed_tasks: int | None = None,
    ) -> None:
        self.total_tasks = total_tasks
        self.completed_tasks = completed_tasks
        super().__init__(message)

    @property
    def details(self) -> dict:
        if self.total_tasks is None:
            return {}
        return {
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
        }


class CorruptionError(Exception):
    """Raised when a task references a phase that does not exist.

    Not a steady state: the orphan cleanup routine repairs it.
    """

    def __init__(self, project_id: int, task_id: str, parent_phase_id: str) -> None:
        self.project_id = project_id
        self.task_id = task_id
        self.parent_phase_id = parent_phase_id
        super().__init__(
            f"Task {task_id} references missing phase {parent_phase_id} "
            f"(project={project_id})"
        )


class UpstreamUnavailableError(Exception):
    """Raised when a store call fails.

    The current operation is aborted without mutating stored state. Callers
    may retry; this must never be read as "no data".
    """

    def __init__(self, store: str, operation: str, cause: Exception | None = None) -> None:
        self.store = store
        self.operation = operation
        self.cause = cause
        msg = f"{store} unavailable during {operation}"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)
