from __future__ import annotations


class DomainError(Exception):
    pass


class DomainValidationError(DomainError):
    pass


class DomainInvariantError(DomainError):
    pass


class DomainDependencyError(DomainError):
    pass


class ConfigurationError(DomainValidationError):
    """Planner input cannot produce a distribution (empty sources, bad quota)."""


class SessionNotFoundError(DomainError):
    pass


class SourceNotFoundError(DomainError):
    pass


class SequenceBusyError(DomainInvariantError):
    """A source of the session is still running, so nothing new may be launched."""


class LaunchError(DomainDependencyError):
    def __init__(self, message: str, *, session_id: str, source_id: str) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.source_id = source_id


class StoreError(DomainDependencyError):
    pass


class RunnerError(DomainDependencyError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RunnerNotFoundError(RunnerError):
    pass


class RunnerAuthError(RunnerError):
    pass


class RunnerTransientError(RunnerError):
    pass


class RunnerRejectedError(RunnerError):
    pass
