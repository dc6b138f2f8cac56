from __future__ import annotations


class AutoApplyError(Exception):
    """Base class for workflow errors."""


class ConfigurationError(AutoApplyError):
    """The user's setup prevents a run from proceeding. Never retried."""


class ProfileIncomplete(ConfigurationError):
    pass


class NoResumeFile(ConfigurationError):
    pass


class UserInactive(ConfigurationError):
    pass


class NoJobTarget(AutoApplyError):
    pass


class JobNotFound(AutoApplyError):
    pass


class GenerationUnavailable(AutoApplyError):
    def __init__(self, kind: str, message: str):
        super().__init__(f"generation '{kind}' unavailable: {message}")
        self.kind = kind


class SubmissionError(AutoApplyError):
    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RunControlError(AutoApplyError):
    pass


class AlreadyRunning(RunControlError):
    def __init__(self, run_id: int):
        super().__init__(f"run {run_id} is already running")
        self.run_id = run_id


class RunNotFound(RunControlError):
    pass


class NotRunOwner(RunControlError):
    pass


class RunNotActive(RunControlError):
    pass
