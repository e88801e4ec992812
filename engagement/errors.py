class EngagementError(Exception):
    pass


class TaskNotFoundError(EngagementError):
    pass


class TaskNotAvailableError(EngagementError):
    def __init__(self, message: str = "Task not available"):
        super().__init__(message)


class AlreadyCompletedError(EngagementError):
    def __init__(self, message: str = "Already completed"):
        super().__init__(message)


class NotMemberError(EngagementError):
    def __init__(self, message: str = "Not a member of the channel"):
        super().__init__(message)


class VerificationAttemptsExceededError(EngagementError):
    pass


class OracleUnavailableError(EngagementError):
    """Membership could not be determined; retry later. Never a negative answer."""


class OracleNotConfiguredError(OracleUnavailableError):
    pass


class OrphanedReferenceError(EngagementError):
    pass
