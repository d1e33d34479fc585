class FundingServiceError(Exception):
    """Base class for every failure the funding engine signals."""

    code = "FUNDING_ERROR"


class InvalidInputError(FundingServiceError):
    code = "VALIDATION_ERROR"


class InvalidAmountError(InvalidInputError):
    code = "INVALID_AMOUNT"


class ResourceNotFoundError(FundingServiceError):
    code = "NOT_FOUND"


class ProjectNotFoundError(ResourceNotFoundError):
    code = "PROJECT_NOT_FOUND"


class RefundNotFoundError(ResourceNotFoundError):
    code = "REFUND_NOT_FOUND"


class ForbiddenError(FundingServiceError):
    code = "FORBIDDEN"


class StateConflictError(FundingServiceError):
    code = "STATE_CONFLICT"


class DeadlinePassedError(StateConflictError):
    code = "DEADLINE_PASSED"


class ProjectInactiveError(StateConflictError):
    code = "PROJECT_INACTIVE"


class GoalNotMetError(StateConflictError):
    code = "GOAL_NOT_MET"


class GoalAlreadyMetError(StateConflictError):
    code = "GOAL_ALREADY_MET"


class AlreadyWithdrawnError(StateConflictError):
    code = "ALREADY_WITHDRAWN"


class RefundAlreadyApprovedError(StateConflictError):
    code = "REFUND_ALREADY_APPROVED"
