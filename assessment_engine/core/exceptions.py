"""
Domain exceptions raised by the assessment services.

Each error carries the HTTP status and error type used by the API's
exception handler, so routers never translate them by hand.
"""
from typing import List, Optional


class AssessmentError(Exception):
    """Base class for all assessment engine errors."""

    status_code: int = 400
    error_type: str = "assessment_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InsufficientQuestionsError(AssessmentError):
    """Eligible pool is smaller than the number of questions the mode needs."""

    status_code = 422
    error_type = "insufficient_questions"

    def __init__(self, available: int, required: int, levels: List[str], subject: str):
        super().__init__(
            f"Only {available} questions available for {subject} "
            f"({', '.join(levels)}), {required} required"
        )
        self.available = available
        self.required = required
        self.levels = list(levels)
        self.subject = subject


class ExamValidationError(AssessmentError):
    status_code = 422
    error_type = "validation_error"


class ExternalServiceError(AssessmentError):
    """Semantic service failed, timed out or is not configured."""

    status_code = 502
    error_type = "external_service_error"


class PersistenceError(AssessmentError):
    """A finalize step failed; the session stays in grading and may be retried."""

    status_code = 503
    error_type = "persistence_error"
    retryable = True


class InvalidTransitionError(AssessmentError):
    status_code = 409
    error_type = "invalid_transition"

    def __init__(self, state: str, event: str):
        super().__init__(f"Cannot apply {event} while session is {state}")
        self.state = state
        self.event = event


class SessionConflictError(AssessmentError):
    status_code = 409
    error_type = "session_conflict"


class SessionNotFoundError(AssessmentError):
    status_code = 404
    error_type = "session_not_found"


class EligibilityError(AssessmentError):
    status_code = 403
    error_type = "not_eligible"


class StudentNotFoundError(AssessmentError):
    status_code = 404
    error_type = "student_not_found"


class InsufficientTokensError(AssessmentError):
    status_code = 409
    error_type = "insufficient_tokens"

    def __init__(self, balance: int, cost: int):
        super().__init__(f"Balance {balance} is below reward cost {cost}")
        self.balance = balance
        self.cost = cost


class RewardUnavailableError(AssessmentError):
    status_code = 404
    error_type = "reward_unavailable"

    def __init__(self, reward_id: str, reason: Optional[str] = None):
        super().__init__(reason or f"Reward {reward_id} is not available")
        self.reward_id = reward_id
