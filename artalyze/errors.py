"""
Typed failures raised by the puzzle core.

Every error carries a stable ``kind`` string and the HTTP status the API
answers with, so route handlers never have to translate them one by one.
"""


class PuzzleError(Exception):
    kind = "puzzle_error"
    status_code = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind


class InvalidDate(PuzzleError):
    kind = "invalid_date"
    status_code = 400


class PastDate(PuzzleError):
    kind = "past_date"
    status_code = 400


class CapacityExceeded(PuzzleError):
    kind = "capacity_exceeded"
    status_code = 409


class NoAvailableDay(PuzzleError):
    kind = "no_available_day"
    status_code = 503


class SchedulingFailed(PuzzleError):
    kind = "scheduling_failed"
    status_code = 503


class NotFound(PuzzleError):
    kind = "not_found"
    status_code = 404


class SessionNotFound(NotFound):
    kind = "session_not_found"
    status_code = 404


class GenerationFailed(PuzzleError):
    kind = "generation_failed"
    status_code = 502


class ImageAlreadyUsed(PuzzleError):
    kind = "image_already_used"
    status_code = 409
