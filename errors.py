"""
Error taxonomy for the contest API.

Each error carries the HTTP status it maps to and a short code that ends up
in the response body next to the human readable detail.
"""


class ContestAppError(Exception):
    status_code = 500
    code = "Error"

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.code)
        self.detail = detail or self.code


class BadRequest(ContestAppError):
    status_code = 400
    code = "BadRequest"


class InvalidId(BadRequest):
    code = "InvalidId"


class InvalidInput(BadRequest):
    code = "InvalidInput"


class MissingContentRef(BadRequest):
    code = "MissingContentRef"


class Conflict(BadRequest):
    # duplicate votes were always answered with 400 by the client contract
    code = "Conflict"


class DuplicateVote(Conflict):
    code = "DuplicateVote"


class ContestClosed(BadRequest):
    code = "ContestClosed"


class DistributionError(BadRequest):
    code = "DistributionError"


class NotFound(ContestAppError):
    status_code = 404
    code = "NotFound"


class ContestNotFound(NotFound):
    code = "ContestNotFound"


class SubmissionNotFound(NotFound):
    code = "SubmissionNotFound"


class TweetImageNotFound(NotFound):
    code = "TweetImageNotFound"


class UpstreamFailure(ContestAppError):
    status_code = 500
    code = "UpstreamFailure"
