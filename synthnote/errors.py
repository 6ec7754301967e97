from typing import Optional


class PipelineError(Exception):
    """Base for every failure the pipeline reports to its caller."""

    kind = "PipelineError"

    def __init__(self, message: str = "", *, detail: Optional[str] = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.detail = detail


class InvalidInput(PipelineError):
    kind = "InvalidInput"


class UnknownProposal(InvalidInput):
    def __init__(self, proposal_id: int):
        super().__init__(f"Proposal {proposal_id} is not part of the current proposal set.")
        self.proposal_id = proposal_id


class InvalidState(PipelineError):
    kind = "InvalidState"


class NetworkError(PipelineError):
    kind = "NetworkError"


class RequestTimeout(PipelineError):
    kind = "Timeout"


class AuthError(PipelineError):
    kind = "AuthError"


class ModelError(PipelineError):
    kind = "ModelError"


class PersistenceError(PipelineError):
    kind = "PersistenceError"
