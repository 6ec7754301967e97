from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


class PipelineState(str, Enum):
    IDLE = "Idle"
    AWAITING_PROPOSALS = "AwaitingProposals"
    PROPOSALS_READY = "ProposalsReady"
    AWAITING_SYNTHESIS = "AwaitingSynthesis"
    SYNTHESIS_READY = "SynthesisReady"


class Query(BaseModel):
    text: str
    created_at: datetime
    seq: int

    model_config = {"frozen": True}


class Proposal(BaseModel):
    id: int
    text: str
    rationale: Optional[str] = None

    model_config = {"frozen": True}

    @property
    def display_text(self) -> str:
        if self.rationale:
            return f"{self.rationale} - {self.text}"
        return self.text


class ProposalSet(BaseModel):
    query_seq: int
    proposals: Tuple[Proposal, ...]

    model_config = {"frozen": True}

    def get(self, proposal_id: int) -> Optional[Proposal]:
        for proposal in self.proposals:
            if proposal.id == proposal_id:
                return proposal
        return None


class Selection(BaseModel):
    query_seq: int
    proposal_id: int

    model_config = {"frozen": True}


class SynthesisResult(BaseModel):
    body: str
    tags: Tuple[str, ...] = ()
    query_text: str
    proposal_text: str
    query_seq: Optional[int] = None
    proposal_id: Optional[int] = None
    model: Optional[str] = None

    model_config = {"frozen": True, "protected_namespaces": ()}


class AtomicNote(BaseModel):
    note_id: str
    title: str
    body: str
    tags: List[str] = Field(default_factory=list)
    created_at: datetime
    source_query: str
    source_proposal: Optional[str] = None

    model_config = {"frozen": True}

    def metadata(self) -> Dict[str, Any]:
        meta: Dict[str, Any] = {
            "id": self.note_id,
            "title": self.title,
            "tags": list(self.tags),
            "created": self.created_at.isoformat(),
            "query": self.source_query,
        }
        if self.source_proposal:
            meta["proposal"] = self.source_proposal
        return meta


class StoredNote(BaseModel):
    note_id: str
    path: str

    model_config = {"frozen": True}


class ErrorInfo(BaseModel):
    kind: str
    message: str

    model_config = {"frozen": True}


class SessionSnapshot(BaseModel):
    state: PipelineState
    revision: int
    query: Optional[Query] = None
    proposals: Optional[ProposalSet] = None
    selection: Optional[Selection] = None
    synthesis: Optional[SynthesisResult] = None
    last_error: Optional[ErrorInfo] = None
    retry_available: bool = False
    cancel_available: bool = False

    model_config = {"frozen": True}


class SubmitQueryRequest(BaseModel):
    text: str


class SelectProposalRequest(BaseModel):
    proposal_id: int
