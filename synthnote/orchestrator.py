"""Dual-model query pipeline: local proposals, user selection, cloud synthesis, note save.

All state lives in :class:`PipelineController` and is only mutated on the event loop.
Adapter calls run as background tasks; every request carries a ticket and its result
is applied only while that ticket is still current. Superseded requests are left to
finish on their own and their results are dropped.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol, Set

from .config import CLOUD_MODEL_PLACEHOLDER, LOCAL_MODEL_PLACEHOLDER, ModelEndpoint, PipelineConfig
from .errors import (
    InvalidInput,
    InvalidState,
    ModelError,
    PersistenceError,
    PipelineError,
    UnknownProposal,
)
from .notes import NoteComposer
from .schemas import (
    AtomicNote,
    ErrorInfo,
    PipelineState,
    Proposal,
    ProposalSet,
    Query,
    Selection,
    SessionSnapshot,
    StoredNote,
    SynthesisResult,
)


logger = logging.getLogger("uvicorn.error")

StateListener = Callable[[SessionSnapshot], None]

_CANCELLABLE = (
    PipelineState.AWAITING_PROPOSALS,
    PipelineState.PROPOSALS_READY,
    PipelineState.AWAITING_SYNTHESIS,
)


class ProposalSource(Protocol):
    async def propose(self, query_text: str, model: ModelEndpoint) -> List[Proposal]:
        ...


class SynthesisSource(Protocol):
    async def synthesize(
        self,
        query_text: str,
        proposal_text: str,
        model: ModelEndpoint,
        api_key: Optional[str],
    ) -> SynthesisResult:
        ...


class NoteSink(Protocol):
    async def save(self, note: AtomicNote, directory: Optional[str] = None) -> StoredNote:
        ...


@dataclass(frozen=True)
class _Ticket:
    seq: int
    number: int
    expects: PipelineState


@dataclass(frozen=True)
class QueryHandle:
    query: Query
    task: "asyncio.Task[None]"

    @property
    def seq(self) -> int:
        return self.query.seq

    async def wait(self) -> None:
        """Wait for the proposal request issued for this query to finish (applied or not)."""
        await asyncio.gather(self.task, return_exceptions=True)


class PipelineController:
    def __init__(
        self,
        config: PipelineConfig,
        *,
        local: ProposalSource,
        cloud: SynthesisSource,
        sink: NoteSink,
        composer: Optional[NoteComposer] = None,
        listener: Optional[StateListener] = None,
    ):
        self._config = config
        self._local = local
        self._cloud = cloud
        self._sink = sink
        self._composer = composer or NoteComposer(title_max_chars=config.title_max_chars)
        self._listeners: List[StateListener] = [listener] if listener else []
        self._tickets = itertools.count(1)
        self._tasks: Set[asyncio.Task] = set()
        self._seq = 0
        self._ticket: Optional[_Ticket] = None
        self._state = PipelineState.IDLE
        self._query: Optional[Query] = None
        self._proposals: Optional[ProposalSet] = None
        self._selection: Optional[Selection] = None
        self._synthesis: Optional[SynthesisResult] = None
        self._note: Optional[AtomicNote] = None
        self._last_error: Optional[ErrorInfo] = None
        self._failed_stage: Optional[PipelineState] = None
        self._just_cancelled = False
        self._saving = False
        self._revision = 0

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def current_seq(self) -> int:
        return self._seq

    @property
    def last_error(self) -> Optional[ErrorInfo]:
        return self._last_error

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self._state,
            revision=self._revision,
            query=self._query,
            proposals=self._proposals,
            selection=self._selection,
            synthesis=self._synthesis,
            last_error=self._last_error,
            retry_available=self._retry_stage() is not None,
            cancel_available=self._state in _CANCELLABLE and not self._just_cancelled,
        )

    # -- user intents -------------------------------------------------------

    def submit(self, text: str) -> QueryHandle:
        if not isinstance(text, str) or not text.strip():
            raise InvalidInput("Query text is empty.")
        if self._state is PipelineState.SYNTHESIS_READY:
            raise InvalidState("Save or discard the current synthesis before submitting a new query.")
        self._check_local_config()
        if self._ticket is not None:
            logger.info("Query #%d superseded while %s", self._seq, self._state.value)
        self._seq += 1
        self._query = Query(text=text, created_at=datetime.now(timezone.utc), seq=self._seq)
        self._clear_results()
        self._last_error = None
        self._failed_stage = None
        self._state = PipelineState.AWAITING_PROPOSALS
        task = self._launch_proposals()
        self._changed()
        return QueryHandle(query=self._query, task=task)

    def select(self, proposal_id: int) -> None:
        if self._state is not PipelineState.PROPOSALS_READY or self._proposals is None:
            raise InvalidState(f"Cannot select a proposal while {self._state.value}.")
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise UnknownProposal(proposal_id)
        self._check_cloud_config()
        self._selection = Selection(query_seq=self._seq, proposal_id=proposal.id)
        self._last_error = None
        self._failed_stage = None
        self._state = PipelineState.AWAITING_SYNTHESIS
        self._launch_synthesis()
        self._changed()

    def cancel(self) -> None:
        """Abandon the request in flight, or the proposal set when nothing is in flight.

        Cancelling from AwaitingSynthesis keeps the proposals so another one can be
        picked. A cancel that directly follows another cancel does nothing, so a
        double press never falls through to Idle; ``snapshot().cancel_available``
        reports whether the next cancel will have an effect.
        """
        state = self._state
        if state is PipelineState.IDLE or self._just_cancelled:
            return
        if state is PipelineState.SYNTHESIS_READY:
            raise InvalidState("Nothing to cancel; save or discard the synthesis instead.")
        self._ticket = None
        self._last_error = None
        self._failed_stage = None
        if state is PipelineState.AWAITING_SYNTHESIS:
            self._state = PipelineState.PROPOSALS_READY
        else:
            self._query = None
            self._clear_results()
            self._state = PipelineState.IDLE
        logger.info("Cancelled query #%d (%s -> %s)", self._seq, state.value, self._state.value)
        self._changed(cancelled=True)

    def retry(self) -> None:
        stage = self._retry_stage()
        if stage is None:
            raise InvalidState(f"Nothing to retry while {self._state.value}.")
        if stage is PipelineState.AWAITING_SYNTHESIS:
            self._check_cloud_config()
        else:
            self._check_local_config()
        self._last_error = None
        self._failed_stage = None
        self._state = stage
        if stage is PipelineState.AWAITING_PROPOSALS:
            self._launch_proposals()
        else:
            self._launch_synthesis()
        logger.info("Retrying %s for query #%d", stage.value, self._seq)
        self._changed()

    async def save(self) -> StoredNote:
        if self._state is not PipelineState.SYNTHESIS_READY or self._synthesis is None or self._query is None:
            raise InvalidState(f"Nothing to save while {self._state.value}.")
        if self._saving:
            raise InvalidState("A save is already in progress.")
        # Compose once per result so a retried save keeps the same note id.
        if self._note is None:
            self._note = self._composer.compose(self._synthesis, self._query)
        note = self._note
        self._saving = True
        try:
            stored = await self._sink.save(note, self._config.notes_dir)
        except PersistenceError as exc:
            self._record_save_failure(exc)
            raise
        except OSError as exc:
            error = PersistenceError(f"Could not write note {note.note_id}: {exc}", detail=str(exc))
            self._record_save_failure(error)
            raise error from exc
        finally:
            self._saving = False
        logger.info("Saved note %s for query #%d", stored.note_id, self._seq)
        self._reset()
        self._changed()
        return stored

    def discard(self) -> None:
        if self._state is not PipelineState.SYNTHESIS_READY:
            raise InvalidState(f"Nothing to discard while {self._state.value}.")
        if self._saving:
            raise InvalidState("A save is in progress.")
        self._reset()
        self._changed()

    async def settle(self) -> None:
        """Wait until every adapter request issued so far has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        self._ticket = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- adapter requests ---------------------------------------------------

    def _launch_proposals(self) -> "asyncio.Task[None]":
        ticket = self._issue_ticket(PipelineState.AWAITING_PROPOSALS)
        return self._spawn(self._request_proposals(ticket, self._query), f"proposals-{ticket.seq}-{ticket.number}")

    def _launch_synthesis(self) -> "asyncio.Task[None]":
        ticket = self._issue_ticket(PipelineState.AWAITING_SYNTHESIS)
        proposal = self._proposals.get(self._selection.proposal_id)
        return self._spawn(
            self._request_synthesis(ticket, self._query, proposal),
            f"synthesis-{ticket.seq}-{ticket.number}",
        )

    def _issue_ticket(self, expects: PipelineState) -> _Ticket:
        self._ticket = _Ticket(seq=self._seq, number=next(self._tickets), expects=expects)
        return self._ticket

    def _spawn(self, coro, name: str) -> "asyncio.Task[None]":
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _request_proposals(self, ticket: _Ticket, query: Query) -> None:
        try:
            proposals = await self._local.propose(query.text, self._config.local)
        except PipelineError as exc:
            self._fail(ticket, exc)
            return
        except Exception as exc:
            logger.exception("Local model adapter failed for query #%d", ticket.seq)
            self._fail(ticket, ModelError(f"Local model call failed: {exc}"))
            return
        if not self._is_current(ticket):
            return
        if not proposals:
            self._fail(ticket, ModelError("Local model returned no proposals."))
            return
        self._ticket = None
        proposals = list(proposals)[: self._config.proposal_count]
        self._proposals = ProposalSet(query_seq=ticket.seq, proposals=tuple(proposals))
        self._state = PipelineState.PROPOSALS_READY
        self._changed()

    async def _request_synthesis(self, ticket: _Ticket, query: Query, proposal: Proposal) -> None:
        try:
            result = await self._cloud.synthesize(
                query.text,
                proposal.display_text,
                self._config.cloud,
                self._config.cloud_api_key,
            )
        except PipelineError as exc:
            self._fail(ticket, exc)
            return
        except Exception as exc:
            logger.exception("Cloud model adapter failed for query #%d", ticket.seq)
            self._fail(ticket, ModelError(f"Cloud model call failed: {exc}"))
            return
        if not self._is_current(ticket):
            return
        self._ticket = None
        self._synthesis = result.model_copy(update={"query_seq": ticket.seq, "proposal_id": proposal.id})
        self._note = None
        self._state = PipelineState.SYNTHESIS_READY
        self._changed()

    def _is_current(self, ticket: _Ticket) -> bool:
        current = ticket is self._ticket and ticket.seq == self._seq and self._state is ticket.expects
        if not current:
            logger.debug(
                "Discarding stale %s response for query #%d (current #%d, %s)",
                ticket.expects.value,
                ticket.seq,
                self._seq,
                self._state.value,
            )
        return current

    def _fail(self, ticket: _Ticket, exc: PipelineError) -> None:
        if not self._is_current(ticket):
            return
        self._ticket = None
        self._last_error = ErrorInfo(kind=exc.kind, message=exc.message)
        self._failed_stage = ticket.expects
        if ticket.expects is PipelineState.AWAITING_PROPOSALS:
            self._state = PipelineState.IDLE
        else:
            self._state = PipelineState.PROPOSALS_READY
        logger.warning("%s failed for query #%d: %s: %s", ticket.expects.value, ticket.seq, exc.kind, exc.message)
        self._changed()

    # -- helpers ------------------------------------------------------------

    # Configuration problems are rejected before any state change or network call.
    def _check_local_config(self) -> None:
        local = self._config.local
        if not local.base_url.strip():
            raise InvalidInput("No local endpoint is configured.")
        if local.model_id.strip() in ("", LOCAL_MODEL_PLACEHOLDER):
            raise InvalidInput("No local model is selected.")

    def _check_cloud_config(self) -> None:
        if self._config.cloud.model_id.strip() in ("", CLOUD_MODEL_PLACEHOLDER):
            raise InvalidInput("No cloud model is selected.")
        key = (self._config.cloud_api_key or "").strip()
        prefix = self._config.api_key_prefix
        # A missing key is left to the synthesis stage, which reports it as AuthError.
        if key and prefix and not key.startswith(prefix):
            raise InvalidInput(f"Cloud API key must start with '{prefix}'.")

    def _retry_stage(self) -> Optional[PipelineState]:
        if (
            self._failed_stage is PipelineState.AWAITING_PROPOSALS
            and self._state is PipelineState.IDLE
            and self._query is not None
        ):
            return PipelineState.AWAITING_PROPOSALS
        if (
            self._failed_stage is PipelineState.AWAITING_SYNTHESIS
            and self._state is PipelineState.PROPOSALS_READY
            and self._selection is not None
        ):
            return PipelineState.AWAITING_SYNTHESIS
        return None

    def _record_save_failure(self, exc: PersistenceError) -> None:
        logger.warning("Saving note for query #%d failed: %s", self._seq, exc.message)
        self._last_error = ErrorInfo(kind=exc.kind, message=exc.message)
        self._changed()

    def _clear_results(self) -> None:
        self._proposals = None
        self._selection = None
        self._synthesis = None
        self._note = None

    def _reset(self) -> None:
        self._ticket = None
        self._query = None
        self._clear_results()
        self._last_error = None
        self._failed_stage = None
        self._state = PipelineState.IDLE

    def _changed(self, cancelled: bool = False) -> None:
        self._just_cancelled = cancelled
        self._revision += 1
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("State listener failed")
