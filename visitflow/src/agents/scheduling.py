"""
Scheduling state machine - collects a property and a date/time, drafts a
visit, then waits for SIM/NÃO.

advance() is pure: it takes the current state plus whatever slots the turn
produced (deterministic parser or AI tool call, same SlotUpdate either way)
and returns the action to execute with the next state. The conductor runs
the side effects and persists the state in the same transaction.

States:
  none -> awaiting_property | awaiting_datetime | awaiting_candidate_choice
       -> (both slots known) draft created -> awaiting_confirmation
  awaiting_confirmation + yes -> none (visit confirmed)
  awaiting_confirmation + no  -> awaiting_datetime (visit rescheduled)
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from enum import Enum
from typing import Optional

from src.schemas.scheduling import CandidateChoice, PropertyCandidate, PropertyResolution
from src.services.properties import format_address, format_candidate_line
from src.utils.timezone import as_utc, format_local

logger = logging.getLogger(__name__)

MAX_CANDIDATES = 3
DEFAULT_GRACE = timedelta(minutes=5)


class VisitStep(str, Enum):
    NONE = "none"
    AWAITING_PROPERTY = "awaiting_property"
    AWAITING_DATETIME = "awaiting_datetime"
    AWAITING_CANDIDATE_CHOICE = "awaiting_candidate_choice"
    AWAITING_CONFIRMATION = "awaiting_confirmation"


class Action(str, Enum):
    NO_PROGRESS = "no_progress"
    ASK_PROPERTY = "ask_property"
    ASK_DATETIME = "ask_datetime"
    ASK_CANDIDATE_CHOICE = "ask_candidate_choice"
    CREATE_DRAFT = "create_draft"
    CONFIRM_VISIT = "confirm_visit"
    RESCHEDULE_VISIT = "reschedule_visit"
    REJECT_PAST_DATETIME = "reject_past_datetime"
    INVALID_CHOICE = "invalid_choice"


class SchedulingStateError(ValueError):
    """Raised when a slot combination would violate the conversation invariants."""
    pass


@dataclass(frozen=True)
class SchedulingState:
    step: VisitStep = VisitStep.NONE
    property_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    visit_id: Optional[str] = None
    candidates: tuple[PropertyCandidate, ...] = ()

    def __post_init__(self):
        if len(self.candidates) > MAX_CANDIDATES:
            raise SchedulingStateError(f"At most {MAX_CANDIDATES} candidates, got {len(self.candidates)}")
        if self.scheduled_at is not None and self.scheduled_at.tzinfo is None:
            raise SchedulingStateError("scheduled_at must be timezone-aware")
        if self.step == VisitStep.AWAITING_CONFIRMATION:
            if not (self.visit_id and self.property_id and self.scheduled_at):
                raise SchedulingStateError("awaiting_confirmation requires visit, property and datetime")
        elif self.visit_id:
            raise SchedulingStateError(f"Pending visit only allowed while awaiting confirmation, step={self.step.value}")
        if self.step == VisitStep.AWAITING_CANDIDATE_CHOICE:
            if not self.candidates:
                raise SchedulingStateError("awaiting_candidate_choice requires candidates")
        elif self.candidates:
            raise SchedulingStateError(f"Candidates only allowed while awaiting a choice, step={self.step.value}")

    @classmethod
    def collecting(
        cls,
        property_id: Optional[str],
        scheduled_at: Optional[datetime],
        candidates: tuple[PropertyCandidate, ...] = (),
    ) -> "SchedulingState":
        """The state for a partially filled slot set (no draft yet)."""
        if candidates:
            step = VisitStep.AWAITING_CANDIDATE_CHOICE
        elif property_id is None and scheduled_at is not None:
            step = VisitStep.AWAITING_PROPERTY
        elif property_id is not None and scheduled_at is None:
            step = VisitStep.AWAITING_DATETIME
        elif property_id is None:
            step = VisitStep.NONE
        else:
            raise SchedulingStateError("Both slots filled: a draft must be created instead")
        return cls(step=step, property_id=property_id, scheduled_at=scheduled_at, candidates=candidates)

    @classmethod
    def from_conversation(cls, conversation) -> "SchedulingState":
        """Load the slot set from a Conversation row; unusable rows start over."""
        raw_candidates = conversation.pending_visit_candidates or []
        try:
            candidates = tuple(PropertyCandidate.model_validate(c) for c in raw_candidates)
            return cls(
                step=VisitStep(conversation.pending_visit_step or VisitStep.NONE.value),
                property_id=str(conversation.pending_visit_property_id) if conversation.pending_visit_property_id else None,
                scheduled_at=as_utc(conversation.pending_visit_scheduled_at),
                visit_id=str(conversation.pending_visit_id) if conversation.pending_visit_id else None,
                candidates=candidates,
            )
        except (ValueError, TypeError) as e:
            logger.warning(
                "Invalid scheduling state on conversation, resetting: %s", str(e),
                extra={"conversation_id": str(conversation.id)},
            )
            return cls()

    def apply_to(self, conversation) -> None:
        """Write this state onto a Conversation row (the only writer of pending_visit_*)."""
        conversation.pending_visit_step = self.step.value
        conversation.pending_visit_property_id = uuid.UUID(self.property_id) if self.property_id else None
        conversation.pending_visit_scheduled_at = as_utc(self.scheduled_at)
        conversation.pending_visit_id = uuid.UUID(self.visit_id) if self.visit_id else None
        conversation.pending_visit_candidates = (
            [c.model_dump() for c in self.candidates] if self.candidates else None
        )

    def cleared(self) -> "SchedulingState":
        return SchedulingState()


@dataclass(frozen=True)
class SlotUpdate:
    """Slots extracted from one turn, by the parser or by the AI tool call."""
    scheduled_at: Optional[datetime] = None
    property_match: PropertyResolution = field(default_factory=PropertyResolution.none)
    yes_no: Optional[str] = None
    choice: Optional[CandidateChoice] = None
    notes: Optional[str] = None
    timezone_name: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return (
            self.scheduled_at is None
            and self.property_match.kind == "none"
            and self.yes_no is None
            and self.choice is None
        )


@dataclass(frozen=True)
class DraftRequest:
    property_id: str
    scheduled_at: datetime
    supersedes_visit_id: Optional[str] = None
    notes: Optional[str] = None
    timezone_name: Optional[str] = None


@dataclass(frozen=True)
class Transition:
    """
    What a turn should do. For CREATE_DRAFT the next state depends on the
    inserted visit id, so `state` is None until complete() is called.
    """
    action: Action
    state: Optional[SchedulingState]
    draft: Optional[DraftRequest] = None
    visit_id: Optional[str] = None

    def complete(self, visit_id: str) -> SchedulingState:
        if self.action != Action.CREATE_DRAFT or self.draft is None:
            raise SchedulingStateError(f"complete() only applies to drafts, not {self.action.value}")
        return SchedulingState(
            step=VisitStep.AWAITING_CONFIRMATION,
            property_id=self.draft.property_id,
            scheduled_at=self.draft.scheduled_at,
            visit_id=visit_id,
        )

    @property
    def made_progress(self) -> bool:
        return self.action != Action.NO_PROGRESS


def _pick_candidate(
    candidates: tuple[PropertyCandidate, ...],
    choice: CandidateChoice,
) -> Optional[PropertyCandidate]:
    if choice.index is not None:
        return candidates[choice.index] if 0 <= choice.index < len(candidates) else None
    if choice.code:
        for candidate in candidates:
            if candidate.code.upper() == choice.code.upper():
                return candidate
    return None


def _draft_or_reject(
    property_id: str,
    scheduled_at: datetime,
    update: SlotUpdate,
    now: datetime,
    grace: timedelta,
    supersedes: Optional[str] = None,
) -> Transition:
    if scheduled_at < now - grace:
        return Transition(Action.REJECT_PAST_DATETIME, SchedulingState.collecting(property_id, None))
    draft = DraftRequest(
        property_id=property_id,
        scheduled_at=scheduled_at,
        supersedes_visit_id=supersedes,
        notes=update.notes,
        timezone_name=update.timezone_name,
    )
    return Transition(Action.CREATE_DRAFT, None, draft=draft)


def _advance_confirmation(
    state: SchedulingState,
    update: SlotUpdate,
    now: datetime,
    grace: timedelta,
) -> Transition:
    if update.yes_no == "yes":
        return Transition(Action.CONFIRM_VISIT, state.cleared(), visit_id=state.visit_id)
    if update.yes_no == "no":
        return Transition(
            Action.RESCHEDULE_VISIT,
            SchedulingState.collecting(state.property_id, None),
            visit_id=state.visit_id,
        )
    if update.scheduled_at is not None and update.scheduled_at != state.scheduled_at:
        if update.scheduled_at < now - grace:
            # The pending draft stays valid; only the new time is refused
            return Transition(Action.REJECT_PAST_DATETIME, state)
        return _draft_or_reject(
            state.property_id, update.scheduled_at, update, now, grace, supersedes=state.visit_id,
        )
    return Transition(Action.NO_PROGRESS, state)


def advance(
    state: SchedulingState,
    update: SlotUpdate,
    now: datetime,
    grace: timedelta = DEFAULT_GRACE,
) -> Transition:
    """Compute the next scheduling step for one inbound turn."""
    if state.step == VisitStep.AWAITING_CONFIRMATION:
        return _advance_confirmation(state, update, now, grace)

    property_id = state.property_id
    candidates = state.candidates
    scheduled_at = state.scheduled_at
    new_candidates = False

    # Property slot
    if state.step == VisitStep.AWAITING_CANDIDATE_CHOICE and update.choice is not None:
        chosen = _pick_candidate(candidates, update.choice)
        if chosen is not None:
            property_id, candidates = chosen.id, ()
        elif update.property_match.kind == "resolved":
            property_id, candidates = update.property_match.property_id, ()
        else:
            return Transition(Action.INVALID_CHOICE, state)
    elif property_id is None and update.property_match.kind == "resolved":
        property_id, candidates = update.property_match.property_id, ()
    elif property_id is None and update.property_match.kind == "ambiguous":
        candidates = tuple(update.property_match.candidates[:MAX_CANDIDATES])
        new_candidates = True

    # Datetime slot
    if update.scheduled_at is not None:
        if update.scheduled_at < now - grace:
            return Transition(
                Action.REJECT_PAST_DATETIME,
                SchedulingState.collecting(property_id, None, candidates),
            )
        scheduled_at = update.scheduled_at

    if new_candidates:
        return Transition(
            Action.ASK_CANDIDATE_CHOICE,
            SchedulingState.collecting(None, scheduled_at, candidates),
        )

    if property_id is not None and scheduled_at is not None:
        return _draft_or_reject(property_id, scheduled_at, update, now, grace)

    changed = (
        property_id != state.property_id
        or scheduled_at != state.scheduled_at
        or candidates != state.candidates
    )
    if not changed:
        return Transition(Action.NO_PROGRESS, state)

    next_state = SchedulingState.collecting(property_id, scheduled_at, candidates)
    if next_state.step == VisitStep.AWAITING_CANDIDATE_CHOICE:
        return Transition(Action.ASK_CANDIDATE_CHOICE, next_state)
    if next_state.step == VisitStep.AWAITING_PROPERTY:
        return Transition(Action.ASK_PROPERTY, next_state)
    return Transition(Action.ASK_DATETIME, next_state)


# --- Replies (pt-BR) ---

CONFIRMED_REPLY = (
    "Perfeito! Visita *confirmada* ✅\n\n"
    "Se quiser, me diga seu nome completo e um ponto de referência para facilitar o encontro."
)
RESCHEDULE_REPLY = "Sem problemas 🙂 Qual nova *data e horário* você prefere? (ex: 24/01 às 17h)"
PAST_DATETIME_REPLY = (
    "Esse horário parece estar no passado 😅 Pode me sugerir uma nova data e hora (ex: amanhã às 14:00)?"
)
ASK_DATETIME_REPLY = "Qual *data e horário* você prefere para a visita? (ex: 24/01 às 17h)"
INVALID_CHOICE_PREFIX = "Não encontrei essa opção na lista."


def _candidate_list_reply(candidates: tuple[PropertyCandidate, ...]) -> str:
    lines = "\n".join(format_candidate_line(i, c) for i, c in enumerate(candidates, start=1))
    return (
        "Encontrei mais de um imóvel com esse endereço/descrição. Qual deles é o certo?\n\n"
        f"{lines}\n\n"
        "Responda com o *número* (1, 2, 3) ou com o *código* do imóvel."
    )


def build_reply(
    transition: Transition,
    prop=None,
    code_prefix: str = "IMV",
    tz: Optional[tzinfo] = None,
) -> Optional[str]:
    """
    Render the customer-facing message for a transition.
    `prop` is the Property involved (drafts and datetime prompts). Returns None
    for NO_PROGRESS, which is left to the AI agent.
    """
    action = transition.action
    state = transition.state

    if action == Action.CONFIRM_VISIT:
        return CONFIRMED_REPLY
    if action == Action.RESCHEDULE_VISIT:
        return RESCHEDULE_REPLY
    if action == Action.REJECT_PAST_DATETIME:
        return PAST_DATETIME_REPLY
    if action == Action.ASK_CANDIDATE_CHOICE:
        return _candidate_list_reply(state.candidates)
    if action == Action.INVALID_CHOICE:
        return f"{INVALID_CHOICE_PREFIX} {_candidate_list_reply(state.candidates)}"
    if action == Action.ASK_PROPERTY:
        return (
            f"Anotei: *{format_local(state.scheduled_at, tz)}* 🗓️\n\n"
            f"Para qual imóvel seria a visita? Pode me enviar o *código* (ex: {code_prefix}-001) "
            "ou o *endereço* (rua, número, bairro e cidade)."
        )
    if action == Action.ASK_DATETIME:
        if prop is not None:
            return f"Ótimo! Imóvel: {prop.title} (código {prop.code}).\n\n{ASK_DATETIME_REPLY}"
        return ASK_DATETIME_REPLY
    if action == Action.CREATE_DRAFT:
        title = prop.title if prop is not None else "(sem título)"
        code = prop.code if prop is not None else "-"
        address = format_address(prop) if prop is not None else "-"
        return (
            "Agendamento registrado como *rascunho* ✅\n\n"
            f"Imóvel: {title} (código {code})\n"
            f"Endereço: {address or '-'}\n"
            f"Data/hora: {format_local(transition.draft.scheduled_at, tz)}\n\n"
            "Você confirma esse agendamento? Responda *SIM* para confirmar ou *NÃO* para remarcar."
        )
    return None
