from __future__ import annotations

import base64
import enum
import re
from dataclasses import asdict, dataclass, replace


MASK_ID_PATTERN = re.compile(r'with_mask_(\d+)')


class WorkflowStep(str, enum.Enum):
    CHOOSE_IMAGE = 'choose_image'
    SET_MASK_POINT = 'set_mask_point'
    GENERATE_MASK = 'generate_mask'
    CHOOSE_MASK = 'choose_mask'
    DEFINE_PROMPT = 'define_prompt'
    GENERATE = 'generate'

    @property
    def title(self) -> str:
        return STEP_TITLES[self]


STEP_TITLES = {
    WorkflowStep.CHOOSE_IMAGE: 'Choose image',
    WorkflowStep.SET_MASK_POINT: 'Set mask point',
    WorkflowStep.GENERATE_MASK: 'Generate masks',
    WorkflowStep.CHOOSE_MASK: 'Choose mask',
    WorkflowStep.DEFINE_PROMPT: 'Define prompt',
    WorkflowStep.GENERATE: 'Generate',
}


class FailureReason(str, enum.Enum):
    PRECONDITION = 'precondition'
    LOADING = 'loading'
    INVALID_POINT = 'invalid_point'
    UNKNOWN_MASK = 'unknown_mask'
    EMPTY_PROMPT = 'empty_prompt'
    MALFORMED_MASK_ID = 'malformed_mask_id'
    TRANSPORT = 'transport'
    HTTP_STATUS = 'http_status'
    MALFORMED_RESPONSE = 'malformed_response'
    STALE = 'stale'


class TransitionRejected(Exception):
    """Raised when an event is not allowed in the current session state."""

    def __init__(self, reason: FailureReason, detail: str):
        super().__init__(detail)
        self.reason = reason
        self.detail = detail


@dataclass(frozen=True)
class SourceImage:
    data: str
    filename: str
    width: int
    height: int
    byte_size: int = 0

    @property
    def extension(self) -> str:
        return extension_for(self.filename)

    def contains(self, x: int, y: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height

    def raw_bytes(self) -> bytes:
        _, _, encoded = self.data.partition('base64,')
        return base64.b64decode(encoded or self.data)


@dataclass(frozen=True)
class MaskPoint:
    x: int
    y: int


@dataclass(frozen=True)
class WizardError:
    reason: FailureReason
    detail: str


@dataclass(frozen=True)
class WizardSession:
    step: WorkflowStep = WorkflowStep.CHOOSE_IMAGE
    image: SourceImage | None = None
    point: MaskPoint | None = None
    masks: tuple[str, ...] = ()
    image_id: str | None = None
    selected_mask: str | None = None
    prompt: str = ''
    results: tuple[str, ...] = ()
    loading: bool = False
    error: WizardError | None = None
    generation: int = 0

    @property
    def has_prompt(self) -> bool:
        return has_prompt(self.prompt)

    @property
    def can_generate_masks(self) -> bool:
        return (
            self.step == WorkflowStep.GENERATE_MASK
            and self.image is not None
            and self.point is not None
            and not self.loading
        )

    @property
    def can_generate(self) -> bool:
        return (
            self.step == WorkflowStep.DEFINE_PROMPT
            and self.selected_mask is not None
            and self.has_prompt
            and not self.loading
        )

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload['step'] = self.step.value
        payload['masks'] = list(self.masks)
        payload['results'] = list(self.results)
        if self.error is not None:
            payload['error'] = {'reason': self.error.reason.value, 'detail': self.error.detail}
        return payload

    @classmethod
    def from_dict(cls, payload: dict | None) -> WizardSession:
        if not payload:
            return cls()
        image = payload.get('image')
        point = payload.get('point')
        error = payload.get('error')
        return cls(
            step=WorkflowStep(payload.get('step', WorkflowStep.CHOOSE_IMAGE.value)),
            image=SourceImage(**image) if image else None,
            point=MaskPoint(**point) if point else None,
            masks=tuple(payload.get('masks') or ()),
            image_id=payload.get('image_id'),
            selected_mask=payload.get('selected_mask'),
            prompt=payload.get('prompt') or '',
            results=tuple(payload.get('results') or ()),
            loading=bool(payload.get('loading', False)),
            error=WizardError(FailureReason(error['reason']), error['detail']) if error else None,
            generation=int(payload.get('generation', 0)),
        )


# events


@dataclass(frozen=True)
class ImageSupplied:
    image: SourceImage


@dataclass(frozen=True)
class PointClicked:
    point: MaskPoint


@dataclass(frozen=True)
class MasksRequested:
    pass


@dataclass(frozen=True)
class MasksReceived:
    generation: int
    files: tuple[str, ...]
    image_id: str


@dataclass(frozen=True)
class MasksFailed:
    generation: int
    reason: FailureReason
    detail: str


@dataclass(frozen=True)
class MaskSelected:
    mask: str


@dataclass(frozen=True)
class PromptChanged:
    prompt: str


@dataclass(frozen=True)
class EditRequested:
    pass


@dataclass(frozen=True)
class EditReceived:
    generation: int
    files: tuple[str, ...]


@dataclass(frozen=True)
class EditFailed:
    generation: int
    reason: FailureReason
    detail: str


@dataclass(frozen=True)
class Reset:
    pass


Event = (
    ImageSupplied | PointClicked | MasksRequested | MasksReceived | MasksFailed
    | MaskSelected | PromptChanged | EditRequested | EditReceived | EditFailed | Reset
)


def extension_for(filename: str) -> str:
    return '.' + filename.split('.')[-1]


def extract_mask_id(mask: str | None) -> str | None:
    if not mask:
        return None
    match = MASK_ID_PATTERN.search(mask)
    return match.group(1) if match else None


def has_prompt(prompt: str | None) -> bool:
    return bool(prompt and prompt.strip())


def _reject(reason: FailureReason, detail: str):
    raise TransitionRejected(reason, detail)


def _require_step(session: WizardSession, *steps: WorkflowStep) -> None:
    if session.step not in steps:
        expected = ', '.join(s.title for s in steps)
        _reject(
            FailureReason.PRECONDITION,
            f'Not available at step "{session.step.title}" (expected: {expected})',
        )


def _require_idle(session: WizardSession) -> None:
    if session.loading:
        _reject(FailureReason.LOADING, 'A request is already in progress')


def _require_in_flight(session: WizardSession, generation: int) -> None:
    if generation != session.generation:
        _reject(
            FailureReason.STALE,
            f'Response for generation {generation} arrived after reset '
            f'(current generation {session.generation})',
        )
    if not session.loading:
        _reject(FailureReason.PRECONDITION, 'No request is in progress')


def transition(session: WizardSession, event: Event) -> WizardSession:
    """
    Apply ``event`` to ``session`` and return the new session.

    The function is pure: the given session is never modified. Events that are
    not allowed in the current state raise TransitionRejected and leave the
    caller's session as it was.
    """
    if isinstance(event, Reset):
        return WizardSession(generation=session.generation + 1)

    if isinstance(event, ImageSupplied):
        _require_step(session, WorkflowStep.CHOOSE_IMAGE)
        _require_idle(session)
        return replace(session, step=WorkflowStep.SET_MASK_POINT, image=event.image, error=None)

    if isinstance(event, PointClicked):
        _require_step(session, WorkflowStep.SET_MASK_POINT)
        _require_idle(session)
        if session.image is None:
            _reject(FailureReason.PRECONDITION, 'No image has been supplied yet')
        if not session.image.contains(event.point.x, event.point.y):
            _reject(
                FailureReason.INVALID_POINT,
                f'Point ({event.point.x}, {event.point.y}) is outside the '
                f'{session.image.width}x{session.image.height} image',
            )
        return replace(session, step=WorkflowStep.GENERATE_MASK, point=event.point, error=None)

    if isinstance(event, MasksRequested):
        _require_step(session, WorkflowStep.GENERATE_MASK)
        _require_idle(session)
        if session.image is None or session.point is None:
            _reject(FailureReason.PRECONDITION, 'Image and mask point are required')
        return replace(session, loading=True, error=None)

    if isinstance(event, MasksReceived):
        _require_in_flight(session, event.generation)
        _require_step(session, WorkflowStep.GENERATE_MASK)
        return replace(
            session,
            step=WorkflowStep.CHOOSE_MASK,
            masks=tuple(event.files),
            image_id=event.image_id,
            loading=False,
            error=None,
        )

    if isinstance(event, MasksFailed):
        _require_in_flight(session, event.generation)
        _require_step(session, WorkflowStep.GENERATE_MASK)
        return replace(
            session,
            masks=(),
            image_id=None,
            loading=False,
            error=WizardError(event.reason, event.detail),
        )

    if isinstance(event, MaskSelected):
        _require_step(session, WorkflowStep.CHOOSE_MASK)
        _require_idle(session)
        if event.mask not in session.masks:
            _reject(FailureReason.UNKNOWN_MASK, f'Mask {event.mask!r} is not one of the generated masks')
        return replace(session, step=WorkflowStep.DEFINE_PROMPT, selected_mask=event.mask, error=None)

    if isinstance(event, PromptChanged):
        _require_idle(session)
        return replace(session, prompt=event.prompt)

    if isinstance(event, EditRequested):
        _require_step(session, WorkflowStep.DEFINE_PROMPT)
        _require_idle(session)
        if session.selected_mask is None or session.image_id is None:
            _reject(FailureReason.PRECONDITION, 'A mask must be selected first')
        if not session.has_prompt:
            _reject(FailureReason.EMPTY_PROMPT, 'Prompt is empty')
        if extract_mask_id(session.selected_mask) is None:
            _reject(
                FailureReason.MALFORMED_MASK_ID,
                f'Cannot find a mask id in {session.selected_mask!r}',
            )
        return replace(session, loading=True, error=None)

    if isinstance(event, EditReceived):
        _require_in_flight(session, event.generation)
        _require_step(session, WorkflowStep.DEFINE_PROMPT)
        return replace(
            session,
            step=WorkflowStep.GENERATE,
            results=tuple(event.files),
            loading=False,
            error=None,
        )

    if isinstance(event, EditFailed):
        _require_in_flight(session, event.generation)
        _require_step(session, WorkflowStep.DEFINE_PROMPT)
        return replace(
            session,
            results=(),
            loading=False,
            error=WizardError(event.reason, event.detail),
        )

    raise TypeError(f'Unknown wizard event: {event!r}')
