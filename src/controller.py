from __future__ import annotations

import logging
import time as time_module
from dataclasses import dataclass

import metrics
from edit_service import EditAnythingClient, EditResponse, MaskResponse
from session_store import MemorySessionStore, SessionStore
from wizard import (
    EditFailed,
    EditReceived,
    EditRequested,
    Event,
    FailureReason,
    ImageSupplied,
    MaskPoint,
    MaskSelected,
    MasksFailed,
    MasksReceived,
    MasksRequested,
    PointClicked,
    PromptChanged,
    Reset,
    SourceImage,
    TransitionRejected,
    WizardSession,
    extract_mask_id,
    transition,
)


logger = logging.getLogger(__name__)

INTERRUPTED = 'Request was interrupted before the service answered'


@dataclass(frozen=True)
class Outcome:
    success: bool
    session: WizardSession
    reason: FailureReason | None = None
    detail: str = ''


class WizardController:
    """
    Drives one wizard session.

    All state changes go through ``wizard.transition``; the controller only
    adds the I/O around it. A request marks the session as loading before the
    call is awaited and always clears the flag afterwards. Responses that come
    back after a reset are dropped with a ``stale`` outcome.
    """

    def __init__(self, client: EditAnythingClient, store: SessionStore | None = None):
        self.client = client
        self.store = store or MemorySessionStore()

    async def snapshot(self) -> WizardSession:
        return await self.store.load()

    async def _apply(self, event: Event) -> Outcome:
        async with self.store.lock():
            session = await self.store.load()
            try:
                updated = transition(session, event)
            except TransitionRejected as e:
                logger.info(
                    'Wizard event %s rejected at step=%s: reason=%s, detail=%s',
                    type(event).__name__,
                    session.step.value,
                    e.reason.value,
                    e.detail,
                )
                metrics.errors_total.labels(error_type=e.reason.value).inc()
                return Outcome(success=False, session=session, reason=e.reason, detail=e.detail)
            await self.store.save(updated)

        if updated.step != session.step:
            logger.info(
                'Wizard step %s -> %s (generation=%d)',
                session.step.value,
                updated.step.value,
                updated.generation,
            )
            metrics.transitions_total.labels(step=updated.step.value).inc()
        return Outcome(success=True, session=updated)

    async def supply_image(self, image: SourceImage) -> Outcome:
        return await self._apply(ImageSupplied(image))

    async def click_point(self, point: MaskPoint) -> Outcome:
        return await self._apply(PointClicked(point))

    async def select_mask(self, mask: str) -> Outcome:
        return await self._apply(MaskSelected(mask))

    async def set_prompt(self, prompt: str) -> Outcome:
        return await self._apply(PromptChanged(prompt))

    async def reset(self) -> Outcome:
        outcome = await self._apply(Reset())
        metrics.resets_total.inc()
        logger.info('Wizard reset, generation=%d', outcome.session.generation)
        return outcome

    async def _finish(self, event: Event, operation: str, response) -> Outcome:
        outcome = await self._apply(event)
        if not outcome.success:
            if outcome.reason == FailureReason.STALE:
                logger.warning('Dropping stale %s response: %s', operation, outcome.detail)
            return outcome
        if response is None or not response.success:
            reason = response.reason if response is not None else FailureReason.TRANSPORT
            detail = response.error if response is not None else INTERRUPTED
            return Outcome(success=False, session=outcome.session, reason=reason, detail=detail)
        return outcome

    async def generate_masks(self) -> Outcome:
        started = await self._apply(MasksRequested())
        if not started.success:
            return started
        session = started.session
        generation = session.generation

        start_time = time_module.perf_counter()
        response: MaskResponse | None = None
        try:
            response = await self.client.request_masks(session.image, session.point)
        finally:
            metrics.request_duration.labels(operation='masks').observe(
                time_module.perf_counter() - start_time
            )
            if response is not None and response.success:
                metrics.requests_total.labels(operation='masks', status='success').inc()
                metrics.masks_generated.inc(len(response.files))
                event = MasksReceived(generation, response.files, response.image_id)
            else:
                metrics.requests_total.labels(operation='masks', status='error').inc()
                event = MasksFailed(
                    generation,
                    response.reason if response is not None else FailureReason.TRANSPORT,
                    response.error if response is not None else INTERRUPTED,
                )
            outcome = await self._finish(event, 'masks', response)
        return outcome

    async def generate(self) -> Outcome:
        started = await self._apply(EditRequested())
        if not started.success:
            return started
        session = started.session
        generation = session.generation
        mask_id = extract_mask_id(session.selected_mask)

        start_time = time_module.perf_counter()
        response: EditResponse | None = None
        try:
            response = await self.client.request_edit(
                image_id=session.image_id,
                extension=session.image.extension,
                mask_id=mask_id,
                prompt=session.prompt,
            )
        finally:
            metrics.request_duration.labels(operation='edit').observe(
                time_module.perf_counter() - start_time
            )
            if response is not None and response.success:
                metrics.requests_total.labels(operation='edit', status='success').inc()
                metrics.images_edited.inc(len(response.files))
                event = EditReceived(generation, response.files)
            else:
                metrics.requests_total.labels(operation='edit', status='error').inc()
                event = EditFailed(
                    generation,
                    response.reason if response is not None else FailureReason.TRANSPORT,
                    response.error if response is not None else INTERRUPTED,
                )
            outcome = await self._finish(event, 'edit', response)
        return outcome
