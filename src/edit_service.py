from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from wizard import FailureReason, MaskPoint, SourceImage


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300.0


class EditServiceError(Exception):
    def __init__(self, reason: FailureReason, detail: str):
        super().__init__(detail)
        self.reason = reason
        self.detail = detail


@dataclass(frozen=True)
class MaskResponse:
    success: bool
    files: tuple[str, ...] = ()
    image_id: str | None = None
    reason: FailureReason | None = None
    error: str = ''

    @classmethod
    def failed(cls, exc: EditServiceError) -> MaskResponse:
        return cls(success=False, reason=exc.reason, error=exc.detail)


@dataclass(frozen=True)
class EditResponse:
    success: bool
    files: tuple[str, ...] = ()
    reason: FailureReason | None = None
    error: str = ''

    @classmethod
    def failed(cls, exc: EditServiceError) -> EditResponse:
        return cls(success=False, reason=exc.reason, error=exc.detail)


def _parse_files(data: dict) -> tuple[str, ...]:
    files = data.get('files')
    if not isinstance(files, list) or not all(isinstance(f, str) for f in files):
        raise EditServiceError(
            FailureReason.MALFORMED_RESPONSE,
            f'Expected "files" to be a list of URLs, got {files!r}',
        )
    return tuple(files)


class EditAnythingClient:
    """
    HTTP client for the serverless mask and edit endpoints.

    Every call makes exactly one POST request. Failures never raise: they come
    back as a response value with ``success=False`` and a failure reason.
    """

    HEADERS = {
        'accept': 'application/json',
        'content-type': 'application/json',
    }

    def __init__(
        self,
        base_url: str,
        masks_endpoint: str = '/api/masks',
        edit_endpoint: str = '/api/edit',
        timeout: float | None = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.masks_endpoint = masks_endpoint
        self.edit_endpoint = edit_endpoint
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, config) -> EditAnythingClient:
        return cls(
            base_url=config.service_base_url,
            masks_endpoint=config.masks_endpoint,
            edit_endpoint=config.edit_endpoint,
            timeout=config.request_timeout,
        )

    def url_for(self, endpoint: str) -> str:
        return f'{self.base_url}/{endpoint.lstrip("/")}'

    async def _post(self, endpoint: str, payload: dict) -> dict:
        url = self.url_for(endpoint)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=self.HEADERS)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise EditServiceError(
                FailureReason.HTTP_STATUS,
                f'Request failed with status {e.response.status_code}',
            ) from e
        except httpx.HTTPError as e:
            raise EditServiceError(
                FailureReason.TRANSPORT,
                f'Could not reach the edit service: {e.__class__.__name__} {e}'.strip(),
            ) from e

        try:
            data = response.json()
        except ValueError as e:
            raise EditServiceError(
                FailureReason.MALFORMED_RESPONSE,
                'Edit service returned a non-JSON body',
            ) from e
        if not isinstance(data, dict):
            raise EditServiceError(
                FailureReason.MALFORMED_RESPONSE,
                f'Expected a JSON object, got {type(data).__name__}',
            )
        return data

    async def request_masks(self, image: SourceImage, point: MaskPoint) -> MaskResponse:
        payload = {
            'image': image.data,
            'extension': image.extension,
            'x': point.x,
            'y': point.y,
        }
        logger.info(
            'Requesting masks: file=%s, size=%dx%d, point=(%d, %d)',
            image.filename,
            image.width,
            image.height,
            point.x,
            point.y,
        )
        logger.debug('Mask request payload size=%d chars', len(image.data))
        try:
            data = await self._post(self.masks_endpoint, payload)
            files = _parse_files(data)
            image_id = data.get('image_id')
            if image_id is None:
                raise EditServiceError(FailureReason.MALFORMED_RESPONSE, 'Response has no "image_id"')
        except EditServiceError as e:
            logger.warning('Mask request failed: reason=%s, error=%s', e.reason.value, e.detail)
            return MaskResponse.failed(e)

        logger.info('Masks received: count=%d, image_id=%s', len(files), image_id)
        return MaskResponse(success=True, files=files, image_id=str(image_id))

    async def request_edit(
        self, image_id: str, extension: str, mask_id: str, prompt: str
    ) -> EditResponse:
        payload = {
            'image_id': image_id,
            'extension': extension,
            'mask_id': mask_id,
            'prompt': prompt,
        }
        logger.info(
            'Requesting edit: image_id=%s, mask_id=%s, prompt=%r',
            image_id,
            mask_id,
            prompt,
        )
        try:
            data = await self._post(self.edit_endpoint, payload)
            files = _parse_files(data)
        except EditServiceError as e:
            logger.warning('Edit request failed: reason=%s, error=%s', e.reason.value, e.detail)
            return EditResponse.failed(e)

        logger.info('Edit results received: count=%d', len(files))
        return EditResponse(success=True, files=files)
