"""KitaDoc Audio Pipeline - Audio analysis service client.

The audio-processing service transcribes a recording, attributes the
observations to children and assigns categories. The pipeline treats it as
a black box behind BaseAnalysisClient.

Error taxonomy:
- AnalysisRequestError: transport failure (connect, timeout, protocol)
- AnalysisResponseError: service answered with a non-success status
- AnalysisDecodeError: body is not JSON or not a valid AnalysisResult
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod

import httpx
from pydantic import ValidationError

from kitadoc.config import ANALYSIS_TIMEOUT_SECONDS, AUDIO_PROC_SERVICE_URL
from kitadoc.models import utc_now
from kitadoc.schemas import AnalysisResult

logger = logging.getLogger(__name__)

# Multipart field name expected by the audio-processing service
AUDIO_FORM_FIELD = "audio_file"

# Response bodies are truncated to this many characters in errors/logs
MAX_ERROR_BODY_CHARS = 500


class AnalysisError(Exception):
    """Base exception for analysis service failures."""


class AnalysisRequestError(AnalysisError):
    """The request never produced a response."""


class AnalysisResponseError(AnalysisError):
    """The service returned a non-success status code."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"analysis service returned status {status_code}: {body}")


class AnalysisDecodeError(AnalysisError):
    """The service response could not be decoded into an AnalysisResult."""


class BaseAnalysisClient(ABC):
    """Contract for audio analysis backends."""

    @abstractmethod
    def analyze(self, audio: bytes, process_id: int | None = None) -> AnalysisResult:
        """Analyse one recording.

        Args:
            audio: Complete audio file content.
            process_id: Correlation id for logging (None for untracked runs).

        Returns:
            AnalysisResult with one entry per observed child.

        Raises:
            AnalysisError: on any failure.
        """


class HttpAnalysisClient(BaseAnalysisClient):
    """Client for the HTTP audio-processing service."""

    def __init__(
        self,
        *,
        service_url: str = AUDIO_PROC_SERVICE_URL,
        timeout_seconds: float = ANALYSIS_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ) -> None:
        self._service_url = service_url
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def close(self) -> None:
        self._client.close()

    def analyze(self, audio: bytes, process_id: int | None = None) -> AnalysisResult:
        filename = f"audio_{utc_now().strftime('%Y%m%d%H%M%S')}"
        logger.info(
            "Sending %d bytes to analysis service for process_id=%s", len(audio), process_id
        )

        try:
            response = self._client.post(
                self._service_url,
                files={AUDIO_FORM_FIELD: (filename, audio)},
            )
        except httpx.HTTPError as exc:
            raise AnalysisRequestError(f"analysis service request failed: {exc}") from exc

        if not response.is_success:
            body = response.text[:MAX_ERROR_BODY_CHARS]
            logger.error(
                "Analysis service returned status %d for process_id=%s: %s",
                response.status_code,
                process_id,
                body,
            )
            raise AnalysisResponseError(response.status_code, body)

        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise AnalysisDecodeError(f"analysis response is not JSON: {exc}") from exc

        try:
            result = AnalysisResult.model_validate(payload)
        except ValidationError as exc:
            raise AnalysisDecodeError(f"invalid analysis response: {exc}") from exc

        logger.info(
            "Received %d analysis entries for process_id=%s", result.number_of_entries, process_id
        )
        return result
