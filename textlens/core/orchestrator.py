"""Extraction Orchestrator: the scan session state machine."""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Protocol

from .database import ScanRecord
from .deduplicator import DuplicateDetector
from .drive import fetch_drive_image
from .errors import ErrorKind, ScanError
from .estimator import TokenEstimate, estimate
from .history import HistoryStore
from .notices import NoticeBoard
from .recognizer import DEFAULT_MODEL, PromptIdea
from .validator import CandidateFile, ImageValidator, ValidatedImage

logger = logging.getLogger(__name__)

LOADED_FROM_HISTORY = 'Loaded from History'


class ScanState(str, Enum):
    """States of one scan session."""
    IDLE = "idle"
    IMAGE_LOADED = "image_loaded"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXTRACTING = "extracting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Recognizer(Protocol):
    model: str

    async def select_model(self) -> str: ...

    async def extract(self, base64_payload: str, media_type: str) -> str: ...

    async def generate_prompt(self, text: str) -> PromptIdea: ...


@dataclass
class ScanResult:
    """What the results view shows."""
    text: str
    token_count: Optional[int] = None
    image_url: Optional[str] = None
    summary: str = ""
    from_history: bool = False


@dataclass
class ScanSession:
    """Mutable state of one user session."""
    credential: str = ""
    selected_model: str = DEFAULT_MODEL
    state: ScanState = ScanState.IDLE
    image: Optional[ValidatedImage] = None
    estimate: Optional[TokenEstimate] = None
    duplicate_of: Optional[ScanRecord] = None
    result: Optional[ScanResult] = None
    notices: NoticeBoard = field(default_factory=NoticeBoard)
    # Bumped whenever the current image is replaced or cleared
    generation: int = 0


@dataclass
class IngestOutcome:
    """Result of ingesting one image."""
    image: ValidatedImage
    estimate: Optional[TokenEstimate]
    duplicate_of: Optional[ScanRecord] = None


class ExtractionOrchestrator:
    """Drive a scan from ingestion through extraction and persistence."""

    def __init__(
        self,
        session: ScanSession,
        recognizer_factory: Callable[[str, str], Recognizer],
        history: Optional[HistoryStore] = None,
        validator: Optional[ImageValidator] = None,
        detector: Optional[DuplicateDetector] = None
    ) -> None:
        """Initialize orchestrator.

        Args:
            session: Session context this orchestrator owns.
            recognizer_factory: Builds a recognizer from (credential, model).
            history: History store; persistence is skipped when None.
            validator: Image validator.
            detector: Duplicate detector.
        """
        self.session = session
        self._recognizer_factory = recognizer_factory
        self._history = history
        self._validator = validator or ImageValidator()
        self._detector = detector or DuplicateDetector()
        self._recognizer: Optional[Recognizer] = None
        self._recognizer_key: Optional[str] = None
        self._decision: Optional[asyncio.Future] = None
        self._in_flight = False
        self._background: set[asyncio.Task] = set()

    @property
    def state(self) -> ScanState:
        return self.session.state

    @property
    def extracting(self) -> bool:
        return self._in_flight

    def _transition(self, state: ScanState) -> None:
        logger.debug(f"Scan state: {self.session.state.value} -> {state.value}")
        self.session.state = state

    def _fail(self, error: ScanError, prefix: str = "") -> ScanError:
        self.session.notices.post_error(f"{prefix}{error.message}")
        return error

    def set_credential(self, credential: str) -> None:
        """Store the service credential for this session."""
        self.session.credential = credential.strip()

    def _get_recognizer(self) -> Recognizer:
        key = self.session.credential
        if self._recognizer is None or self._recognizer_key != key:
            self._recognizer = self._recognizer_factory(key, self.session.selected_model)
            self._recognizer_key = key
        return self._recognizer

    async def select_model(self) -> str:
        """Pick the preferred model once a credential is available."""
        if not self.session.credential:
            return self.session.selected_model

        recognizer = self._get_recognizer()
        self.session.selected_model = await recognizer.select_model()
        return self.session.selected_model

    async def ingest(self, candidate: CandidateFile) -> IngestOutcome:
        """Validate a new image and load it into the session.

        Clears any previous results. If the history already holds a scan
        with the same filename and size, the session waits for
        resolve_duplicate().

        Args:
            candidate: File chosen by the user.

        Returns:
            IngestOutcome with the estimate and any duplicate found.

        Raises:
            ScanError: INVALID_TYPE or TOO_LARGE; the session is unchanged.
        """
        try:
            image = self._validator.validate(candidate)
        except ScanError as e:
            raise self._fail(e)

        self._discard_image()
        session = self.session
        session.image = image
        session.estimate = estimate(image.width, image.height, image.size)

        snapshot = self._history.snapshot if self._history else []
        session.duplicate_of = self._detector.find_duplicate(image.name, image.size, snapshot)

        if session.duplicate_of is not None:
            logger.info(f"Already scanned {image.name}; waiting for confirmation")
            self._decision = asyncio.get_running_loop().create_future()
            self._transition(ScanState.AWAITING_CONFIRMATION)
        else:
            self._transition(ScanState.IMAGE_LOADED)

        return IngestOutcome(image=image, estimate=session.estimate, duplicate_of=session.duplicate_of)

    async def ingest_drive_link(self, url: str) -> IngestOutcome:
        """Download a shared Google Drive image and ingest it."""
        try:
            candidate = await fetch_drive_image(url)
        except ScanError as e:
            raise self._fail(e)
        return await self.ingest(candidate)

    def resolve_duplicate(self, confirmed: bool) -> None:
        """Answer the duplicate prompt.

        Args:
            confirmed: True to keep the image, False to discard it.
        """
        if self.session.state != ScanState.AWAITING_CONFIRMATION:
            return

        decision = self._decision
        if confirmed:
            self._decision = None
            self._transition(ScanState.IMAGE_LOADED)
        else:
            self.clear_image()

        if decision is not None and not decision.done():
            decision.set_result(confirmed)

    async def wait_for_decision(self) -> bool:
        """Wait until the pending duplicate prompt is answered."""
        if self._decision is None:
            return self.session.state != ScanState.IDLE
        return await self._decision

    def clear_image(self) -> None:
        """Drop the current image and everything derived from it."""
        self._discard_image()
        self._transition(ScanState.IDLE)

    def _discard_image(self) -> None:
        session = self.session
        session.generation += 1
        session.image = None
        session.estimate = None
        session.duplicate_of = None
        session.result = None
        session.notices.clear_errors()

        if self._decision is not None and not self._decision.done():
            self._decision.set_result(False)
        self._decision = None

    async def extract(self) -> Optional[ScanResult]:
        """Send the current image to the recognizer.

        Only one extraction may run at a time. On success the scan is
        saved to history in the background.

        Returns:
            ScanResult, or None if the image was replaced while the request
            was running.

        Raises:
            ScanError: EXTRACTION_IN_PROGRESS, CONFIRMATION_PENDING,
                MISSING_CREDENTIAL, NO_IMAGE or SERVICE_ERROR.
        """
        session = self.session

        if self._in_flight:
            raise self._fail(ScanError(
                ErrorKind.EXTRACTION_IN_PROGRESS,
                'An extraction is already running'
            ))
        if session.state == ScanState.AWAITING_CONFIRMATION:
            raise self._fail(ScanError(
                ErrorKind.CONFIRMATION_PENDING,
                'Please confirm the duplicate scan first'
            ))
        if not session.credential:
            raise self._fail(ScanError(
                ErrorKind.MISSING_CREDENTIAL,
                'Please enter your Gemini API key first'
            ))
        if session.image is None:
            raise self._fail(ScanError(ErrorKind.NO_IMAGE, 'Please upload an image first'))

        image = session.image
        token_count = session.estimate.tokens if session.estimate else 0
        generation = session.generation
        recognizer = self._get_recognizer()

        self._in_flight = True
        session.result = None
        session.notices.clear_errors()
        self._transition(ScanState.EXTRACTING)

        try:
            text = await recognizer.extract(image.base64_payload, image.media_type)
        except ScanError as e:
            if session.generation != generation:
                logger.info(f"Discarding failed extraction for replaced image: {e}")
                return None
            self._transition(ScanState.FAILED)
            self._transition(ScanState.IMAGE_LOADED)
            raise self._fail(e, prefix='Failed to extract text: ')
        finally:
            self._in_flight = False

        if session.generation != generation:
            logger.info(f"Discarding extraction result for replaced image {image.name}")
            return None

        session.result = ScanResult(
            text=text,
            token_count=session.estimate.tokens if session.estimate else None,
            image_url=image.preview_url,
            summary=session.estimate.summary if session.estimate else ""
        )
        self._transition(ScanState.SUCCEEDED)

        if self._history is not None:
            task = asyncio.create_task(self._persist(text, image, token_count))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        return session.result

    async def _persist(self, text: str, image: ValidatedImage, token_count: int) -> None:
        try:
            await self._history.save_scan(text, image, token_count)
        except ScanError as e:
            self.session.notices.post_error(f"Failed to save to history: {e.message}")
        else:
            self.session.notices.post_success('Saved to history')

    async def drain(self) -> None:
        """Wait for background history writes to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def load_history_item(self, record_id: str) -> ScanResult:
        """Show a past scan without calling the recognizer.

        Args:
            record_id: ID of a record in the cached history.

        Returns:
            ScanResult built from the stored record.

        Raises:
            KeyError: If the record isn't in the cached history.
        """
        record = self._history.get(record_id) if self._history else None
        if record is None:
            raise KeyError(record_id)

        self.session.result = ScanResult(
            text=record.text,
            token_count=record.token_count or None,
            image_url=record.image_url or None,
            summary=LOADED_FROM_HISTORY,
            from_history=True
        )
        return self.session.result

    async def delete_history_item(self, record_id: str, confirmed: bool) -> bool:
        """Delete a past scan after explicit confirmation.

        Returns:
            True if the record was deleted.
        """
        if self._history is None:
            return False

        try:
            deleted = await self._history.delete(record_id, confirmed)
        except ScanError as e:
            self.session.notices.post_error(f"Failed to delete: {e.message}")
            return False

        if deleted:
            self.session.notices.post_success('Scan deleted')
        elif confirmed:
            self.session.notices.post_error(f"Failed to delete: scan {record_id} not found")
        return deleted

    async def generate_prompt(self, text: str) -> PromptIdea:
        """Ask the recognizer for an image prompt based on extracted text.

        Raises:
            ScanError: MISSING_CREDENTIAL or SERVICE_ERROR.
        """
        if not self.session.credential:
            raise self._fail(ScanError(
                ErrorKind.MISSING_CREDENTIAL,
                'Please enter your Gemini API key first'
            ))

        try:
            return await self._get_recognizer().generate_prompt(text)
        except ScanError as e:
            raise self._fail(e, prefix='Failed to generate prompt: ')
