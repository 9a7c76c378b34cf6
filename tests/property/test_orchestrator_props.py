"""Property-based tests for Extraction Orchestrator.

Feature: textlens, Property 17: End-to-end scan
Feature: textlens, Property 18: Pre-flight checks block extraction
Feature: textlens, Property 19: Service failure allows retry
Feature: textlens, Property 20: Duplicate confirmation
Feature: textlens, Property 21: Single extraction in flight
Feature: textlens, Property 22: Persistence failure is non-fatal
"""

import asyncio
import io
import tempfile
from pathlib import Path

import pytest
from hypothesis import given, strategies as st, settings
from PIL import Image

from textlens.core.database import FileMeta, ScanDatabase, ScanRecord
from textlens.core.errors import ErrorKind, ScanError
from textlens.core.history import HistoryStore
from textlens.core.notices import NoticeBoard
from textlens.core.orchestrator import (
    LOADED_FROM_HISTORY,
    ExtractionOrchestrator,
    ScanSession,
    ScanState,
)
from textlens.core.recognizer import PromptIdea
from textlens.core.storage import LocalBlobStore
from textlens.core.validator import CandidateFile


def make_jpeg(width: int = 500, height: int = 500) -> bytes:
    buffer = io.BytesIO()
    Image.new('RGB', (width, height), (200, 200, 200)).save(buffer, format='JPEG')
    return buffer.getvalue()


def jpeg_candidate(name: str = 'photo.jpg', width: int = 500, height: int = 500) -> CandidateFile:
    return CandidateFile(name=name, media_type='image/jpeg', data=make_jpeg(width, height))


class FakeRecognizer:
    """Recognizer double; optionally blocks until released."""

    def __init__(self, text: str = "Hello", error: ScanError | None = None, block: bool = False) -> None:
        self.model = "models/gemini-1.5-flash"
        self.text = text
        self.error = error
        self.calls = 0
        self.release = asyncio.Event() if block else None

    async def select_model(self) -> str:
        self.model = "models/gemini-1.5-flash-002"
        return self.model

    async def extract(self, base64_payload: str, media_type: str) -> str:
        self.calls += 1
        if self.release is not None:
            await self.release.wait()
        if self.error is not None:
            raise self.error
        return self.text

    async def generate_prompt(self, text: str) -> PromptIdea:
        return PromptIdea(title="t", description="d", prompt=f"scene about {text}", tags=["x"])


class FailingBlobStore:
    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        raise OSError("bucket unavailable")


class Harness:
    """Orchestrator wired to a temporary SQLite history."""

    def __init__(self, tmpdir: str, recognizer: FakeRecognizer, credential: str = "key", blobs=None) -> None:
        self.db = ScanDatabase(Path(tmpdir) / "scans.db")
        self.history = HistoryStore(self.db, blobs or LocalBlobStore(Path(tmpdir) / "images"))
        self.recognizer = recognizer
        self.session = ScanSession(credential=credential)
        self.orchestrator = ExtractionOrchestrator(
            self.session,
            lambda key, model: recognizer,
            history=self.history
        )

    async def start(self) -> None:
        await self.history.start()
        await self.history.wait_synced()

    async def settle(self) -> None:
        await self.orchestrator.drain()
        for _ in range(5):
            await asyncio.sleep(0)

    async def stop(self) -> None:
        await self.orchestrator.drain()
        await self.history.stop()
        await self.db.aclose()


def run_with_harness(recognizer: FakeRecognizer, scenario, **kwargs):
    with tempfile.TemporaryDirectory() as tmpdir:
        async def run():
            harness = Harness(tmpdir, recognizer, **kwargs)
            await harness.start()
            try:
                return await scenario(harness)
            finally:
                await harness.stop()

        return asyncio.run(run())


class TestEndToEndScan:
    """Property 17: End-to-end scan.

    A valid 500x500 JPEG SHALL be previewed with an estimate of 592 tokens,
    and a successful extraction of "Hello" SHALL put a record with
    tokenCount 592 and keywords ["hello"] at the top of history.
    """

    def test_upload_extract_and_persist(self):
        """Feature: textlens, Property 17: End-to-end scan"""
        async def scenario(h: Harness):
            await h.db.insert(ScanRecord(
                id=None, timestamp=None, text="older scan", image_url="file:///tmp/old.png",
                token_count=300, keywords=["older"], file_meta=FileMeta("old.png", 1, "image/png")
            ))
            await h.settle()

            outcome = await h.orchestrator.ingest(jpeg_candidate())
            assert h.orchestrator.state == ScanState.IMAGE_LOADED
            assert outcome.estimate.tokens == 592
            assert outcome.duplicate_of is None
            assert h.session.image.preview_url.startswith("data:image/jpeg;base64,")

            result = await h.orchestrator.extract()
            assert result.text == "Hello"
            assert result.token_count == 592
            assert h.orchestrator.state == ScanState.SUCCEEDED

            await h.settle()
            return h.history.snapshot, [n.message for n in h.session.notices.active()]

        snapshot, messages = run_with_harness(FakeRecognizer("Hello"), scenario)

        assert len(snapshot) == 2
        top = snapshot[0]
        assert top.text == "Hello"
        assert top.token_count == 592
        assert top.keywords == ["hello"]
        assert top.file_meta.name == "photo.jpg"
        assert top.file_meta.type == "image/jpeg"
        assert snapshot[1].text == "older scan"
        assert "Saved to history" in messages

    def test_oversized_upload_rejected_without_state_change(self):
        async def scenario(h: Harness):
            oversized = CandidateFile(
                name='huge.jpg', media_type='image/jpeg', data=b'x', size=25 * 1024 * 1024
            )
            with pytest.raises(ScanError) as excinfo:
                await h.orchestrator.ingest(oversized)

            assert excinfo.value.kind == ErrorKind.TOO_LARGE
            assert h.orchestrator.state == ScanState.IDLE
            assert h.session.image is None
            assert h.session.estimate is None

            # Still accepts the next upload
            await h.orchestrator.ingest(jpeg_candidate())
            return h.orchestrator.state

        assert run_with_harness(FakeRecognizer(), scenario) == ScanState.IMAGE_LOADED

    def test_new_ingestion_clears_previous_result(self):
        async def scenario(h: Harness):
            await h.orchestrator.ingest(jpeg_candidate())
            await h.orchestrator.extract()
            await h.settle()

            await h.orchestrator.ingest(jpeg_candidate('second.jpg', 100, 100))
            return h.session

        session = run_with_harness(FakeRecognizer(), scenario)

        assert session.result is None
        assert session.state == ScanState.IMAGE_LOADED
        assert session.estimate.tokens == 258 + 14

    def test_clear_image_resets_session(self):
        async def scenario(h: Harness):
            await h.orchestrator.ingest(jpeg_candidate())
            h.orchestrator.clear_image()
            return h.session

        session = run_with_harness(FakeRecognizer(), scenario)

        assert session.state == ScanState.IDLE
        assert session.image is None
        assert session.estimate is None


class TestPreflightChecks:
    """Property 18: Pre-flight checks block extraction.

    Missing credential SHALL fail with MISSING_CREDENTIAL leaving the image
    loaded; a missing image SHALL fail with NO_IMAGE. Neither calls the service.
    """

    def test_missing_credential(self):
        """Feature: textlens, Property 18: Pre-flight checks block extraction"""
        recognizer = FakeRecognizer()

        async def scenario(h: Harness):
            await h.orchestrator.ingest(jpeg_candidate())
            with pytest.raises(ScanError) as excinfo:
                await h.orchestrator.extract()
            return excinfo.value.kind, h.orchestrator.state

        kind, state = run_with_harness(recognizer, scenario, credential="")

        assert kind == ErrorKind.MISSING_CREDENTIAL
        assert state == ScanState.IMAGE_LOADED
        assert recognizer.calls == 0

    def test_no_image(self):
        """Feature: textlens, Property 18: Pre-flight checks block extraction"""
        recognizer = FakeRecognizer()

        async def scenario(h: Harness):
            with pytest.raises(ScanError) as excinfo:
                await h.orchestrator.extract()
            return excinfo.value.kind, [n.message for n in h.session.notices.errors()]

        kind, errors = run_with_harness(recognizer, scenario)

        assert kind == ErrorKind.NO_IMAGE
        assert errors == ["Please upload an image first"]
        assert recognizer.calls == 0


class TestServiceFailureRetry:
    """Property 19: Service failure allows retry.

    *For any* service error message, extraction SHALL fail with that
    message and return to IMAGE_LOADED so the same image can be retried.
    """

    @given(st.text(alphabet='abcdefghijklmnopqrstuvwxyz .', min_size=1, max_size=40))
    @settings(max_examples=10, deadline=None)
    def test_error_then_retry(self, message: str):
        """Feature: textlens, Property 19: Service failure allows retry"""
        recognizer = FakeRecognizer(error=ScanError(ErrorKind.SERVICE_ERROR, message))

        async def scenario(h: Harness):
            await h.orchestrator.ingest(jpeg_candidate())
            with pytest.raises(ScanError) as excinfo:
                await h.orchestrator.extract()
            state_after_failure = h.orchestrator.state
            errors = [n.message for n in h.session.notices.errors()]

            recognizer.error = None
            result = await h.orchestrator.extract()
            return excinfo.value, state_after_failure, errors, result

        error, state, errors, result = run_with_harness(recognizer, scenario)

        assert error.kind == ErrorKind.SERVICE_ERROR
        assert error.message == message
        assert state == ScanState.IMAGE_LOADED
        assert errors == [f"Failed to extract text: {message}"]
        assert result.text == "Hello"

    def test_failed_retry_drops_previous_result(self):
        """Feature: textlens, Property 19: Service failure allows retry"""
        recognizer = FakeRecognizer()

        async def scenario(h: Harness):
            record_id = await h.db.insert(ScanRecord(
                id=None, timestamp=None, text="Old text", image_url="file:///tmp/a.png",
                token_count=300, keywords=["text"], file_meta=None
            ))
            await h.settle()
            await h.orchestrator.ingest(jpeg_candidate())
            h.orchestrator.load_history_item(record_id)

            recognizer.error = ScanError(ErrorKind.SERVICE_ERROR, "quota exceeded")
            with pytest.raises(ScanError):
                await h.orchestrator.extract()
            return h.session

        session = run_with_harness(recognizer, scenario)

        assert session.state == ScanState.IMAGE_LOADED
        assert session.result is None


class TestDuplicateConfirmation:
    """Property 20: Duplicate confirmation.

    An image matching a cached record's name and size SHALL wait for
    confirmation; confirming SHALL allow extraction and declining SHALL
    discard the image.
    """

    def _seed(self, h: Harness, data: bytes) -> None:
        h.history.apply_snapshot([ScanRecord(
            id="existing", timestamp=None, text="Hello", image_url="file:///tmp/photo.jpg",
            token_count=592, keywords=["hello"],
            file_meta=FileMeta(name="photo.jpg", size=len(data), type="image/jpeg")
        )])

    def test_confirm_then_extract(self):
        """Feature: textlens, Property 20: Duplicate confirmation"""
        async def scenario(h: Harness):
            candidate = jpeg_candidate()
            self._seed(h, candidate.data)

            outcome = await h.orchestrator.ingest(candidate)
            assert outcome.duplicate_of.id == "existing"
            assert h.orchestrator.state == ScanState.AWAITING_CONFIRMATION

            with pytest.raises(ScanError) as excinfo:
                await h.orchestrator.extract()
            assert excinfo.value.kind == ErrorKind.CONFIRMATION_PENDING

            waiter = asyncio.create_task(h.orchestrator.wait_for_decision())
            await asyncio.sleep(0)
            h.orchestrator.resolve_duplicate(True)
            decision = await waiter

            result = await h.orchestrator.extract()
            return decision, result

        decision, result = run_with_harness(FakeRecognizer(), scenario)

        assert decision is True
        assert result.text == "Hello"

    def test_decline_discards_image(self):
        """Feature: textlens, Property 20: Duplicate confirmation"""
        async def scenario(h: Harness):
            candidate = jpeg_candidate()
            self._seed(h, candidate.data)

            await h.orchestrator.ingest(candidate)
            h.orchestrator.resolve_duplicate(False)
            decision = await h.orchestrator.wait_for_decision()
            return decision, h.session

        decision, session = run_with_harness(FakeRecognizer(), scenario)

        assert decision is False
        assert session.state == ScanState.IDLE
        assert session.image is None

    def test_different_size_is_not_flagged(self):
        async def scenario(h: Harness):
            candidate = jpeg_candidate()
            self._seed(h, candidate.data + b'extra')
            outcome = await h.orchestrator.ingest(candidate)
            return outcome.duplicate_of, h.orchestrator.state

        duplicate, state = run_with_harness(FakeRecognizer(), scenario)

        assert duplicate is None
        assert state == ScanState.IMAGE_LOADED


class TestSingleExtractionInFlight:
    """Property 21: Single extraction in flight.

    A second extraction request while one is running SHALL be rejected;
    a result for a replaced image SHALL be discarded.
    """

    def test_concurrent_request_rejected(self):
        """Feature: textlens, Property 21: Single extraction in flight"""
        recognizer = FakeRecognizer(block=True)

        async def scenario(h: Harness):
            await h.orchestrator.ingest(jpeg_candidate())
            first = asyncio.create_task(h.orchestrator.extract())
            await asyncio.sleep(0)
            assert h.orchestrator.state == ScanState.EXTRACTING

            with pytest.raises(ScanError) as excinfo:
                await h.orchestrator.extract()

            recognizer.release.set()
            result = await first
            return excinfo.value.kind, result

        kind, result = run_with_harness(recognizer, scenario)

        assert kind == ErrorKind.EXTRACTION_IN_PROGRESS
        assert result.text == "Hello"
        assert recognizer.calls == 1

    def test_stale_result_discarded(self):
        recognizer = FakeRecognizer(block=True)

        async def scenario(h: Harness):
            await h.orchestrator.ingest(jpeg_candidate('first.jpg'))
            pending = asyncio.create_task(h.orchestrator.extract())
            await asyncio.sleep(0)

            await h.orchestrator.ingest(jpeg_candidate('second.jpg', 64, 64))
            recognizer.release.set()
            result = await pending
            await h.settle()
            return result, h.session, h.history.snapshot

        result, session, snapshot = run_with_harness(recognizer, scenario)

        assert result is None
        assert session.state == ScanState.IMAGE_LOADED
        assert session.image.name == 'second.jpg'
        assert session.result is None
        assert snapshot == []


class TestPersistenceFailure:
    """Property 22: Persistence failure is non-fatal.

    A failed history write SHALL leave the extraction result in place and
    post an error notice.
    """

    def test_failed_save_keeps_result(self):
        """Feature: textlens, Property 22: Persistence failure is non-fatal"""
        async def scenario(h: Harness):
            await h.orchestrator.ingest(jpeg_candidate())
            await h.orchestrator.extract()
            await h.settle()
            return h.session, [n.message for n in h.session.notices.errors()]

        session, errors = run_with_harness(FakeRecognizer(), scenario, blobs=FailingBlobStore())

        assert session.state == ScanState.SUCCEEDED
        assert session.result.text == "Hello"
        assert errors == ["Failed to save to history: bucket unavailable"]


class TestHistoryActions:
    """Loading, deleting and prompting from past scans."""

    def test_load_item_does_not_call_service(self):
        recognizer = FakeRecognizer()

        async def scenario(h: Harness):
            record_id = await h.db.insert(ScanRecord(
                id=None, timestamp=None, text="Stored text", image_url="file:///tmp/a.png",
                token_count=1307, keywords=["stored", "text"], file_meta=None
            ))
            await h.settle()
            return h.orchestrator.load_history_item(record_id)

        result = run_with_harness(recognizer, scenario)

        assert result.text == "Stored text"
        assert result.token_count == 1307
        assert result.summary == LOADED_FROM_HISTORY
        assert result.from_history is True
        assert recognizer.calls == 0

    def test_load_unknown_item(self):
        async def scenario(h: Harness):
            with pytest.raises(KeyError):
                h.orchestrator.load_history_item("missing")

        run_with_harness(FakeRecognizer(), scenario)

    def test_delete_needs_confirmation(self):
        async def scenario(h: Harness):
            record_id = await h.db.insert(ScanRecord(
                id=None, timestamp=None, text="bye", image_url="file:///tmp/a.png",
                token_count=300, keywords=[], file_meta=None
            ))
            declined = await h.orchestrator.delete_history_item(record_id, confirmed=False)
            still_there = h.db.get_by_id(record_id) is not None

            deleted = await h.orchestrator.delete_history_item(record_id, confirmed=True)
            await h.settle()
            return declined, still_there, deleted, h.history.snapshot, h.session.notices.active()

        declined, still_there, deleted, snapshot, notices = run_with_harness(FakeRecognizer(), scenario)

        assert declined is False
        assert still_there is True
        assert deleted is True
        assert snapshot == []
        assert [n.message for n in notices] == ["Scan deleted"]

    def test_delete_unknown_item_reports_failure(self):
        async def scenario(h: Harness):
            deleted = await h.orchestrator.delete_history_item("missing", confirmed=True)
            return deleted, [n.message for n in h.session.notices.active()]

        deleted, messages = run_with_harness(FakeRecognizer(), scenario)

        assert deleted is False
        assert messages == ["Failed to delete: scan missing not found"]

    def test_select_model_updates_session(self):
        async def scenario(h: Harness):
            return await h.orchestrator.select_model()

        assert run_with_harness(FakeRecognizer(), scenario) == "models/gemini-1.5-flash-002"

    def test_generate_prompt_requires_credential(self):
        async def scenario(h: Harness):
            with pytest.raises(ScanError) as excinfo:
                await h.orchestrator.generate_prompt("text")
            return excinfo.value.kind

        assert run_with_harness(FakeRecognizer(), scenario, credential="") == ErrorKind.MISSING_CREDENTIAL

    def test_generate_prompt(self):
        async def scenario(h: Harness):
            return await h.orchestrator.generate_prompt("harbor")

        assert run_with_harness(FakeRecognizer(), scenario).prompt == "scene about harbor"


class TestNotices:
    """Errors auto-dismiss after 5 seconds, successes after 3."""

    def test_auto_dismiss(self):
        now = [0.0]
        board = NoticeBoard(clock=lambda: now[0])
        board.post_error("boom")
        board.post_success("done")

        now[0] = 2.9
        assert [n.message for n in board.active()] == ["boom", "done"]

        now[0] = 3.1
        assert [n.message for n in board.active()] == ["boom"]

        now[0] = 5.1
        assert board.active() == []

    def test_manual_dismiss(self):
        board = NoticeBoard(clock=lambda: 0.0)
        notice = board.post_error("boom")

        board.dismiss(notice.id)

        assert board.active() == []
