"""Property-based tests for Scan Pipeline wiring.

Feature: textlens, Property 25: Pipeline lifecycle
"""

import asyncio
import tempfile
from pathlib import Path

from hypothesis import given, strategies as st, settings

from textlens.core.config import Config
from textlens.core.database import FileMeta, ScanDatabase, ScanRecord
from textlens.core.orchestrator import ScanState
from textlens.core.pipeline import ScanPipeline
from textlens.core.validator import CandidateFile


def make_config(tmp_path: Path, **overrides) -> Config:
    return Config(
        db_path=tmp_path / "scans.db",
        blob_dir=tmp_path / "images",
        sync_interval=0.0,
        **overrides
    )


class TestPipelineLifecycle:
    """Property 25: Pipeline lifecycle.

    Entering the pipeline SHALL start the history subscription; leaving it
    SHALL release the database.
    """

    def test_history_follows_database(self, tmp_path: Path):
        """Feature: textlens, Property 25: Pipeline lifecycle"""
        async def run():
            async with ScanPipeline(make_config(tmp_path)) as pipeline:
                await pipeline.history.wait_synced()
                await pipeline.db.insert(ScanRecord(
                    id=None, timestamp=None, text="Receipt total", image_url="file:///tmp/r.png",
                    token_count=300, keywords=["receipt", "total"], file_meta=None
                ))
                for _ in range(5):
                    await asyncio.sleep(0)
                return pipeline.history.snapshot, pipeline.orchestrator.state

        snapshot, state = asyncio.run(run())

        assert [r.text for r in snapshot] == ["Receipt total"]
        assert state == ScanState.IDLE

    def test_session_starts_from_config(self, tmp_path: Path):
        pipeline = ScanPipeline(make_config(tmp_path, gemini_api_key="key", ai_model="models/gemini-2.0-flash"))
        try:
            assert pipeline.session.credential == "key"
            assert pipeline.session.selected_model == "models/gemini-2.0-flash"
        finally:
            pipeline.db.close()

    @given(
        st.floats(min_value=0.0, max_value=2.0, allow_nan=False),
        st.integers(min_value=1, max_value=8192)
    )
    @settings(max_examples=10, deadline=None)
    def test_recognizer_uses_request_settings(self, temperature: float, max_tokens: int):
        """Feature: textlens, Property 25: Pipeline lifecycle"""
        with tempfile.TemporaryDirectory() as tmpdir:
            config = make_config(Path(tmpdir), temperature=temperature, max_output_tokens=max_tokens)
            pipeline = ScanPipeline(config)
            try:
                recognizer = pipeline._build_recognizer("key", "models/gemini-1.5-flash-002")

                assert recognizer.model == "models/gemini-1.5-flash-002"
                assert recognizer._temperature == temperature
                assert recognizer._max_output_tokens == max_tokens
            finally:
                pipeline.db.close()

    def test_duplicate_check_sees_existing_history(self, tmp_path: Path):
        """Feature: textlens, Property 25: Pipeline lifecycle"""
        config = make_config(tmp_path)
        seed = ScanDatabase(config.db_path)
        asyncio.run(seed.insert(ScanRecord(
            id=None, timestamp=None, text="Earlier scan", image_url="file:///tmp/a.png",
            token_count=300, keywords=["earlier"], file_meta=FileMeta(name="a.png", size=100, type="image/png")
        )))
        seed.close()

        async def run():
            async with ScanPipeline(config) as pipeline:
                outcome = await pipeline.orchestrator.ingest(
                    CandidateFile(name="a.png", media_type="image/png", data=b"x" * 100)
                )
                return outcome.duplicate_of, pipeline.orchestrator.state

        duplicate, state = asyncio.run(run())

        assert duplicate is not None
        assert duplicate.text == "Earlier scan"
        assert state == ScanState.AWAITING_CONFIRMATION
