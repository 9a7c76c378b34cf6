"""Scan Pipeline component wiring the session components together."""

import logging

from .config import Config
from .database import ScanDatabase
from .history import HistoryStore
from .orchestrator import ExtractionOrchestrator, ScanSession
from .recognizer import TextRecognizer
from .storage import LocalBlobStore

logger = logging.getLogger(__name__)


class ScanPipeline:
    """Own the stores, history and orchestrator for one user session."""

    def __init__(self, config: Config) -> None:
        """Initialize scan pipeline.

        Args:
            config: Application configuration.
        """
        self._config = config

        # Initialize components
        self.db = ScanDatabase(config.db_path, sync_interval=config.sync_interval)
        self.blobs = LocalBlobStore(config.blob_dir)
        self.history = HistoryStore(self.db, self.blobs, limit=config.history_limit)
        self.session = ScanSession(
            credential=config.gemini_api_key,
            selected_model=config.ai_model
        )
        self.orchestrator = ExtractionOrchestrator(
            self.session,
            self._build_recognizer,
            history=self.history
        )

    def _build_recognizer(self, credential: str, model: str) -> TextRecognizer:
        return TextRecognizer(
            credential,
            model=model,
            temperature=self._config.temperature,
            max_output_tokens=self._config.max_output_tokens
        )

    async def start(self, select_model: bool = True) -> None:
        """Start the history subscription and pick a model.

        Returns once the first history snapshot is cached, so duplicate
        checks see existing scans.
        """
        logger.info("Starting TextLens pipeline...")
        await self.history.start()
        await self.history.wait_synced()

        if select_model and self.session.credential:
            await self.orchestrator.select_model()

    async def stop(self) -> None:
        """Finish background writes and release resources."""
        logger.info("Stopping TextLens pipeline...")
        await self.orchestrator.drain()
        await self.history.stop()
        await self.db.aclose()
        logger.info("Pipeline stopped")

    async def __aenter__(self) -> 'ScanPipeline':
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
