"""Core components for TextLens."""

from .errors import ErrorKind, ScanError
from .validator import CandidateFile, ImageValidator, ValidatedImage, read_file
from .estimator import TokenEstimate, estimate_tokens, format_file_size
from .deduplicator import DuplicateDetector
from .database import FileMeta, ScanDatabase, ScanRecord, SnapshotFeed
from .storage import LocalBlobStore
from .history import HistoryStore, generate_keywords
from .recognizer import PromptIdea, TextRecognizer
from .notices import Notice, NoticeBoard
from .orchestrator import ExtractionOrchestrator, ScanResult, ScanSession, ScanState
from .pipeline import ScanPipeline
from .config import Config, load_config, save_config, ConfigError

__all__ = [
    "ErrorKind",
    "ScanError",
    "CandidateFile",
    "ImageValidator",
    "ValidatedImage",
    "read_file",
    "TokenEstimate",
    "estimate_tokens",
    "format_file_size",
    "DuplicateDetector",
    "FileMeta",
    "ScanDatabase",
    "ScanRecord",
    "SnapshotFeed",
    "LocalBlobStore",
    "HistoryStore",
    "generate_keywords",
    "PromptIdea",
    "TextRecognizer",
    "Notice",
    "NoticeBoard",
    "ExtractionOrchestrator",
    "ScanResult",
    "ScanSession",
    "ScanState",
    "ScanPipeline",
    "Config",
    "load_config",
    "save_config",
    "ConfigError",
]
