"""Folder/file library, quota accounting, uploads, duration recovery and presence."""

from .repository import FolderFileRepository, validate_name
from .quota import QuotaAccountant, format_bytes
from .uploader import UploadBatch, UploadPipeline
from .duration import DurationJob, DurationProbe, format_duration
from .presence import ListeningPresenceTracker
from .vault import Vault

__all__ = ["FolderFileRepository", "validate_name", "QuotaAccountant", "format_bytes",
           "UploadBatch", "UploadPipeline", "DurationJob", "DurationProbe",
           "format_duration", "ListeningPresenceTracker", "Vault"]
