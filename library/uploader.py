"""
Upload engine for batches of project files.

Every blob is validated before any storage is touched, reserved as a
pending row, streamed to the object store concurrently and only then made
visible. A batch that committed anything bumps the storage version once.
"""

import concurrent.futures
import logging
import mimetypes
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from rich.progress import Progress, TaskID

from shared.constants import DEFAULT_PARALLEL_UPLOADS, EXTRA_MIME_TYPES, MAX_PARALLEL_UPLOADS
from shared.errors import QuotaExceeded, StemvaultError, UploadCancelled, ValidationError
from shared.events import StorageEventBus, storage_events
from shared.models import StoredFile, UploadBatchResult, UploadBlob, UploadFailure
from storage.storage_provider import BucketPolicy, S3StorageProvider, UploadProgress
from .repository import FolderFileRepository, validate_name

logger = logging.getLogger(__name__)

FileProgressCallback = Callable[[str, float], None]
BatchProgressCallback = Callable[[float], None]


def guess_mime_type(name: str) -> Optional[str]:
    """MIME type from the file extension, None when unknown."""
    ext = Path(name).suffix.lower()
    return EXTRA_MIME_TYPES.get(ext) or mimetypes.guess_type(name)[0]


class UploadBatch:
    """Handle on one running batch; cancel() aborts its transfers between chunks."""

    def __init__(self):
        self.cancel_event = threading.Event()

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class BatchProgress:
    """
    Per-file and aggregate progress of a batch.

    The aggregate is the byte-weighted mean of the files still tracked; when
    every tracked file is empty each counts equally.
    """

    def __init__(self, on_file_progress: Optional[FileProgressCallback] = None,
                 on_batch_progress: Optional[BatchProgressCallback] = None,
                 progress: Optional[Progress] = None):
        self.on_file_progress = on_file_progress
        self.on_batch_progress = on_batch_progress
        self.progress = progress
        self._lock = threading.RLock()
        # file_id -> (name, size, percentage)
        self._entries: Dict[str, Tuple[str, int, float]] = {}
        self._tasks: Dict[str, TaskID] = {}
        self._batch_task: Optional[TaskID] = None

    def start(self, files: Sequence[StoredFile]) -> None:
        with self._lock:
            for stored in files:
                self._entries[stored.id] = (stored.name, stored.size, 0.0)
        if self.progress is not None:
            self._batch_task = self.progress.add_task(
                f"[green]Uploading {len(files)} files...", total=100
            )
            for stored in files:
                self._tasks[stored.id] = self.progress.add_task(f"[cyan]{stored.name}", total=100)

    def update(self, file_id: str, percentage: float) -> None:
        percentage = max(0.0, min(percentage, 100.0))
        # Emitted under the lock so observers see updates in order
        with self._lock:
            if file_id not in self._entries:
                return
            name, size, _ = self._entries[file_id]
            self._entries[file_id] = (name, size, percentage)
            overall = self._aggregate()

            if self.on_file_progress:
                self.on_file_progress(name, percentage)
            if self.on_batch_progress:
                self.on_batch_progress(overall)
            if self.progress is not None:
                self.progress.update(self._tasks[file_id], completed=percentage)
                self.progress.update(self._batch_task, completed=overall)

    def drop(self, file_id: str) -> None:
        """Forget a file that did not make it."""
        with self._lock:
            self._entries.pop(file_id, None)
        task = self._tasks.pop(file_id, None)
        if self.progress is not None and task is not None:
            self.progress.update(task, visible=False)

    def overall(self) -> float:
        with self._lock:
            return self._aggregate()

    def _aggregate(self) -> float:
        if not self._entries:
            return 100.0
        total = sum(size for _, size, _ in self._entries.values())
        if total == 0:
            return sum(pct for _, _, pct in self._entries.values()) / len(self._entries)
        return sum(size * pct for _, size, pct in self._entries.values()) / total


class UploadPipeline:
    """Validates, transfers and commits upload batches."""

    def __init__(self, repository: FolderFileRepository, storage: S3StorageProvider,
                 issuer=None, duration_probe=None, quota=None,
                 events: StorageEventBus = storage_events,
                 policy: Optional[BucketPolicy] = None,
                 parallel_uploads: int = DEFAULT_PARALLEL_UPLOADS,
                 link_tracks: bool = True):
        self.repository = repository
        self.storage = storage
        self.issuer = issuer
        self.duration_probe = duration_probe
        self.quota = quota
        self.events = events
        self.policy = policy or getattr(storage, 'policy', None) or BucketPolicy()
        self.parallel_uploads = max(1, min(parallel_uploads, MAX_PARALLEL_UPLOADS))
        self.link_tracks = link_tracks
        self._active: List[UploadBatch] = []
        self._lock = threading.Lock()

    def cancel(self) -> None:
        """Cancel every batch currently running on this pipeline."""
        with self._lock:
            batches = list(self._active)
        for batch in batches:
            batch.cancel()

    def _validate(self, owner_id: str, blobs: Sequence[UploadBlob],
                  result: UploadBatchResult) -> List[Tuple[UploadBlob, str, str]]:
        """Split the batch into accepted (blob, name, mime) and recorded rejections."""
        accepted: List[Tuple[UploadBlob, str, str]] = []
        accepted_bytes = 0
        for blob in blobs:
            mime_type = blob.mime_type or guess_mime_type(blob.name)
            try:
                name = validate_name(blob.name)
                self.policy.check(name, mime_type, blob.size)
                if self.quota is not None:
                    self.quota.check_quota(owner_id, accepted_bytes + blob.size)
            except (ValidationError, QuotaExceeded) as e:
                logger.info(f"Rejected {blob.name}: {e}")
                result.rejected.append(UploadFailure(blob.name, str(e), e))
                continue
            accepted_bytes += blob.size
            accepted.append((blob, name, mime_type))
        return accepted

    def upload(self, owner_id: str, blobs: Sequence[UploadBlob],
               folder_id: Optional[str] = None,
               on_file_progress: Optional[FileProgressCallback] = None,
               on_batch_progress: Optional[BatchProgressCallback] = None,
               progress: Optional[Progress] = None,
               batch: Optional[UploadBatch] = None) -> UploadBatchResult:
        """
        Upload a batch of files into one folder.

        Args:
            owner_id: Uploading user
            blobs: Files to upload
            folder_id: Target folder, root when None
            on_file_progress: Called with (name, percentage) per file
            on_batch_progress: Called with the aggregate percentage
            progress: Optional rich Progress to render tasks on
            batch: Handle to cancel this batch from another thread

        Raises:
            NotFound / Forbidden: the target folder is missing or not owned

        Returns:
            UploadBatchResult; per-file rejections and failures are reported
            there rather than raised
        """
        self.repository.require_target_folder(owner_id, folder_id)
        batch = batch or UploadBatch()
        result = UploadBatchResult()

        accepted = self._validate(owner_id, blobs, result)
        if not accepted:
            return result

        reserved: List[Tuple[StoredFile, UploadBlob]] = []
        try:
            for blob, name, mime_type in accepted:
                stored = self.repository.reserve_placeholder(owner_id, name, blob.size, mime_type, folder_id)
                reserved.append((stored, blob))
        except Exception:
            logger.error(f"Reserving upload slots for {owner_id} failed after {len(reserved)} file(s)")
            for stored, _ in reserved:
                self.repository.discard_placeholder(stored.id)
            raise

        tracker = BatchProgress(on_file_progress, on_batch_progress, progress)
        tracker.start([stored for stored, _ in reserved])

        with self._lock:
            self._active.append(batch)
        try:
            self._transfer_all(reserved, batch, tracker, result)
        finally:
            with self._lock:
                self._active.remove(batch)

        if result.committed:
            result.version = self.events.publish(f"uploaded {len(result.committed)} files")
            logger.info(f"Committed {len(result.committed)} files "
                        f"({result.committed_bytes} bytes) for {owner_id}")
            for stored in result.committed:
                if stored.is_audio:
                    self._link_audio(owner_id, stored, result)
        return result

    def _transfer_all(self, reserved: List[Tuple[StoredFile, UploadBlob]], batch: UploadBatch,
                      tracker: BatchProgress, result: UploadBatchResult) -> None:
        with ThreadPoolExecutor(max_workers=self.parallel_uploads,
                                thread_name_prefix="upload") as executor:
            future_to_file = {
                executor.submit(self._transfer_one, stored, blob, batch, tracker): stored
                for stored, blob in reserved
            }

            for future in concurrent.futures.as_completed(future_to_file):
                stored = future_to_file[future]
                try:
                    result.committed.append(future.result())
                except UploadCancelled:
                    logger.info(f"Upload of {stored.name} cancelled")
                    self._roll_back(stored, tracker)
                    result.cancelled.append(stored.name)
                except Exception as e:
                    logger.error(f"Upload of {stored.name} failed: {e}")
                    self._roll_back(stored, tracker)
                    result.failed.append(UploadFailure(stored.name, str(e), e))

    def _transfer_one(self, stored: StoredFile, blob: UploadBlob, batch: UploadBatch,
                      tracker: BatchProgress) -> StoredFile:
        if batch.cancelled:
            raise UploadCancelled(f"Upload of {stored.name} cancelled")

        def on_progress(update: UploadProgress) -> None:
            tracker.update(stored.id, update.percentage)

        self.storage.upload_stream(
            blob.stream,
            stored.storage_path,
            blob.size,
            stored.mime_type,
            progress_callback=on_progress,
            cancel_event=batch.cancel_event,
        )
        tracker.update(stored.id, 100.0)
        return self.repository.commit_placeholder(stored.id)

    def _roll_back(self, stored: StoredFile, tracker: BatchProgress) -> None:
        """Remove whatever a failed transfer left behind."""
        tracker.drop(stored.id)
        try:
            if not self.storage.delete_file(stored.storage_path):
                logger.warning(f"Partial object {stored.storage_path} could not be removed")
        except StemvaultError as e:
            logger.warning(f"Partial object {stored.storage_path} could not be removed: {e}")
        self.repository.discard_placeholder(stored.id)

    def _link_audio(self, owner_id: str, stored: StoredFile, result: UploadBatchResult) -> None:
        """Create the legacy track row and queue duration recovery. Never fails the upload."""
        track_id = None
        if self.link_tracks:
            try:
                track_id = self.repository.create_track(owner_id, stored.id, Path(stored.name).stem).id
            except (StemvaultError, sqlite3.Error) as e:
                logger.error(f"Could not create track for {stored.name}: {e}")

        if self.duration_probe is None or self.issuer is None:
            return
        try:
            reference = self.issuer.issue(owner_id, stored.storage_path)
        except (StemvaultError, sqlite3.Error) as e:
            logger.warning(f"No duration probe for {stored.name}, signing failed: {e}")
            return
        try:
            result.duration_jobs.append(self.duration_probe.schedule(stored.id, reference, track_id))
        except RuntimeError as e:
            # Probe pool already shut down
            logger.warning(f"Duration recovery for {stored.name} not scheduled: {e}")
