"""
Out-of-band audio duration recovery.

Uploads commit with an unknown duration. A DurationProbe job decodes the
container metadata afterwards, under a hard timeout, and patches the result
onto both the legacy track row and the file row. Nothing here ever fails or
delays the upload that scheduled it.
"""

import io
import logging
import math
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional
from urllib.parse import unquote, urlparse

import ffmpeg
import requests
from mutagen import File as MutagenFile
from mutagen import MutagenError

from shared.constants import (
    DEFAULT_DOWNLOAD_CHUNK_SIZE,
    DURATION_PROBE_TIMEOUT,
    DURATION_PROBE_WORKERS,
    MAX_UPLOAD_BYTES,
    UNKNOWN_DURATION,
)

logger = logging.getLogger(__name__)

Decoder = Callable[[str], Optional[float]]


def format_duration(seconds: Optional[int]) -> str:
    """
    Render a duration as m:ss (h:mm:ss past an hour).

    Unknown (None) renders as "--:--", distinct from a real zero "0:00".
    """
    if seconds is UNKNOWN_DURATION:
        return "--:--"
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def _fetch_bytes(url: str, max_bytes: int, timeout: float) -> bytes:
    """Download up to max_bytes of a remote asset."""
    buffer = io.BytesIO()
    with requests.get(url, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        for chunk in response.iter_content(chunk_size=DEFAULT_DOWNLOAD_CHUNK_SIZE):
            buffer.write(chunk)
            if buffer.tell() >= max_bytes:
                break
    buffer.seek(0)
    return buffer.getvalue()


def decode_duration(reference: str, max_bytes: int = MAX_UPLOAD_BYTES,
                    timeout: float = DURATION_PROBE_TIMEOUT) -> Optional[float]:
    """
    Read the duration of an audio asset from its container metadata.

    Args:
        reference: http(s) URL, file:// URL or local path
        max_bytes: Download ceiling for remote assets
        timeout: Network / ffprobe timeout

    Returns:
        Duration in seconds, or None when nothing could be read
    """
    parsed = urlparse(reference)
    if parsed.scheme in ('http', 'https'):
        source = reference
        audio = MutagenFile(io.BytesIO(_fetch_bytes(reference, max_bytes, timeout)))
    else:
        source = unquote(parsed.path) if parsed.scheme == 'file' else reference
        audio = MutagenFile(source)

    if audio is not None and getattr(audio.info, 'length', 0):
        return float(audio.info.length)

    # Containers mutagen does not know; ffprobe reads the URL or path itself
    logger.debug(f"mutagen found no duration in {source}, trying ffprobe")
    info = ffmpeg.probe(source, timeout=timeout)
    duration = info.get('format', {}).get('duration')
    return float(duration) if duration is not None else None


class DurationJob:
    """
    One scheduled decode.

    Carries its own cancellation token: once cancelled (or timed out) the
    job never writes, even if the decode finishes later.
    """

    def __init__(self, file_id: str, reference: str, track_id: Optional[str] = None):
        self.file_id = file_id
        self.reference = reference
        self.track_id = track_id
        self.cancel_event = threading.Event()
        self.future: Future = Future()

    def cancel(self) -> None:
        self.cancel_event.set()
        self.future.cancel()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: Optional[float] = None) -> Optional[int]:
        """Resolved duration in seconds, None when unknown."""
        return self.future.result(timeout)


class DurationProbe:
    """Schedules decodes and patches durations onto track and file rows."""

    def __init__(self, repository, timeout: float = DURATION_PROBE_TIMEOUT,
                 max_workers: int = DURATION_PROBE_WORKERS,
                 decoder: Optional[Decoder] = None,
                 max_bytes: int = MAX_UPLOAD_BYTES):
        self.repository = repository
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.decoder = decoder or (lambda ref: decode_duration(ref, self.max_bytes, self.timeout))
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="duration-probe")
        self._jobs: List[DurationJob] = []
        self._lock = threading.Lock()

    def schedule(self, file_id: str, reference: str,
                 track_id: Optional[str] = None) -> DurationJob:
        """Queue a decode and return immediately."""
        job = DurationJob(file_id, reference, track_id)
        job.future = self._executor.submit(self._run, job)
        with self._lock:
            self._jobs = [j for j in self._jobs if not j.done()]
            self._jobs.append(job)
        logger.debug(f"Scheduled duration probe for file {file_id}")
        return job

    def probe(self, reference: str,
              cancel_event: Optional[threading.Event] = None) -> Optional[int]:
        """
        Decode with a hard timeout.

        The decode runs on a daemon thread; a decode that outlives the
        timeout is abandoned and its result ignored.

        Returns:
            Whole seconds, or None on timeout, error, or non-positive length
        """
        outcome: dict = {}

        def target():
            try:
                outcome['value'] = self.decoder(reference)
            except Exception as e:
                outcome['error'] = e

        worker = threading.Thread(target=target, name="duration-decode", daemon=True)
        worker.start()
        worker.join(self.timeout)

        if worker.is_alive():
            logger.warning(f"Duration decode timed out after {self.timeout}s: {reference}")
            if cancel_event is not None:
                cancel_event.set()
            return UNKNOWN_DURATION
        if 'error' in outcome:
            error = outcome['error']
            if isinstance(error, (MutagenError, ffmpeg.Error, requests.RequestException, OSError)):
                logger.warning(f"Could not decode duration of {reference}: {error}")
            else:
                logger.error(f"Unexpected error decoding {reference}: {error!r}")
            return UNKNOWN_DURATION

        value = outcome.get('value')
        if value is None or value <= 0:
            return UNKNOWN_DURATION
        return int(math.floor(value))

    def _run(self, job: DurationJob) -> Optional[int]:
        if job.cancelled:
            return UNKNOWN_DURATION
        seconds = self.probe(job.reference, job.cancel_event)
        if seconds is UNKNOWN_DURATION or job.cancelled:
            return UNKNOWN_DURATION
        self._patch(job, seconds)
        return seconds

    def _patch(self, job: DurationJob, seconds: int) -> None:
        """Write the duration to both representations; each write may fail alone."""
        track_id = job.track_id
        if track_id is None:
            try:
                track = self.repository.get_track_for_file(job.file_id)
                track_id = track.id if track else None
            except Exception as e:
                logger.error(f"Track lookup for file {job.file_id} failed: {e}")

        if track_id is not None:
            if job.cancelled:
                return
            try:
                self.repository.update_audio_duration(track_id, seconds)
            except Exception as e:
                logger.error(f"Error updating audio track duration for {track_id}: {e}")

        if job.cancelled:
            logger.debug(f"Duration job for file {job.file_id} cancelled before file patch")
            return
        try:
            self.repository.update_file_duration_seconds(job.file_id, seconds)
        except Exception as e:
            logger.error(f"Error updating file duration for {job.file_id}: {e}")

        logger.debug(f"File {job.file_id} duration set to {seconds}s")

    def pending_jobs(self) -> List[DurationJob]:
        with self._lock:
            return [j for j in self._jobs if not j.done()]

    def shutdown(self, wait: bool = False) -> None:
        """Cancel outstanding jobs and stop the worker pool."""
        with self._lock:
            jobs = list(self._jobs)
            self._jobs = []
        for job in jobs:
            job.cancel()
        self._executor.shutdown(wait=wait, cancel_futures=True)
