"""Chunked file pusher for TierDeploy.

Moves a local file to a VM over a :class:`~tierdeploy.connection.RemoteSession`
using nothing but remote command invocations:

- the stale destination is deleted and its parent directory created,
- the source is read in fixed-size blocks, one block in memory at a time,
- each block is appended remotely by the ``append_chunk`` operation,
- the remote file is stat'ed at the end and checked against the source.

Chunks are sent strictly in order and each one is acknowledged before the
next is read, because the remote side always appends at end-of-file.
Failed transfers are not resumed: the caller restarts the whole push, which
is safe because the first step clears whatever a previous attempt left.
"""

from __future__ import annotations

import logging
import os
import stat
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import BinaryIO, Callable, Iterator

from tierdeploy import remote_ops
from tierdeploy.connection import RemoteChannelError
from tierdeploy.utils.path_helpers import (
    human_readable_size,
    normalize_local_path,
    validate_remote_path,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024  # 1 MB per remote append

# (activity, status, percent complete)
ProgressSink = Callable[[str, str, float], None]

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class TransferError(Exception):
    """Base class for push failures.

    Attributes:
        path: The destination (or source, for local errors) path.
        offset: Byte offset of the chunk being sent, if any.
        chunk_index: Zero-based index of that chunk, if any.
        detail: Underlying error text, e.g. remote stderr.
    """

    def __init__(
        self,
        message: str,
        path: str = "",
        offset: int | None = None,
        chunk_index: int | None = None,
        detail: str = "",
    ) -> None:
        super().__init__(message)
        self.path = path
        self.offset = offset
        self.chunk_index = chunk_index
        self.detail = detail


class LocalSourceError(TransferError):
    """Source path missing, unreadable or not a regular file."""


class TransferInterruptedError(TransferError):
    """The remote channel dropped while the transfer was running."""


class RemotePrepError(TransferError):
    """Could not delete the stale destination or create its parent directory."""


class RemoteWriteError(TransferError):
    """A chunk append failed on the remote side."""


class VerificationError(TransferError):
    """The final remote stat failed or reported an unexpected size."""


class TransferCancelledError(TransferError):
    """The caller cancelled the transfer between two chunks."""


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


class TransferStatus(Enum):
    """Lifecycle state of a push."""

    NOT_STARTED = auto()
    SENDING = auto()
    COMPLETE = auto()
    FAILED = auto()
    CANCELLED = auto()


@dataclass(frozen=True)
class TransferRequest:
    """One file to push.  *destination_path* may be relative to the remote
    working directory."""

    source_path: str
    destination_path: str
    session: object


@dataclass(frozen=True)
class Chunk:
    """A contiguous slice of the source file."""

    offset: int
    data: bytes

    @property
    def end(self) -> int:
        return self.offset + len(self.data)


@dataclass(frozen=True)
class RemoteFileInfo:
    """Metadata of the remote file after a push."""

    path: str
    exists: bool
    size: int


@dataclass
class TransferItem:
    """Bookkeeping for one push."""

    source_path: str
    dest_path: str
    file_size: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    bytes_transferred: int = 0
    chunks_sent: int = 0
    status: TransferStatus = TransferStatus.NOT_STARTED
    error: str | None = None
    start_time: float | None = None
    end_time: float | None = None

    @property
    def progress_fraction(self) -> float:
        """Fraction of the file transferred (0.0 – 1.0)."""
        if self.file_size <= 0:
            return 1.0
        return min(1.0, self.bytes_transferred / self.file_size)

    @property
    def speed_mbps(self) -> float:
        """Current transfer speed in MB/s, or 0 if not yet started."""
        if self.start_time is None or self.bytes_transferred == 0:
            return 0.0
        elapsed = (self.end_time or time.monotonic()) - self.start_time
        if elapsed <= 0:
            return 0.0
        return (self.bytes_transferred / elapsed) / (1024 * 1024)

    @property
    def eta_seconds(self) -> float | None:
        """Estimated seconds remaining, or None if speed is unknown."""
        speed = self.speed_mbps
        if speed <= 0 or self.file_size <= 0:
            return None
        remaining_bytes = self.file_size - self.bytes_transferred
        return remaining_bytes / (speed * 1024 * 1024)


def iter_chunks(fh: BinaryIO, block_size: int = CHUNK_SIZE) -> Iterator[Chunk]:
    """Yield consecutive chunks of at most *block_size* bytes from *fh*."""
    if block_size <= 0:
        raise ValueError(f"block_size must be positive, got {block_size}")
    offset = 0
    while True:
        data = fh.read(block_size)
        if not data:
            return
        yield Chunk(offset=offset, data=data)
        offset += len(data)


# ---------------------------------------------------------------------------
# ChunkedFilePusher
# ---------------------------------------------------------------------------


class ChunkedFilePusher:
    """Pushes local files to a remote session in fixed-size chunks.

    Usage::

        pusher = ChunkedFilePusher(block_size=1024 * 1024, on_progress=sink)
        info = pusher.push(TransferRequest(local, "installers/db.deb", session))
    """

    def __init__(
        self,
        block_size: int = CHUNK_SIZE,
        on_progress: ProgressSink | None = None,
        log: logging.Logger | None = None,
        cancel_event: threading.Event | None = None,
        verify: bool = True,
    ) -> None:
        """Initialise the pusher.

        Args:
            block_size: Bytes per remote append.
            on_progress: Receives ``(activity, status, percent)`` after the
                prep step and after every chunk.
            log: Logger for transfer messages; defaults to this module's.
            cancel_event: When set, the push stops before the next chunk.
            verify: Raise :exc:`VerificationError` if the final remote size
                does not match the source.
        """
        if block_size <= 0:
            raise ValueError(f"block_size must be positive, got {block_size}")
        self.block_size = block_size
        self.on_progress = on_progress
        self.verify = verify
        self._log = log or logger
        self._cancel_event = cancel_event
        self.last_item: TransferItem | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def push(self, request: TransferRequest) -> RemoteFileInfo:
        """Transfer ``request.source_path`` to ``request.destination_path``.

        Returns the remote file's metadata.

        Raises:
            LocalSourceError: Source missing, unreadable or not a regular file.
            RemoteChannelError: The session is not open.
            TransferInterruptedError: The channel failed mid-transfer.
            RemotePrepError: Stale-file removal or mkdir failed.
            RemoteWriteError: A chunk append failed.
            VerificationError: Final size check failed.
            TransferCancelledError: ``cancel_event`` was set.
        """
        dest = request.destination_path
        if not validate_remote_path(dest):
            raise ValueError(f"Invalid remote destination path: {dest!r}")

        source, file_size = self._resolve_source(request.source_path)
        session = request.session
        if not session.is_connected:
            raise RemoteChannelError(f"Session {session!r} is not connected")

        item = TransferItem(source_path=str(source), dest_path=dest, file_size=file_size)
        self.last_item = item
        item.status = TransferStatus.SENDING
        item.start_time = time.monotonic()
        self._log.info(
            "Pushing %s → %s (%s, %d-byte chunks)",
            source,
            dest,
            human_readable_size(file_size),
            self.block_size,
        )

        try:
            try:
                with open(source, "rb") as fh:
                    self._prepare(session, dest)
                    self._report(item)
                    for index, chunk in enumerate(iter_chunks(fh, self.block_size)):
                        if self._cancel_event is not None and self._cancel_event.is_set():
                            raise TransferCancelledError(
                                f"Transfer of {source} cancelled at offset {chunk.offset}",
                                path=dest,
                                offset=chunk.offset,
                                chunk_index=index,
                            )
                        self._send_chunk(session, dest, chunk, index)
                        item.bytes_transferred += len(chunk.data)
                        item.chunks_sent += 1
                        self._report(item)
            except OSError as exc:
                raise LocalSourceError(
                    f"Could not read source {source}: {exc}",
                    path=str(source),
                    offset=item.bytes_transferred,
                    detail=str(exc),
                ) from exc

            info = self._stat(session, dest)
            if self.verify and (not info.exists or info.size != file_size):
                raise VerificationError(
                    f"Remote file {info.path} has size {info.size}"
                    f" (exists={info.exists}), expected {file_size}",
                    path=dest,
                    detail=f"remote size {info.size}",
                )
        except TransferCancelledError as exc:
            item.status = TransferStatus.CANCELLED
            item.error = str(exc)
            self._log.warning("%s", exc)
            raise
        except TransferError as exc:
            item.status = TransferStatus.FAILED
            item.error = str(exc)
            self._log.error("Push of %s failed: %s", source, exc)
            raise
        finally:
            item.end_time = time.monotonic()

        item.status = TransferStatus.COMPLETE
        self._log.info(
            "Push complete: %s → %s (%d chunks, %.1f MB/s)",
            source,
            info.path,
            item.chunks_sent,
            item.speed_mbps,
        )
        return info

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _resolve_source(self, source_path: str) -> tuple[Path, int]:
        """Return the absolute source path and its size."""
        source = normalize_local_path(source_path)
        try:
            st = source.stat()
        except OSError as exc:
            raise LocalSourceError(
                f"Source not found: {source_path}",
                path=source_path,
                detail=str(exc),
            ) from exc
        if not stat.S_ISREG(st.st_mode):
            raise LocalSourceError(
                f"Source is not a regular file: {source_path}",
                path=source_path,
            )
        if not os.access(source, os.R_OK):
            raise LocalSourceError(
                f"Source is not readable: {source_path}",
                path=source_path,
            )
        return source, st.st_size

    def _prepare(self, session, dest: str) -> None:
        """Delete any stale destination, then create its parent directory."""
        for operation in ("remove_file", "make_parent_dirs"):
            try:
                result = session.invoke(operation, b"", dest)
            except RemoteChannelError as exc:
                raise TransferInterruptedError(
                    f"Transfer interrupted while preparing {dest}: {exc}",
                    path=dest,
                    offset=0,
                    detail=str(exc),
                ) from exc
            if not result.ok:
                raise RemotePrepError(
                    f"{operation} failed for {dest}: {result.error_text}",
                    path=dest,
                    detail=result.error_text,
                )
        self._log.debug("Prepared remote destination %s", dest)

    def _send_chunk(self, session, dest: str, chunk: Chunk, index: int) -> None:
        """Append one chunk remotely."""
        try:
            result = session.invoke("append_chunk", chunk.data, dest)
        except RemoteChannelError as exc:
            raise TransferInterruptedError(
                f"Transfer interrupted at chunk {index} (offset {chunk.offset}): {exc}",
                path=dest,
                offset=chunk.offset,
                chunk_index=index,
                detail=str(exc),
            ) from exc
        if not result.ok:
            raise RemoteWriteError(
                f"Remote write failed at chunk {index} (offset {chunk.offset}):"
                f" {result.error_text}",
                path=dest,
                offset=chunk.offset,
                chunk_index=index,
                detail=result.error_text,
            )
        self._log.debug("Sent chunk %d [%d, %d) to %s", index, chunk.offset, chunk.end, dest)

    def _stat(self, session, dest: str) -> RemoteFileInfo:
        """Fetch the remote file's metadata."""
        try:
            result = session.invoke("stat_file", b"", dest)
        except RemoteChannelError as exc:
            raise TransferInterruptedError(
                f"Transfer interrupted while verifying {dest}: {exc}",
                path=dest,
                detail=str(exc),
            ) from exc
        if not result.ok:
            raise VerificationError(
                f"Could not stat {dest}: {result.error_text}",
                path=dest,
                detail=result.error_text,
            )
        try:
            abs_path, size = remote_ops.parse_stat(result.stdout)
        except ValueError as exc:
            raise VerificationError(str(exc), path=dest, detail=result.stdout) from exc
        if abs_path is None:
            return RemoteFileInfo(path=dest, exists=False, size=0)
        return RemoteFileInfo(path=abs_path, exists=True, size=size)

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def _report(self, item: TransferItem) -> None:
        """Send the current progress of *item* to the sink."""
        if self.on_progress is None:
            return
        activity = f"Uploading {Path(item.source_path).name}"
        status = (
            f"{human_readable_size(item.bytes_transferred)} of "
            f"{human_readable_size(item.file_size)}"
        )
        if item.speed_mbps > 0:
            status += f" at {item.speed_mbps:.1f} MB/s"
        eta = item.eta_seconds
        if eta is not None and item.bytes_transferred < item.file_size:
            status += f", {eta:.0f}s left"
        try:
            self.on_progress(activity, status, item.progress_fraction * 100.0)
        except Exception:
            logger.exception("Exception in on_progress callback")
