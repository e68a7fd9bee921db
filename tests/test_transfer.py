"""Tests for tierdeploy/transfer.py — ChunkedFilePusher and helpers.

``FakeSession`` stands in for a RemoteSession: it applies the named remote
operations to a temporary directory, so every push can be checked byte for
byte.
"""

from __future__ import annotations

import io
import os
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from tierdeploy.connection import CommandResult, RemoteChannelError
from tierdeploy.transfer import (
    CHUNK_SIZE,
    ChunkedFilePusher,
    LocalSourceError,
    RemotePrepError,
    RemoteWriteError,
    TransferCancelledError,
    TransferInterruptedError,
    TransferItem,
    TransferRequest,
    TransferStatus,
    VerificationError,
    iter_chunks,
)

BLOCK = 1024


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class FakeSession:
    """Applies remote operations to ``root`` and records every invocation."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.is_connected = True
        self.calls: list[str] = []
        self.append_sizes: list[int] = []
        self.fail_on_chunk: int | None = None
        self.drop_on_chunk: int | None = None
        self.failing_operation: str | None = None
        self.stat_override: str | None = None
        self.drop_on_operation: str | None = None

    def _path(self, remote: str) -> Path:
        return self.root / remote.lstrip("/")

    def invoke(self, operation: str, payload: bytes = b"", *args: object) -> CommandResult:
        self.calls.append(operation)
        path = self._path(str(args[0]))
        if operation == self.drop_on_operation:
            self.is_connected = False
            raise RemoteChannelError("Channel to fake failed: connection reset")
        if operation == self.failing_operation:
            return CommandResult("", "Permission denied", 1)

        if operation == "remove_file":
            if path.exists():
                path.unlink()
        elif operation == "make_parent_dirs":
            path.parent.mkdir(parents=True, exist_ok=True)
            path.touch()
        elif operation == "append_chunk":
            index = len(self.append_sizes)
            if index == self.fail_on_chunk:
                return CommandResult("", "No space left on device", 1)
            if index == self.drop_on_chunk:
                self.is_connected = False
                raise RemoteChannelError("Channel to fake failed: connection reset")
            with open(path, "ab") as fh:
                fh.write(payload)
            self.append_sizes.append(len(payload))
        elif operation == "stat_file":
            if self.stat_override is not None:
                return CommandResult(self.stat_override, "", 0)
            if path.is_file():
                return CommandResult(f"{path}\t{path.stat().st_size}\n", "", 0)
            return CommandResult("missing\n", "", 0)
        else:
            raise KeyError(operation)
        return CommandResult("", "", 0)


@pytest.fixture()
def remote_root(tmp_path: Path) -> Path:
    root = tmp_path / "remote"
    root.mkdir()
    return root


@pytest.fixture()
def session(remote_root: Path) -> FakeSession:
    return FakeSession(remote_root)


@pytest.fixture()
def pusher() -> ChunkedFilePusher:
    return ChunkedFilePusher(block_size=BLOCK)


def _make_source(tmp_path: Path, size: int, name: str = "source.bin") -> Path:
    src = tmp_path / name
    src.write_bytes(os.urandom(size))
    return src


# ---------------------------------------------------------------------------
# iter_chunks
# ---------------------------------------------------------------------------


class TestIterChunks:
    def test_chunks_are_contiguous_and_cover_input(self) -> None:
        data = bytes(range(256)) * 10
        chunks = list(iter_chunks(io.BytesIO(data), 300))
        assert [c.offset for c in chunks] == list(range(0, len(data), 300))
        assert b"".join(c.data for c in chunks) == data
        assert all(chunks[i].end == chunks[i + 1].offset for i in range(len(chunks) - 1))

    def test_empty_input_yields_nothing(self) -> None:
        assert list(iter_chunks(io.BytesIO(b""), 16)) == []

    def test_rejects_non_positive_block_size(self) -> None:
        with pytest.raises(ValueError):
            list(iter_chunks(io.BytesIO(b"abc"), 0))


# ---------------------------------------------------------------------------
# TransferItem
# ---------------------------------------------------------------------------


class TestTransferItem:
    def test_initial_status_is_not_started(self) -> None:
        item = TransferItem(source_path="/local/a", dest_path="a", file_size=10)
        assert item.status == TransferStatus.NOT_STARTED

    def test_progress_fraction_zero_size_file(self) -> None:
        """Zero-size files should not cause a ZeroDivisionError."""
        item = TransferItem(source_path="/local/empty", dest_path="empty", file_size=0)
        assert item.progress_fraction == 1.0

    def test_progress_fraction_partial(self) -> None:
        item = TransferItem(source_path="/local/a", dest_path="a", file_size=1000)
        item.bytes_transferred = 250
        assert item.progress_fraction == pytest.approx(0.25)

    def test_eta_unknown_before_start(self) -> None:
        item = TransferItem(source_path="/local/a", dest_path="a", file_size=1000)
        assert item.speed_mbps == 0.0
        assert item.eta_seconds is None

    def test_eta_from_average_speed(self) -> None:
        item = TransferItem(source_path="/local/a", dest_path="a", file_size=4 * 1024 * 1024)
        item.bytes_transferred = 1024 * 1024
        item.start_time = 10.0
        item.end_time = 12.0
        assert item.speed_mbps == pytest.approx(0.5)
        assert item.eta_seconds == pytest.approx(6.0)


# ---------------------------------------------------------------------------
# Round trip and chunking
# ---------------------------------------------------------------------------


class TestRoundTrip:
    @pytest.mark.parametrize("size", [1, BLOCK - 1, BLOCK, BLOCK + 1, 3 * BLOCK, 5 * BLOCK + 17])
    def test_destination_matches_source(
        self, tmp_path: Path, session: FakeSession, pusher: ChunkedFilePusher, size: int
    ) -> None:
        src = _make_source(tmp_path, size)
        info = pusher.push(TransferRequest(str(src), "dest/file.bin", session))

        remote = session.root / "dest" / "file.bin"
        assert remote.read_bytes() == src.read_bytes()
        assert info.exists is True
        assert info.size == size
        assert info.path == str(remote)

    def test_exact_multiple_sends_full_chunks_only(
        self, tmp_path: Path, session: FakeSession, pusher: ChunkedFilePusher
    ) -> None:
        src = _make_source(tmp_path, 4 * BLOCK)
        pusher.push(TransferRequest(str(src), "f.bin", session))
        assert session.append_sizes == [BLOCK] * 4

    def test_remainder_goes_in_final_short_chunk(
        self, tmp_path: Path, session: FakeSession, pusher: ChunkedFilePusher
    ) -> None:
        src = _make_source(tmp_path, 2 * BLOCK + 100)
        pusher.push(TransferRequest(str(src), "f.bin", session))
        assert session.append_sizes == [BLOCK, BLOCK, 100]

    def test_default_block_size_two_and_a_half_mib(
        self, tmp_path: Path, session: FakeSession
    ) -> None:
        size = CHUNK_SIZE * 5 // 2
        src = _make_source(tmp_path, size)
        info = ChunkedFilePusher().push(TransferRequest(str(src), "big.bin", session))
        assert session.append_sizes == [CHUNK_SIZE, CHUNK_SIZE, CHUNK_SIZE // 2]
        assert info.size == size

    def test_operation_order(
        self, tmp_path: Path, session: FakeSession, pusher: ChunkedFilePusher
    ) -> None:
        src = _make_source(tmp_path, BLOCK + 1)
        pusher.push(TransferRequest(str(src), "f.bin", session))
        assert session.calls == [
            "remove_file",
            "make_parent_dirs",
            "append_chunk",
            "append_chunk",
            "stat_file",
        ]

    def test_zero_length_source_creates_empty_destination(
        self, tmp_path: Path, session: FakeSession, pusher: ChunkedFilePusher
    ) -> None:
        src = _make_source(tmp_path, 0)
        info = pusher.push(TransferRequest(str(src), "nested/empty.bin", session))
        remote = session.root / "nested" / "empty.bin"
        assert remote.exists()
        assert remote.stat().st_size == 0
        assert "append_chunk" not in session.calls
        assert info.exists is True
        assert info.size == 0

    def test_stale_destination_is_replaced_not_appended(
        self, tmp_path: Path, session: FakeSession, pusher: ChunkedFilePusher
    ) -> None:
        stale = session.root / "f.bin"
        stale.write_bytes(b"old content that is much longer than the new file" * 50)
        src = tmp_path / "src.bin"
        src.write_bytes(b"new")

        pusher.push(TransferRequest(str(src), "f.bin", session))
        assert stale.read_bytes() == b"new"

    def test_item_records_completion(
        self, tmp_path: Path, session: FakeSession, pusher: ChunkedFilePusher
    ) -> None:
        src = _make_source(tmp_path, 3 * BLOCK)
        pusher.push(TransferRequest(str(src), "f.bin", session))
        item = pusher.last_item
        assert item is not None
        assert item.status == TransferStatus.COMPLETE
        assert item.chunks_sent == 3
        assert item.bytes_transferred == 3 * BLOCK
        assert item.end_time is not None


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


class TestProgress:
    def test_progress_is_monotonic_and_ends_at_100(
        self, tmp_path: Path, session: FakeSession
    ) -> None:
        reports: list[tuple[str, str, float]] = []
        pusher = ChunkedFilePusher(
            block_size=BLOCK, on_progress=lambda a, s, p: reports.append((a, s, p))
        )
        src = _make_source(tmp_path, 7 * BLOCK + 3)
        pusher.push(TransferRequest(str(src), "f.bin", session))

        percents = [p for _, _, p in reports]
        assert percents == sorted(percents)
        assert percents[-1] == pytest.approx(100.0)
        assert len(reports) == 1 + 8  # after prep, then once per chunk
        assert all(activity == "Uploading source.bin" for activity, _, _ in reports)

    def test_status_shows_time_left_until_done(self) -> None:
        sink = MagicMock()
        pusher = ChunkedFilePusher(block_size=BLOCK, on_progress=sink)
        item = TransferItem(source_path="/local/db.deb", dest_path="db.deb", file_size=4 * 1024 * 1024)
        item.bytes_transferred = 1024 * 1024
        item.start_time = 10.0
        item.end_time = 12.0

        pusher._report(item)
        activity, status, percent = sink.call_args.args
        assert activity == "Uploading db.deb"
        assert status == "1.0 MB of 4.0 MB at 0.5 MB/s, 6s left"
        assert percent == pytest.approx(25.0)

        item.bytes_transferred = item.file_size
        pusher._report(item)
        assert "left" not in sink.call_args.args[1]

    def test_zero_length_reports_complete(
        self, tmp_path: Path, session: FakeSession
    ) -> None:
        sink = MagicMock()
        src = _make_source(tmp_path, 0)
        ChunkedFilePusher(block_size=BLOCK, on_progress=sink).push(
            TransferRequest(str(src), "f.bin", session)
        )
        assert sink.call_args.args[2] == pytest.approx(100.0)

    def test_sink_exception_does_not_abort_transfer(
        self, tmp_path: Path, session: FakeSession
    ) -> None:
        sink = MagicMock(side_effect=RuntimeError("display gone"))
        src = _make_source(tmp_path, 2 * BLOCK)
        info = ChunkedFilePusher(block_size=BLOCK, on_progress=sink).push(
            TransferRequest(str(src), "f.bin", session)
        )
        assert info.size == 2 * BLOCK
        assert sink.call_count == 3


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    def test_missing_source_fails_before_remote_interaction(
        self, tmp_path: Path, session: FakeSession, pusher: ChunkedFilePusher
    ) -> None:
        with pytest.raises(LocalSourceError, match="Source not found"):
            pusher.push(TransferRequest(str(tmp_path / "nope.bin"), "f.bin", session))
        assert session.calls == []

    def test_directory_source_rejected(
        self, tmp_path: Path, session: FakeSession, pusher: ChunkedFilePusher
    ) -> None:
        with pytest.raises(LocalSourceError, match="not a regular file"):
            pusher.push(TransferRequest(str(tmp_path), "f.bin", session))
        assert session.calls == []

    def test_closed_session_fails_before_remote_interaction(
        self, tmp_path: Path, session: FakeSession, pusher: ChunkedFilePusher
    ) -> None:
        session.is_connected = False
        src = _make_source(tmp_path, 10)
        with pytest.raises(RemoteChannelError):
            pusher.push(TransferRequest(str(src), "f.bin", session))
        assert session.calls == []

    def test_traversal_destination_rejected(
        self, tmp_path: Path, session: FakeSession, pusher: ChunkedFilePusher
    ) -> None:
        src = _make_source(tmp_path, 10)
        with pytest.raises(ValueError, match="Invalid remote destination"):
            pusher.push(TransferRequest(str(src), "../etc/passwd", session))

    @pytest.mark.parametrize("operation", ["remove_file", "make_parent_dirs"])
    def test_prep_failure_raises_prep_error(
        self, tmp_path: Path, session: FakeSession, pusher: ChunkedFilePusher, operation: str
    ) -> None:
        session.failing_operation = operation
        src = _make_source(tmp_path, 10)
        with pytest.raises(RemotePrepError) as excinfo:
            pusher.push(TransferRequest(str(src), "f.bin", session))
        assert excinfo.value.detail == "Permission denied"
        assert "append_chunk" not in session.calls

    def test_write_failure_stops_at_failing_chunk(
        self, tmp_path: Path, session: FakeSession, pusher: ChunkedFilePusher
    ) -> None:
        session.fail_on_chunk = 2
        src = _make_source(tmp_path, 5 * BLOCK)
        with pytest.raises(RemoteWriteError) as excinfo:
            pusher.push(TransferRequest(str(src), "f.bin", session))

        err = excinfo.value
        assert err.chunk_index == 2
        assert err.offset == 2 * BLOCK
        assert err.detail == "No space left on device"
        assert session.calls.count("append_chunk") == 3  # two good, one failed
        assert "stat_file" not in session.calls
        assert pusher.last_item.status == TransferStatus.FAILED

    def test_restart_after_write_failure_produces_correct_file(
        self, tmp_path: Path, session: FakeSession, pusher: ChunkedFilePusher
    ) -> None:
        session.fail_on_chunk = 1
        src = _make_source(tmp_path, 4 * BLOCK + 5)
        request = TransferRequest(str(src), "f.bin", session)
        with pytest.raises(RemoteWriteError):
            pusher.push(request)

        session.fail_on_chunk = None
        session.append_sizes.clear()
        info = pusher.push(request)
        assert (session.root / "f.bin").read_bytes() == src.read_bytes()
        assert info.size == 4 * BLOCK + 5

    def test_channel_drop_raises_interrupted_and_leaves_partial(
        self, tmp_path: Path, session: FakeSession, pusher: ChunkedFilePusher
    ) -> None:
        session.drop_on_chunk = 2
        src = _make_source(tmp_path, 4 * BLOCK)
        with pytest.raises(TransferInterruptedError) as excinfo:
            pusher.push(TransferRequest(str(src), "f.bin", session))

        assert excinfo.value.chunk_index == 2
        assert isinstance(excinfo.value.__cause__, RemoteChannelError)
        assert (session.root / "f.bin").stat().st_size == 2 * BLOCK

    @pytest.mark.parametrize("operation", ["remove_file", "make_parent_dirs"])
    def test_channel_drop_during_prep_raises_interrupted(
        self, tmp_path: Path, session: FakeSession, pusher: ChunkedFilePusher, operation: str
    ) -> None:
        session.drop_on_operation = operation
        src = _make_source(tmp_path, 10)
        with pytest.raises(TransferInterruptedError) as excinfo:
            pusher.push(TransferRequest(str(src), "f.bin", session))

        assert excinfo.value.offset == 0
        assert isinstance(excinfo.value.__cause__, RemoteChannelError)
        assert "append_chunk" not in session.calls
        assert pusher.last_item.status == TransferStatus.FAILED

    def test_channel_drop_during_stat_raises_interrupted(
        self, tmp_path: Path, session: FakeSession, pusher: ChunkedFilePusher
    ) -> None:
        session.drop_on_operation = "stat_file"
        src = _make_source(tmp_path, 3 * BLOCK)
        with pytest.raises(TransferInterruptedError, match="while verifying"):
            pusher.push(TransferRequest(str(src), "f.bin", session))

        assert session.append_sizes == [BLOCK, BLOCK, BLOCK]
        assert (session.root / "f.bin").read_bytes() == src.read_bytes()

    def test_size_mismatch_raises_verification_error(
        self, tmp_path: Path, session: FakeSession, pusher: ChunkedFilePusher
    ) -> None:
        session.stat_override = "/remote/f.bin\t3\n"
        src = _make_source(tmp_path, 10)
        with pytest.raises(VerificationError):
            pusher.push(TransferRequest(str(src), "f.bin", session))

    def test_missing_after_push_raises_verification_error(
        self, tmp_path: Path, session: FakeSession, pusher: ChunkedFilePusher
    ) -> None:
        session.stat_override = "missing\n"
        src = _make_source(tmp_path, 10)
        with pytest.raises(VerificationError):
            pusher.push(TransferRequest(str(src), "f.bin", session))

    def test_verification_can_be_disabled(
        self, tmp_path: Path, session: FakeSession
    ) -> None:
        session.stat_override = "/remote/f.bin\t3\n"
        src = _make_source(tmp_path, 10)
        info = ChunkedFilePusher(block_size=BLOCK, verify=False).push(
            TransferRequest(str(src), "f.bin", session)
        )
        assert info.size == 3

    def test_cancel_stops_at_chunk_boundary(
        self, tmp_path: Path, session: FakeSession
    ) -> None:
        cancel = threading.Event()

        def sink(activity: str, status: str, percent: float) -> None:
            if percent >= 50.0:
                cancel.set()

        pusher = ChunkedFilePusher(block_size=BLOCK, on_progress=sink, cancel_event=cancel)
        src = _make_source(tmp_path, 4 * BLOCK)
        with pytest.raises(TransferCancelledError) as excinfo:
            pusher.push(TransferRequest(str(src), "f.bin", session))

        assert excinfo.value.chunk_index == 2
        assert session.append_sizes == [BLOCK, BLOCK]
        assert pusher.last_item.status == TransferStatus.CANCELLED

    def test_invalid_block_size(self) -> None:
        with pytest.raises(ValueError):
            ChunkedFilePusher(block_size=0)
