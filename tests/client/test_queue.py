"""Tests for the transfer queues (Uploader / Downloader)."""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Any

import pytest

from cloudferry.client.api import RemoteFile, StorageClient
from cloudferry.client.events import (
    TERMINAL_EVENTS,
    TransferAllDone,
    TransferFailed,
    TransferFileDone,
    TransferProgress,
    TransferStarted,
    TransferStopped,
)
from cloudferry.client.transfers import (
    DownloadItem,
    Downloader,
    TransferWorker,
    UploadItem,
    Uploader,
)
from cloudferry.core.config import EncryptionConfig

ALGORITHM = "AES-256/CBC/PKCS5Padding"
BIG = 1024 * 1024


def download_url(file: RemoteFile) -> str:
    return f"http://test/api/files/{file.id}/download"


def upload_url(name: str, target: str) -> str:
    return f"http://test/api/files/upload?target={target}&name={name}&public=0"


def remote_files(count: int) -> list[RemoteFile]:
    return [RemoteFile(id=f"f{i}", name=f"file{i}.bin") for i in range(count)]


def without_progress(events: list[Any]) -> list[type]:
    return [type(e) for e in events if not isinstance(e, TransferProgress)]



class OverlapTracker:
    """Counts transfers running at the same time."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.active = 0
        self.peak = 0

    def enter(self) -> None:
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)

    def leave(self) -> None:
        with self._lock:
            self.active -= 1


class SlowWorker(TransferWorker):
    """Worker pretending to move a few chunks, without any HTTP."""

    def __init__(self, client: StorageClient, item: DownloadItem, tracker: OverlapTracker) -> None:
        super().__init__(client, item)
        self._tracker = tracker

    @property
    def worker_type(self) -> str:
        return "slow"

    def _transfer(self) -> None:
        self._tracker.enter()
        try:
            for chunk in range(1, 6):
                self._check_stop()
                time.sleep(0.002)
                self._progress(chunk, 5)
        finally:
            self._tracker.leave()
        return None


class SlowDownloader(Downloader):
    """Downloader running SlowWorker instead of real downloads."""

    def __init__(self, client: StorageClient, tracker: OverlapTracker) -> None:
        super().__init__(client, target_folder="unused")
        self._tracker = tracker

    def _create_worker(self, item: DownloadItem) -> TransferWorker:
        return SlowWorker(self._client, item, self._tracker)


class TestDownloader:
    """Tests for Downloader queue processing."""

    def test_drains_in_order(
        self, httpx_mock, client: StorageClient, listener, tmp_path: Path  # type: ignore[no-untyped-def]
    ) -> None:
        """Items should be transferred in FIFO order, then AllDone fires once."""
        files = remote_files(3)
        for file in files:
            httpx_mock.add_response(url=download_url(file), content=file.id.encode() * 500)
        downloader = Downloader(client, target_folder=tmp_path)
        downloader.add_listener(listener)
        for file in files:
            downloader.add_file(file)

        assert downloader.start() is True
        assert listener.wait_for(TransferAllDone)
        assert downloader.join(timeout=10)

        started = [e.item.file.id for e in listener.of_type(TransferStarted)]
        done = [e.item.file.id for e in listener.of_type(TransferFileDone)]
        assert started == ["f0", "f1", "f2"]
        assert done == ["f0", "f1", "f2"]
        assert listener.types.count(TransferAllDone) == 1
        assert listener.types[-1] is TransferAllDone
        assert all(sender is downloader for _, sender in listener.received)
        assert (tmp_path / "file1.bin").read_bytes() == b"f1" * 500
        assert downloader.items == []
        assert downloader.is_running is False

    def test_one_transfer_at_a_time(
        self, httpx_mock, client: StorageClient, listener, tmp_path: Path  # type: ignore[no-untyped-def]
    ) -> None:
        """An item should only start once the previous one ended."""
        files = remote_files(3)
        for file in files:
            httpx_mock.add_response(url=download_url(file), content=os.urandom(5000))
        downloader = Downloader(client, target_folder=tmp_path)
        downloader.add_listener(listener)
        for file in files:
            downloader.add_file(file)

        downloader.start()
        assert listener.wait_for(TransferAllDone)

        active = None
        for event in listener.events:
            if isinstance(event, TransferStarted):
                assert active is None
                active = event.item
            elif isinstance(event, TransferProgress):
                assert event.item is active
            elif isinstance(event, (TransferFileDone, TransferFailed, TransferStopped)):
                assert event.item is active
                active = None

    def test_default_target_applied_at_start(
        self, httpx_mock, client: StorageClient, listener, remote_file: RemoteFile, tmp_path: Path  # type: ignore[no-untyped-def]
    ) -> None:
        """The default folder should be applied when the item becomes active."""
        httpx_mock.add_response(url=download_url(remote_file), content=b"abc")
        downloader = Downloader(client)
        downloader.add_listener(listener)
        downloader.add(DownloadItem.for_file(remote_file))
        assert downloader.items[0].target is None

        downloader.start(default_target=tmp_path / "dl")
        assert listener.wait_for(TransferAllDone)

        started = listener.of_type(TransferStarted)[0]
        assert started.item.target == tmp_path / "dl" / "data.bin"
        assert (tmp_path / "dl" / "data.bin").read_bytes() == b"abc"
        assert downloader.target_folder == tmp_path / "dl"

    def test_no_default_folder_uses_working_directory(
        self,
        httpx_mock,  # type: ignore[no-untyped-def]
        client: StorageClient,
        listener,
        remote_file: RemoteFile,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Without a folder the file name should be used as is."""
        monkeypatch.chdir(tmp_path)
        httpx_mock.add_response(url=download_url(remote_file), content=b"abc")
        downloader = Downloader(client)
        downloader.add_listener(listener)
        downloader.add_file(remote_file)

        downloader.start()
        assert listener.wait_for(TransferAllDone)

        assert listener.of_type(TransferStarted)[0].item.target == Path("data.bin")
        assert (tmp_path / "data.bin").read_bytes() == b"abc"

    def test_explicit_target_kept(
        self, httpx_mock, client: StorageClient, listener, remote_file: RemoteFile, tmp_path: Path  # type: ignore[no-untyped-def]
    ) -> None:
        """An item's own target should win over the default folder."""
        httpx_mock.add_response(url=download_url(remote_file), content=b"abc")
        downloader = Downloader(client, target_folder=tmp_path / "default")
        downloader.add_listener(listener)
        downloader.add_file(remote_file, target=tmp_path / "mine.bin")

        downloader.start()
        assert listener.wait_for(TransferAllDone)

        assert (tmp_path / "mine.bin").read_bytes() == b"abc"
        assert not (tmp_path / "default").exists()

    def test_failure_stops_the_queue(
        self, httpx_mock, client: StorageClient, listener, tmp_path: Path  # type: ignore[no-untyped-def]
    ) -> None:
        """A failed item should be set aside and the queue left idle."""
        files = remote_files(3)
        httpx_mock.add_response(url=download_url(files[0]), content=b"ok")
        httpx_mock.add_response(url=download_url(files[1]), status_code=500)
        httpx_mock.add_response(url=download_url(files[2]), content=b"later")
        downloader = Downloader(client, target_folder=tmp_path)
        downloader.add_listener(listener)
        for file in files:
            downloader.add_file(file)

        downloader.start()
        assert listener.wait_for(TransferFailed)
        assert downloader.join(timeout=10)

        assert without_progress(listener.events) == [
            TransferStarted,
            TransferFileDone,
            TransferStarted,
            TransferFailed,
        ]
        assert listener.of_type(TransferFailed)[0].item.file.id == "f1"
        assert [i.file.id for i in downloader.failed] == ["f1"]
        assert [i.file.id for i in downloader.items] == ["f2"]
        assert downloader.is_running is False

        # The caller decides to go on
        assert downloader.start() is True
        assert listener.wait_for(TransferAllDone)
        assert (tmp_path / "file2.bin").read_bytes() == b"later"

    def test_stop_keeps_pending_items(
        self, httpx_mock, client: StorageClient, listener_factory, tmp_path: Path  # type: ignore[no-untyped-def]
    ) -> None:
        """stop() should interrupt the active item and keep it at the head."""
        files = remote_files(2)
        httpx_mock.add_response(url=download_url(files[0]), content=os.urandom(BIG))
        downloader = Downloader(client, target_folder=tmp_path)

        def stop_on_progress(event: Any, sender: object) -> None:
            if isinstance(event, TransferProgress):
                downloader.stop()

        listener = listener_factory(on_event=stop_on_progress)
        downloader.add_listener(listener)
        for file in files:
            downloader.add_file(file)

        downloader.start()
        assert listener.wait_for(TransferStopped)
        assert downloader.join(timeout=10)

        assert without_progress(listener.events) == [TransferStarted, TransferStopped]
        assert len(listener.of_type(TransferProgress)) == 1
        assert listener.of_type(TransferStopped)[0].item.file.id == "f0"
        assert [i.file.id for i in downloader.items] == ["f0", "f1"]
        assert downloader.failed == []
        assert downloader.is_running is False
        assert downloader.active_item is None

    def test_skip_moves_on(
        self, httpx_mock, client: StorageClient, listener_factory, tmp_path: Path  # type: ignore[no-untyped-def]
    ) -> None:
        """skip() should drop the active item and start the next one."""
        files = remote_files(2)
        httpx_mock.add_response(url=download_url(files[0]), content=os.urandom(BIG))
        httpx_mock.add_response(url=download_url(files[1]), content=b"next")
        downloader = Downloader(client, target_folder=tmp_path)
        skipped: list[bool] = []

        def skip_first(event: Any, sender: object) -> None:
            if isinstance(event, TransferProgress) and event.item.file.id == "f0" and not skipped:
                skipped.append(downloader.skip())

        listener = listener_factory(on_event=skip_first)
        downloader.add_listener(listener)
        for file in files:
            downloader.add_file(file)

        downloader.start()
        assert listener.wait_for(TransferAllDone)

        assert skipped == [True]
        assert without_progress(listener.events) == [
            TransferStarted,
            TransferStopped,
            TransferStarted,
            TransferFileDone,
            TransferAllDone,
        ]
        assert (tmp_path / "file1.bin").read_bytes() == b"next"
        assert downloader.failed == []

    def test_skip_last_item_finishes_queue(
        self, httpx_mock, client: StorageClient, listener_factory, tmp_path: Path  # type: ignore[no-untyped-def]
    ) -> None:
        """Skipping the last item should drain the queue and fire AllDone."""
        file = remote_files(1)[0]
        httpx_mock.add_response(url=download_url(file), content=os.urandom(BIG))
        downloader = Downloader(client, target_folder=tmp_path)

        def skip_on_progress(event: Any, sender: object) -> None:
            if isinstance(event, TransferProgress):
                downloader.skip()

        listener = listener_factory(on_event=skip_on_progress)
        downloader.add_listener(listener)
        downloader.add_file(file)

        downloader.start()
        assert listener.wait_for(TransferAllDone)
        assert downloader.join(timeout=10)

        assert without_progress(listener.events) == [
            TransferStarted,
            TransferStopped,
            TransferAllDone,
        ]
        assert downloader.items == []
        assert downloader.failed == []

    def test_start_from_started_listener(
        self, httpx_mock, client: StorageClient, listener_factory, tmp_path: Path  # type: ignore[no-untyped-def]
    ) -> None:
        """start() called while TransferStarted is delivered should not start the item twice."""
        files = remote_files(2)
        for file in files:
            httpx_mock.add_response(url=download_url(file), content=file.id.encode() * 100)
        downloader = Downloader(client, target_folder=tmp_path)
        results: list[bool] = []

        def start_again(event: Any, sender: object) -> None:
            if isinstance(event, TransferStarted):
                results.append(downloader.start())

        listener = listener_factory(on_event=start_again)
        downloader.add_listener(listener)
        for file in files:
            downloader.add_file(file)

        assert downloader.start() is True
        assert listener.wait_for(TransferAllDone)
        assert downloader.join(timeout=10)

        assert results == [False, False]
        assert [e.item.file.id for e in listener.of_type(TransferStarted)] == ["f0", "f1"]
        assert len(httpx_mock.get_requests()) == 2
        assert (tmp_path / "file0.bin").read_bytes() == b"f0" * 100

    def test_stop_from_started_listener(
        self, httpx_mock, client: StorageClient, listener_factory, tmp_path: Path  # type: ignore[no-untyped-def]
    ) -> None:
        """stop() called while TransferStarted is delivered should stop the item before any request."""
        files = remote_files(2)
        downloader = Downloader(client, target_folder=tmp_path)
        results: list[bool] = []

        def stop_on_start(event: Any, sender: object) -> None:
            if isinstance(event, TransferStarted):
                results.append(downloader.stop())

        listener = listener_factory(on_event=stop_on_start)
        downloader.add_listener(listener)
        for file in files:
            downloader.add_file(file)

        assert downloader.start() is True
        assert listener.wait_for(TransferStopped)
        assert downloader.join(timeout=10)

        assert results == [True]
        assert listener.types == [TransferStarted, TransferStopped]
        assert listener.of_type(TransferStopped)[0].item.file.id == "f0"
        assert [i.file.id for i in downloader.items] == ["f0", "f1"]
        assert httpx_mock.get_requests() == []
        assert not (tmp_path / "file0.bin").exists()
        assert downloader.is_running is False

    def test_skip_from_started_listener(
        self, httpx_mock, client: StorageClient, listener_factory, tmp_path: Path  # type: ignore[no-untyped-def]
    ) -> None:
        """skip() called while TransferStarted is delivered should drop the item unread."""
        files = remote_files(2)
        httpx_mock.add_response(url=download_url(files[1]), content=b"next")
        downloader = Downloader(client, target_folder=tmp_path)
        results: list[bool] = []

        def skip_first(event: Any, sender: object) -> None:
            if isinstance(event, TransferStarted) and event.item.file.id == "f0":
                results.append(downloader.skip())

        listener = listener_factory(on_event=skip_first)
        downloader.add_listener(listener)
        for file in files:
            downloader.add_file(file)

        downloader.start()
        assert listener.wait_for(TransferAllDone)

        assert results == [True]
        assert without_progress(listener.events) == [
            TransferStarted,
            TransferStopped,
            TransferStarted,
            TransferFileDone,
            TransferAllDone,
        ]
        assert len(httpx_mock.get_requests()) == 1
        assert not (tmp_path / "file0.bin").exists()
        assert (tmp_path / "file1.bin").read_bytes() == b"next"

    def test_start_while_running(
        self, httpx_mock, client: StorageClient, listener_factory, tmp_path: Path  # type: ignore[no-untyped-def]
    ) -> None:
        """start() should do nothing while a transfer is active."""
        file = remote_files(1)[0]
        httpx_mock.add_response(url=download_url(file), content=os.urandom(8 * 1024))
        downloader = Downloader(client, target_folder=tmp_path)
        results: list[bool] = []

        def start_again(event: Any, sender: object) -> None:
            if isinstance(event, TransferProgress) and not results:
                results.append(downloader.start())

        listener = listener_factory(on_event=start_again)
        downloader.add_listener(listener)
        downloader.add_file(file)

        downloader.start()
        assert listener.wait_for(TransferAllDone)

        assert results == [False]
        assert len(listener.of_type(TransferStarted)) == 1

    def test_idle_operations(self, client: StorageClient) -> None:
        """start/stop/skip should report that nothing happened on an idle queue."""
        downloader = Downloader(client)
        assert downloader.start() is False
        assert downloader.stop() is False
        assert downloader.skip() is False
        assert downloader.join(timeout=1) is True

    def test_rejects_upload_items(self, client: StorageClient, tmp_path: Path) -> None:
        """A Downloader should only accept DownloadItem."""
        with pytest.raises(TypeError):
            Downloader(client).add(UploadItem(source=tmp_path / "a.txt"))  # type: ignore[arg-type]

    def test_unbuildable_worker_fails_item(
        self, client: StorageClient, listener, remote_file: RemoteFile  # type: ignore[no-untyped-def]
    ) -> None:
        """An item whose worker cannot be built should fail without being started."""

        class BrokenDownloader(Downloader):
            def _create_worker(self, item: DownloadItem) -> TransferWorker:
                raise ValueError("no way")

        downloader = BrokenDownloader(client, target_folder="out")
        downloader.add_listener(listener)
        downloader.add_file(remote_file)

        assert downloader.start() is True

        assert listener.types == [TransferFailed]
        assert str(listener.events[0].cause) == "no way"
        assert [i.file.id for i in downloader.failed] == ["f1"]
        assert downloader.items == []
        assert downloader.join(timeout=1) is True

    def test_ignores_foreign_events(
        self, client: StorageClient, listener, remote_file: RemoteFile  # type: ignore[no-untyped-def]
    ) -> None:
        """Events from a worker the queue does not run should be ignored."""
        downloader = Downloader(client)
        downloader.add_listener(listener)
        downloader.add_file(remote_file)

        downloader.handle_event(TransferFileDone(downloader.items[0]), object())

        assert listener.events == []
        assert len(downloader.items) == 1


class TestUploader:
    """Tests for Uploader queue processing."""

    @pytest.fixture
    def sources(self, tmp_path: Path) -> list[Path]:
        paths = []
        for name in ("a.txt", "b.txt"):
            path = tmp_path / name
            path.write_bytes(name.encode() * 100)
            paths.append(path)
        return paths

    def test_default_target_and_metadata(
        self, httpx_mock, client: StorageClient, listener, sources: list[Path]  # type: ignore[no-untyped-def]
    ) -> None:
        """Uploads should go to the default folder and report the file record."""
        httpx_mock.add_response(url=upload_url("a.txt", "/docs"), json={"id": "u1", "name": "a.txt"})
        httpx_mock.add_response(url=upload_url("b.txt", "/docs"), json={"id": "u2", "name": "b.txt"})
        uploader = Uploader(client)
        uploader.add_listener(listener)
        for source in sources:
            uploader.add_file(source)

        uploader.start("/docs")
        assert listener.wait_for(TransferAllDone)

        assert [e.item.target for e in listener.of_type(TransferStarted)] == ["/docs", "/docs"]
        done = listener.of_type(TransferFileDone)
        assert [e.metadata.id for e in done] == ["u1", "u2"]
        assert isinstance(done[0].item, UploadItem)

    def test_existing_file_ignores_default_target(
        self, httpx_mock, client: StorageClient, listener, remote_file: RemoteFile, sources: list[Path]  # type: ignore[no-untyped-def]
    ) -> None:
        """A new version of an existing file should not get a target folder."""
        httpx_mock.add_response(
            url="http://test/api/files/f1/upload?public=0&version=1", json={"id": "f1"}
        )
        uploader = Uploader(client, target_folder="/docs")
        uploader.add_listener(listener)
        uploader.add_file(sources[0], existing=remote_file)

        uploader.start()
        assert listener.wait_for(TransferAllDone)

        assert listener.of_type(TransferStarted)[0].item.target is None
        assert listener.of_type(TransferFileDone)[0].metadata.id == "f1"

    def test_undecodable_response_still_advances(
        self,
        httpx_mock,  # type: ignore[no-untyped-def]
        client: StorageClient,
        listener,
        sources: list[Path],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """A garbled upload response should be logged and the queue go on."""
        httpx_mock.add_response(url=upload_url("a.txt", "/"), content=b"<html>oops</html>")
        httpx_mock.add_response(url=upload_url("b.txt", "/"), json={"id": "u2", "name": "b.txt"})
        uploader = Uploader(client, target_folder="/")
        uploader.add_listener(listener)
        for source in sources:
            uploader.add_file(source)

        with caplog.at_level(logging.WARNING, logger="cloudferry"):
            uploader.start()
            assert listener.wait_for(TransferAllDone)

        first, second = listener.of_type(TransferFileDone)
        assert first.metadata is None
        assert first.payload == b"<html>oops</html>"
        assert second.metadata.id == "u2"
        assert "a.txt" in caplog.text

    def test_encryption_defaults(
        self, httpx_mock, client: StorageClient, listener, secret: bytes, sources: list[Path]  # type: ignore[no-untyped-def]
    ) -> None:
        """add_file should use the queue's algorithm and secret."""
        httpx_mock.add_response(url=upload_url("a.txt", "/"), json={"id": "u1", "name": "a.txt"})
        uploader = Uploader(client, EncryptionConfig(ALGORITHM, secret), target_folder="/")
        uploader.add_listener(listener)

        item = uploader.add_file(sources[0])
        uploader.start()
        assert listener.wait_for(TransferAllDone)

        assert item.encryption == ALGORITHM
        request = httpx_mock.get_request()
        assert request.headers["X-Encryption"] == ALGORITHM

    def test_missing_secret_fails_item(
        self, client: StorageClient, listener, sources: list[Path]  # type: ignore[no-untyped-def]
    ) -> None:
        """An encrypted upload without a secret should fail, not stall."""
        uploader = Uploader(client, EncryptionConfig(ALGORITHM), target_folder="/")
        uploader.add_listener(listener)
        uploader.add_file(sources[0])
        uploader.add_file(sources[1])

        uploader.start()
        assert listener.wait_for(TransferFailed)
        assert uploader.join(timeout=10)

        assert len(uploader.failed) == 1
        assert len(uploader.items) == 1

    def test_rejects_download_items(self, client: StorageClient, remote_file: RemoteFile) -> None:
        """An Uploader should only accept UploadItem."""
        with pytest.raises(TypeError):
            Uploader(client).add(DownloadItem(file=remote_file))  # type: ignore[arg-type]


class TestConcurrentCallers:
    """Queue control from a caller thread while worker events arrive."""

    def test_stop_and_start_from_another_thread(
        self, client: StorageClient, listener  # type: ignore[no-untyped-def]
    ) -> None:
        """Repeated stop()/start()/add() should never run two transfers at once."""
        tracker = OverlapTracker()
        downloader = SlowDownloader(client, tracker)
        downloader.add_listener(listener)
        for file in remote_files(8):
            downloader.add_file(file)
        errors: list[Exception] = []

        def toggle() -> None:
            try:
                for i in range(30):
                    downloader.stop()
                    downloader.start()
                    if i % 10 == 0:
                        downloader.add_file(RemoteFile(id=f"x{i}", name=f"extra{i}.bin"))
                    time.sleep(0.003)
            except Exception as e:
                errors.append(e)

        caller = threading.Thread(target=toggle)
        downloader.start()
        caller.start()
        caller.join(timeout=30)
        assert not caller.is_alive()
        assert errors == []

        downloader.start()
        assert downloader.join(timeout=30)

        assert downloader.items == []
        assert downloader.failed == []
        assert tracker.peak == 1
        assert tracker.active == 0

        active: str | None = None
        for event in listener.events:
            if isinstance(event, TransferStarted):
                assert active is None, f"{event.item} started while {active} was active"
                active = event.item.file.id
            elif isinstance(event, TERMINAL_EVENTS):
                assert event.item.file.id == active
                active = None
        assert active is None

        done = sorted(e.item.file.id for e in listener.of_type(TransferFileDone))
        assert done == sorted([f"f{i}" for i in range(8)] + ["x0", "x10", "x20"])
