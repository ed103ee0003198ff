"""Tests for restoring recovery points."""

import os
import stat
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from fakes import CountingVolume, FakeCatalog

from backupagent.client.backup.planner import ItemInfo
from backupagent.client.backup.restore import RestoreCoordinator, destination_path
from backupagent.client.backup.runner import BackupRunner
from backupagent.client.backup.types import RestoreError, RestoreSession, TransferProgress
from backupagent.client.volume import ObjectNotFoundError
from backupagent.core.chunking import ChunkParams
from backupagent.core.config import TransferConfig
from backupagent.core.hashing import compute_file_hash
from backupagent.core.types import ItemType

SESSION = RestoreSession(session_key="sk-1", created_at="2024-01-01 00:00:00")


def tree_contents(root: Path) -> dict[str, bytes]:
    """Map relative POSIX paths to file contents."""
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


def back_up(
    source: Path,
    catalog: FakeCatalog,
    volume: CountingVolume,
    config: TransferConfig,
    params: ChunkParams,
    rp: str = "rp-1",
) -> None:
    report = BackupRunner(catalog, volume, config, chunk_params=params).backup(source, rp)
    assert not report.has_failures


class TestDestinationPath:
    """Tests for mapping catalog names under the destination."""

    def test_relative_name(self, tmp_path: Path) -> None:
        assert destination_path(tmp_path, "docs/a.txt") == tmp_path / "docs" / "a.txt"

    def test_leading_slash_stripped(self, tmp_path: Path) -> None:
        assert destination_path(tmp_path, "/etc/hosts") == tmp_path / "etc" / "hosts"

    def test_windows_name(self, tmp_path: Path) -> None:
        assert destination_path(tmp_path, "C:\\Users\\a.txt") == tmp_path / "Users" / "a.txt"

    def test_parent_reference_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            destination_path(tmp_path, "docs/../../escape")

    def test_empty_name_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            destination_path(tmp_path, "/")


class TestRestore:
    """Tests for RestoreCoordinator.restore."""

    def test_round_trip(
        self,
        tmp_path: Path,
        source_tree: Path,
        catalog: FakeCatalog,
        volume: CountingVolume,
        transfer_config: TransferConfig,
        small_params: ChunkParams,
    ) -> None:
        """A restored tree is byte-identical to the source."""
        back_up(source_tree, catalog, volume, transfer_config, small_params)
        dest = tmp_path / "restored"

        report = RestoreCoordinator(catalog, transfer_config).restore("rp-1", dest, volume, SESSION)

        assert tree_contents(dest) == tree_contents(source_tree)
        assert sorted(report.files) == sorted(tree_contents(source_tree))
        assert report.empty_files == ["empty.txt"]
        assert report.bytes_written == sum(len(v) for v in tree_contents(source_tree).values())

    def test_out_of_order_completion(
        self,
        tmp_path: Path,
        catalog: FakeCatalog,
        transfer_config: TransferConfig,
        small_params: ChunkParams,
    ) -> None:
        """Chunks finishing in any order land at their own offsets."""
        volume = CountingVolume(tmp_path / "slow", delay=0.005)
        catalog.volume = volume
        source = tmp_path / "source"
        source.mkdir()
        data = os.urandom(120_000)
        (source / "big.bin").write_bytes(data)
        back_up(source, catalog, volume, transfer_config, small_params)
        item = catalog.item_for("rp-1", "big.bin")
        item.chunks.reverse()

        RestoreCoordinator(catalog, transfer_config).restore("rp-1", tmp_path / "out", volume, SESSION)

        restored = tmp_path / "out" / "big.bin"
        assert compute_file_hash(restored) == compute_file_hash(source / "big.bin")
        assert restored.read_bytes() == data

    def test_restore_of_unchanged_file_uses_parent(
        self,
        tmp_path: Path,
        source_tree: Path,
        catalog: FakeCatalog,
        volume: CountingVolume,
        transfer_config: TransferConfig,
        small_params: ChunkParams,
    ) -> None:
        """A second recovery point restores content it only references."""
        back_up(source_tree, catalog, volume, transfer_config, small_params, rp="rp-1")
        back_up(source_tree, catalog, volume, transfer_config, small_params, rp="rp-2")

        RestoreCoordinator(catalog, transfer_config).restore("rp-2", tmp_path / "out", volume, SESSION)

        assert tree_contents(tmp_path / "out") == tree_contents(source_tree)

    def test_existing_file_truncated(
        self,
        tmp_path: Path,
        source_tree: Path,
        catalog: FakeCatalog,
        volume: CountingVolume,
        transfer_config: TransferConfig,
        small_params: ChunkParams,
    ) -> None:
        back_up(source_tree, catalog, volume, transfer_config, small_params)
        dest = tmp_path / "out"
        (dest / "docs").mkdir(parents=True)
        (dest / "docs" / "readme.txt").write_bytes(b"x" * 10_000)

        RestoreCoordinator(catalog, transfer_config).restore("rp-1", dest, volume, SESSION)

        assert (dest / "docs" / "readme.txt").read_bytes() == b"hello backup\n"

    def test_transient_download_failure_retried(
        self,
        tmp_path: Path,
        source_tree: Path,
        catalog: FakeCatalog,
        volume: CountingVolume,
        transfer_config: TransferConfig,
        small_params: ChunkParams,
    ) -> None:
        back_up(source_tree, catalog, volume, transfer_config, small_params)
        volume.fail_gets = 1

        RestoreCoordinator(catalog, transfer_config).restore("rp-1", tmp_path / "out", volume, SESSION)

        assert tree_contents(tmp_path / "out") == tree_contents(source_tree)

    def test_missing_chunk_fails_restore(
        self,
        tmp_path: Path,
        source_tree: Path,
        catalog: FakeCatalog,
        volume: CountingVolume,
        transfer_config: TransferConfig,
        small_params: ChunkParams,
    ) -> None:
        """A chunk that cannot be fetched aborts the restore with the file name."""
        back_up(source_tree, catalog, volume, transfer_config, small_params)
        for chunk in (tmp_path / "volume" / "chunks").iterdir():
            chunk.unlink()
        sleep = MagicMock()

        with pytest.raises(RestoreError) as exc_info:
            RestoreCoordinator(catalog, transfer_config, sleep=sleep).restore(
                "rp-1", tmp_path / "out", volume, SESSION
            )

        assert exc_info.value.path == "big.bin"
        assert isinstance(exc_info.value.cause, ObjectNotFoundError)
        # A 404 is permanent: no backoff before giving up
        sleep.assert_not_called()

    def test_unsafe_name_rejected(
        self,
        tmp_path: Path,
        catalog: FakeCatalog,
        volume: CountingVolume,
        transfer_config: TransferConfig,
    ) -> None:
        info = ItemInfo(
            item_type=ItemType.FILE,
            attributes={"item_name": "../outside.txt", "size": 0, "modify_time": "", "change_time": ""},
        )
        catalog.save_file_info("rp-1", info)

        with pytest.raises(RestoreError):
            RestoreCoordinator(catalog, transfer_config).restore(
                "rp-1", tmp_path / "out", volume, SESSION
            )

        assert not (tmp_path / "outside.txt").exists()

    def test_download_concurrency_bounded(
        self,
        tmp_path: Path,
        catalog: FakeCatalog,
        transfer_config: TransferConfig,
        small_params: ChunkParams,
    ) -> None:
        """Downloads overlap up to the limit and never beyond it."""
        volume = CountingVolume(tmp_path / "slow", delay=0.005)
        catalog.volume = volume
        source = tmp_path / "source"
        source.mkdir()
        (source / "big.bin").write_bytes(os.urandom(120_000))
        back_up(source, catalog, volume, transfer_config, small_params)
        volume.peak = 0
        config = TransferConfig(download_concurrency=2)

        coordinator = RestoreCoordinator(catalog, config)
        coordinator.restore("rp-1", tmp_path / "out", volume, SESSION)

        assert len(catalog.item_for("rp-1", "big.bin").chunks) >= 20
        assert volume.peak == 2
        assert coordinator.limiter.peak == 2

    @pytest.mark.skipif(sys.platform == "win32", reason="symlinks")
    def test_symlink_entry_skipped(
        self,
        tmp_path: Path,
        catalog: FakeCatalog,
        volume: CountingVolume,
        transfer_config: TransferConfig,
        small_params: ChunkParams,
    ) -> None:
        """Symlink entries are reported as skipped, not written as empty files."""
        source = tmp_path / "source"
        source.mkdir()
        (source / "target.txt").write_bytes(b"target")
        (source / "link").symlink_to(source / "target.txt")
        back_up(source, catalog, volume, transfer_config, small_params)
        dest = tmp_path / "out"

        report = RestoreCoordinator(catalog, transfer_config).restore("rp-1", dest, volume, SESSION)

        assert report.files == ["target.txt"]
        assert list(report.skipped) == ["link"]
        assert not (dest / "link").exists()
        assert (dest / "target.txt").read_bytes() == b"target"

    def test_incomplete_item_skipped(
        self,
        tmp_path: Path,
        catalog: FakeCatalog,
        volume: CountingVolume,
        transfer_config: TransferConfig,
        small_params: ChunkParams,
    ) -> None:
        """An item whose upload never completed is not restored with holes."""
        source = tmp_path / "source"
        source.mkdir()
        (source / "a.bin").write_bytes(os.urandom(10_000))
        back_up(source, catalog, volume, transfer_config, small_params)
        catalog.item_for("rp-1", "a.bin").info.complete = False
        dest = tmp_path / "out"

        report = RestoreCoordinator(catalog, transfer_config).restore("rp-1", dest, volume, SESSION)

        assert report.files == []
        assert report.skipped == {"a.bin": "content upload never completed"}
        assert not (dest / "a.bin").exists()

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_recorded_mode_applied(
        self,
        tmp_path: Path,
        source_tree: Path,
        catalog: FakeCatalog,
        volume: CountingVolume,
        transfer_config: TransferConfig,
        small_params: ChunkParams,
    ) -> None:
        (source_tree / "big.bin").chmod(0o600)
        (source_tree / "docs" / "readme.txt").chmod(0o640)
        back_up(source_tree, catalog, volume, transfer_config, small_params)
        dest = tmp_path / "out"

        RestoreCoordinator(catalog, transfer_config).restore("rp-1", dest, volume, SESSION)

        assert stat.S_IMODE((dest / "big.bin").stat().st_mode) == 0o600
        assert stat.S_IMODE((dest / "docs" / "readme.txt").stat().st_mode) == 0o640

    def test_progress_reported(
        self,
        tmp_path: Path,
        source_tree: Path,
        catalog: FakeCatalog,
        volume: CountingVolume,
        transfer_config: TransferConfig,
        small_params: ChunkParams,
    ) -> None:
        """Each file reports increasing byte counts up to its size."""
        back_up(source_tree, catalog, volume, transfer_config, small_params)
        events: list[TransferProgress] = []
        coordinator = RestoreCoordinator(catalog, transfer_config, progress_callback=events.append)

        coordinator.restore("rp-1", tmp_path / "out", volume, SESSION)

        big = [e for e in events if e.path == "big.bin"]
        assert [e.bytes_done for e in big] == sorted(e.bytes_done for e in big)
        assert big[-1].bytes_done == big[-1].total == 30_000
        assert big[-1].percent == 100.0
        assert all(e.operation == "restore" for e in events)
        assert not [e for e in events if e.path == "empty.txt"]
