from pathlib import Path

from callclips.cleanup import cleanup_recordings, normalize_key, prune_empty_dirs
from callclips.cli import main
from callclips.state import CompletedItem, StateStore

NOW = 1_714_600_000.0  # 2024-05-01T21:46:40Z
OLD = "2024-04-01T10:00:00+00:00"
RECENT = "2024-04-30T10:00:00+00:00"


def _record(store: StateStore, key: str, processed_at: str) -> None:
    store.mark_completed(
        CompletedItem(
            key=key,
            processed_at=processed_at,
            size=None,
            mtime=None,
            tags=(),
            participants=(),
            date="",
            summary_requested=False,
        )
    )


def _setup(tmp_path: Path):
    root = tmp_path / "recordings"
    (root / "2024").mkdir(parents=True)
    (root / "2024" / "old.mp4").write_bytes(b"x" * 2048)
    (root / "recent.mp4").write_bytes(b"y")
    store = StateStore(tmp_path / "state.json")
    _record(store, "2024/old.mp4", OLD)
    _record(store, "recent.mp4", RECENT)
    _record(store, "gone.mp4", OLD)
    _record(store, "../escape.mp4", OLD)
    _record(store, "broken.mp4", "not a date")
    store.save()
    return root, store


def test_dry_run_deletes_nothing(tmp_path: Path):
    root, store = _setup(tmp_path)
    lines = []
    summary = cleanup_recordings(store, root, days=14, now=NOW, echo=lines.append)

    assert (root / "2024" / "old.mp4").exists()
    assert summary.total_records == 5
    assert summary.eligible_records == 2
    assert summary.existing_files == 1
    assert summary.missing_files == 1
    assert summary.unsafe_keys_skipped == 1
    assert summary.bytes_eligible == 2048
    assert lines == [f"[DRY] {root / '2024' / 'old.mp4'}"]


def test_apply_deletes_old_files_and_prunes(tmp_path: Path):
    root, store = _setup(tmp_path)
    summary = cleanup_recordings(store, root, days=14, apply=True, prune=True, now=NOW, echo=lambda _l: None)

    assert not (root / "2024" / "old.mp4").exists()
    assert not (root / "2024").exists()
    assert (root / "recent.mp4").exists()
    assert summary.deleted_files == 1
    assert summary.bytes_deleted == 2048
    assert summary.pruned_dirs == 1
    assert "- pruned empty dirs: 1" in summary.lines(applied=True, pruned=True)


def test_normalize_key():
    assert normalize_key("/a/b.mp4") == "a/b.mp4"
    assert normalize_key("a\\b.mp4") == "a/b.mp4"
    assert normalize_key("a/../b.mp4") is None
    assert normalize_key("a//b.mp4") is None
    assert normalize_key(" ") is None


def test_prune_keeps_non_empty_dirs(tmp_path: Path):
    (tmp_path / "a" / "b").mkdir(parents=True)
    (tmp_path / "c").mkdir()
    (tmp_path / "c" / "keep.mp4").write_bytes(b"1")
    assert prune_empty_dirs(tmp_path) == 2
    assert (tmp_path / "c").exists()


def test_cli_cleanup_dry_run(tmp_path: Path, capsys):
    root, _store = _setup(tmp_path)
    main(["cleanup", "--state", str(tmp_path / "state.json"), "--recordings", str(root), "--days", "0"])
    out = capsys.readouterr().out
    assert "Mode: DRY-RUN" in out
    assert "- completed records in state: 5" in out
    assert (root / "2024" / "old.mp4").exists()
