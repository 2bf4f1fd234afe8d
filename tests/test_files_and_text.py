import os
from datetime import datetime
from pathlib import Path

from callclips.files import (
    clip_temp_path,
    detect_recording_datetime,
    find_recordings,
    is_stable,
    relative_key,
    resolve_key,
    write_transcript_file,
)
from callclips.text import (
    build_final_caption,
    format_duration,
    format_file_size,
    split_text,
    truncate,
)


class TestFiles:
    def test_find_recordings_is_recursive_and_sorted(self, tmp_path: Path):
        (tmp_path / "b").mkdir()
        (tmp_path / "b" / "z.MP4").write_bytes(b"1")
        (tmp_path / "a.mp4").write_bytes(b"1")
        (tmp_path / "notes.txt").write_text("x", encoding="utf-8")
        found = [relative_key(tmp_path, p) for p in find_recordings(tmp_path)]
        assert found == ["a.mp4", "b/z.MP4"]

    def test_missing_root_has_no_recordings(self, tmp_path: Path):
        assert find_recordings(tmp_path / "absent") == []

    def test_resolve_key_rejects_escapes(self, tmp_path: Path):
        assert resolve_key(tmp_path, "2024/a.mp4") == tmp_path / "2024" / "a.mp4"
        assert resolve_key(tmp_path, "../a.mp4") is None
        assert resolve_key(tmp_path, "/etc/passwd") is None
        assert resolve_key(tmp_path, "") is None

    def test_stability_requires_age_and_no_change(self, tmp_path: Path):
        path = tmp_path / "a.mp4"
        path.write_bytes(b"1")
        os.utime(path, (1000, 1000))

        assert is_stable(path, min_age_seconds=60, wait_seconds=0, clock=lambda: 1030) is False
        assert is_stable(path, min_age_seconds=60, wait_seconds=0, clock=lambda: 2000) is True

        def grow(_seconds):
            path.write_bytes(b"12")
            os.utime(path, (1000, 1000))

        assert is_stable(path, min_age_seconds=60, wait_seconds=5, sleep=grow, clock=lambda: 2000) is False
        assert is_stable(tmp_path / "missing.mp4", min_age_seconds=0, wait_seconds=0) is False

    def test_recording_datetime_from_name(self, tmp_path: Path):
        path = tmp_path / "room_2024-05-01-10-20-30.mp4"
        assert detect_recording_datetime(path) == datetime(2024, 5, 1, 10, 20, 30)

    def test_recording_datetime_falls_back_to_mtime(self, tmp_path: Path):
        path = tmp_path / "call.mp4"
        path.write_bytes(b"1")
        os.utime(path, (1_700_000_000, 1_700_000_000))
        assert detect_recording_datetime(path) == datetime.fromtimestamp(1_700_000_000)

    def test_temp_names_are_safe_and_stable(self, tmp_path: Path):
        first = clip_temp_path(tmp_path, "2024/созвон утро.mp4")
        assert first == clip_temp_path(tmp_path, "2024/созвон утро.mp4")
        assert first != clip_temp_path(tmp_path, "2025/созвон утро.mp4")
        assert first.suffix == ".mp4"
        assert " " not in first.name

    def test_transcript_file_content(self, tmp_path: Path):
        path = write_transcript_file(tmp_path / "tmp", "a/b.mp4", "текст")
        assert path.read_text(encoding="utf-8") == "Транскрипт для: a/b.mp4\n\nтекст\n"


class TestText:
    def test_final_caption(self):
        assert build_final_caption(["мок", "резюме"], [], "2024-05-01") == (
            "теги: #мок, #резюме\nучастники: —\nдата: 2024-05-01"
        )

    def test_durations_and_sizes(self):
        assert format_duration(59.6) == "1:00"
        assert format_duration(3725) == "1:02:05"
        assert format_file_size(11) == "11 B"
        assert format_file_size(600 * 1024 * 1024) == "600.0 MB"

    def test_truncate(self):
        assert truncate("  ") == "—"
        assert truncate("short") == "short"
        long = truncate("x" * 5000, 3800)
        assert len(long) < 3800
        assert long.endswith("[обрезано]")

    def test_split_text_prefers_paragraphs(self):
        text = "\n\n".join(["a" * 600, "b" * 600, "c" * 600])
        parts = split_text(text, 1300)
        assert parts == ["a" * 600 + "\n\n" + "b" * 600, "c" * 600]

    def test_split_text_falls_back_to_sentences(self):
        sentence = "x" * 700 + "."
        parts = split_text(" ".join([sentence] * 3), 1000)
        assert parts == [sentence, sentence, sentence]
