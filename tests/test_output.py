"""Tests for the output module (StdoutSink and FileSink)."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from shopfloor_board.config import FileOutputConfig, FlushConfig, RotationConfig
from shopfloor_board.output import FileSink, StdoutSink


class TestStdoutSink:
    """Tests for :class:`StdoutSink`."""

    def test_stdout_sink_writes_bytes(self) -> None:
        """StdoutSink writes raw bytes to stdout buffer."""
        sink = StdoutSink()
        data = b'{"event_type":"machine_change"}\n'

        mock_stdout = MagicMock()
        with patch("shopfloor_board.output.sys") as mock_sys:
            mock_sys.stdout = mock_stdout
            sink.write(data)
            mock_stdout.buffer.write.assert_called_once_with(data)
            mock_stdout.buffer.flush.assert_called_once()

    def test_stdout_sink_reraises_broken_pipe(self) -> None:
        """A reader that went away surfaces as BrokenPipeError."""
        sink = StdoutSink()
        mock_stdout = MagicMock()
        mock_stdout.buffer.write.side_effect = BrokenPipeError
        with patch("shopfloor_board.output.sys") as mock_sys:
            mock_sys.stdout = mock_stdout
            with pytest.raises(BrokenPipeError):
                sink.write(b"x\n")


class TestFileSink:
    """Tests for :class:`FileSink`."""

    def test_file_sink_creates_active_file(self, tmp_path: Path) -> None:
        """FileSink creates a ``.ndjson.active`` file on init."""
        sink = FileSink(output_dir=str(tmp_path), prefix="test", client_id="board-07")
        try:
            active_files = list(tmp_path.glob("*.ndjson.active"))
            assert len(active_files) == 1
            assert active_files[0].name.startswith("test-board-07-")
        finally:
            sink.close()

    def test_file_sink_rotation(self, tmp_path: Path) -> None:
        """After exceeding size, old file is renamed to .ndjson and a new .active is created."""
        sink = FileSink(
            output_dir=str(tmp_path),
            prefix="test",
            client_id="board-07",
            rotation_seconds=3600,
            rotation_bytes=100,
        )
        try:
            sink.write(b"x" * 110)
            sink.write(b"y" * 10)

            assert len(list(tmp_path.glob("*.ndjson"))) == 1
            assert len(list(tmp_path.glob("*.ndjson.active"))) == 1
        finally:
            sink.close()

    def test_file_sink_close_renames(self, tmp_path: Path) -> None:
        """close() renames ``.active`` to ``.ndjson`` with the content intact."""
        sink = FileSink(output_dir=str(tmp_path), prefix="test", client_id="board-07")
        sink.write(b'{"machine_id": "S1"}\n')
        sink.close()

        assert list(tmp_path.glob("*.ndjson.active")) == []
        (done,) = tmp_path.glob("*.ndjson")
        assert done.read_bytes() == b'{"machine_id": "S1"}\n'

    def test_close_twice_is_harmless(self, tmp_path: Path) -> None:
        sink = FileSink(output_dir=str(tmp_path))
        sink.close()
        sink.close()
        assert len(list(tmp_path.glob("*.ndjson"))) == 1

    def test_from_config(self, tmp_path: Path) -> None:
        """Settings come from the ``output.file`` section."""
        cfg = FileOutputConfig(
            output_dir=str(tmp_path / "out"),
            file_prefix="board",
            rotation=RotationConfig(interval_seconds=3600, max_size_bytes=10),
            flush=FlushConfig(interval_ms=0, every_n_events=1),
        )
        sink = FileSink.from_config(cfg, client_id="line-2")
        try:
            (active,) = (tmp_path / "out").glob("*.ndjson.active")
            assert active.name.startswith("board-line-2-")
            sink.write(b"a" * 20)
            assert active.read_bytes() == b"a" * 20
        finally:
            sink.close()
