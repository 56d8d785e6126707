import json
from unittest.mock import patch

import pytest

from reelsmith.cli import main
from reelsmith.jobs import Job, JobStatus


@pytest.fixture(autouse=True)
def fake_tools(monkeypatch):
    # Keep executable resolution away from PATH lookups and bundled binaries
    monkeypatch.setenv("REELSMITH_FFMPEG", "ffmpeg")
    monkeypatch.setenv("REELSMITH_FFPROBE", "ffprobe")
    monkeypatch.delenv("REELSMITH_RENDER_DIR", raising=False)


@pytest.fixture
def render_dir(tmp_path):
    return tmp_path / "renders"


def write_jobs(render_dir, *jobs):
    render_dir.mkdir(parents=True, exist_ok=True)
    (render_dir / "jobs.json").write_text(json.dumps([job.to_record() for job in jobs]))


def test_cli_help_displays():
    """Test --help works without errors."""
    with patch("sys.argv", ["reelsmith", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_serve_help():
    """Test serve subcommand help."""
    with patch("sys.argv", ["reelsmith", "serve", "--help"]):
        with pytest.raises(SystemExit) as exc_info:
            main()
        assert exc_info.value.code == 0


def test_cli_no_command_shows_help(capsys):
    """Test running with no command shows help."""
    with patch("sys.argv", ["reelsmith"]):
        main()
        captured = capsys.readouterr()
        assert "usage:" in captured.out.lower()


def test_cli_check_command_tools_found(capsys):
    """Test check command when ffmpeg and ffprobe run."""
    with patch("sys.argv", ["reelsmith", "check"]):
        with patch("reelsmith.cli.check_tool", return_value=True):
            main()
            captured = capsys.readouterr()
            assert "ffmpeg found" in captured.out.lower()
            assert "ffprobe found" in captured.out.lower()


def test_cli_check_command_tool_missing(capsys):
    """Test check command exits 1 when a tool is missing."""
    with patch("sys.argv", ["reelsmith", "check"]):
        with patch("reelsmith.cli.check_tool", side_effect=[True, False]):
            with pytest.raises(SystemExit) as exc_info:
                main()
            assert exc_info.value.code == 1
            captured = capsys.readouterr()
            assert "ffprobe not found" in captured.out.lower()


def test_cli_serve_passes_overrides():
    """Test serve builds the app from CLI host/port/render-dir."""
    with patch("sys.argv", ["reelsmith", "--render-dir", "/tmp/r", "serve", "--port", "6123"]):
        with patch("reelsmith.cli.run_serve") as run_serve:
            main()
    config = run_serve.call_args.args[0]
    assert config.server.port == 6123
    assert str(config.paths.render_dir) == "/tmp/r"


def test_cli_cache_stats(capsys, render_dir):
    """Test cache stats prints bucket JSON."""
    (render_dir / "uploads").mkdir(parents=True)
    (render_dir / "uploads" / "a1-clip.mp4").write_bytes(b"1234")

    with patch("sys.argv", ["reelsmith", "--render-dir", str(render_dir), "cache", "stats"]):
        main()

    stats = json.loads(capsys.readouterr().out)
    assert stats["uploads"] == {"fileCount": 1, "totalBytes": 4}


def test_cli_cache_clear_refuses_unfinished_jobs(capsys, render_dir):
    """Test offline clear refuses while the job table lists active jobs."""
    write_jobs(render_dir, Job(job_id="j1", name="j1", output_path="/x.mp4", status=JobStatus.RENDERING))

    with patch("sys.argv", ["reelsmith", "--render-dir", str(render_dir), "cache", "clear"]):
        with pytest.raises(SystemExit) as exc_info:
            main()

    assert exc_info.value.code == 1
    assert "refusing" in capsys.readouterr().out.lower()
    assert (render_dir / "jobs.json").exists()


def test_cli_cache_clear_force(capsys, render_dir):
    """Test --force wipes artifacts and rebuilds the skeleton."""
    write_jobs(render_dir, Job(job_id="j1", name="j1", output_path="/x.mp4", status=JobStatus.RENDERING))
    (render_dir / "output").mkdir(parents=True)
    (render_dir / "output" / "old.mp4").write_bytes(b"old")

    with patch("sys.argv", ["reelsmith", "--render-dir", str(render_dir), "cache", "clear", "--force"]):
        main()

    assert not (render_dir / "jobs.json").exists()
    assert not (render_dir / "output" / "old.mp4").exists()
    assert (render_dir / "cache" / "video").is_dir()
    assert (render_dir / "bundle" / "composition.json").exists()
    assert "removed" in capsys.readouterr().out.lower()


def test_cli_cache_clear_with_finished_jobs(render_dir):
    write_jobs(render_dir, Job(job_id="j1", name="j1", output_path="/x.mp4", status=JobStatus.COMPLETED))

    with patch("sys.argv", ["reelsmith", "--render-dir", str(render_dir), "cache", "clear"]):
        main()

    assert not (render_dir / "jobs.json").exists()


def test_cli_purge(capsys, render_dir):
    """Test purge removes only the named asset's files."""
    uploads = render_dir / "uploads"
    uploads.mkdir(parents=True)
    (uploads / "a1-clip.mp4").write_bytes(b"x")
    (uploads / "a2-clip.mp4").write_bytes(b"x")

    with patch("sys.argv", ["reelsmith", "--render-dir", str(render_dir), "purge", "a1"]):
        main()

    assert not (uploads / "a1-clip.mp4").exists()
    assert (uploads / "a2-clip.mp4").exists()
    assert "purged 1 file" in capsys.readouterr().out.lower()
