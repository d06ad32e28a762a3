"""
Tests for the mediajobs CLI.

GIVEN the CLI entrypoint with tool executors replaced by fakes
WHEN a command is dispatched
THEN it reports the job outcome through its exit code
"""

import asyncio
from unittest.mock import Mock

import pytest

from mediajobs import cli
from mediajobs.config import AppSettings
from mediajobs.execution.errors import ErrorKind, StageError
from mediajobs.execution.executor_registry import ExecutorRegistry
from mediajobs.jobs.models import JobStatus

from fakes import FakeDownloader, fake_registry

URL = "https://example.com/watch?v=abc123"


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    monkeypatch.setenv("MEDIAJOBS_DOWNLOADS_DIR", str(tmp_path / "downloads"))
    monkeypatch.setenv("MEDIAJOBS_DB_PATH", "")


def use_executors(monkeypatch, registry):
    monkeypatch.setattr(ExecutorRegistry, "with_defaults", classmethod(lambda cls, **kwargs: registry))


class TestParser:

    def test_serve_defaults(self):
        args = cli.build_parser().parse_args(["serve"])
        assert args.host == "127.0.0.1"
        assert args.port == 8085
        assert args.func is cli.cmd_serve

    def test_run_options(self):
        args = cli.build_parser().parse_args([
            "-v", "run", URL, "--keep-video", "--post-action", "extract", "--language", "de",
        ])
        assert args.verbose
        assert args.url == URL
        assert args.keep_video
        assert args.post_action == "extract"
        assert args.language == "de"
        assert args.func is cli.cmd_run

    def test_rejects_unknown_post_action(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["run", URL, "--post-action", "burn"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])


class TestRunSingleJob:

    def test_completes_and_prints_stages(self, tmp_path, capsys):
        settings = AppSettings(downloads_dir=tmp_path, db_path=None)

        job = asyncio.run(run_with_timeout(cli.run_single_job(settings, {"url": URL}, executors=fake_registry())))

        assert job.status == JobStatus.COMPLETED
        out = capsys.readouterr().out
        assert f"[{job.id}] created in {tmp_path / job.id}" in out
        assert f"[{job.id}] PENDING -> DOWNLOADING" in out
        assert f"[{job.id}] PACKING -> COMPLETED" in out

    def test_verbose_prints_progress(self, tmp_path, capsys):
        settings = AppSettings(downloads_dir=tmp_path, db_path=None)

        job = asyncio.run(run_with_timeout(
            cli.run_single_job(settings, {"url": URL}, executors=fake_registry(), verbose=True)
        ))

        assert f"[{job.id}] DOWNLOADING 50%" in capsys.readouterr().out


async def run_with_timeout(coro):
    return await asyncio.wait_for(coro, 5)


class TestCmdRun:

    def test_completed_exits_zero(self, monkeypatch, tmp_path, capsys):
        use_executors(monkeypatch, fake_registry())

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["run", URL, "--output-dir", str(tmp_path / "out"), "--post-action", "extract"])

        assert exc_info.value.code == cli.EXIT_COMPLETED
        out = capsys.readouterr().out
        assert "COMPLETED" in out
        assert "audio:" in out
        assert list((tmp_path / "out").iterdir())

    def test_failed_exits_two(self, monkeypatch, capsys):
        downloader = FakeDownloader(failures=[
            StageError.for_stage(JobStatus.DOWNLOADING, ErrorKind.NETWORK_ERROR, "Connection reset"),
        ])
        use_executors(monkeypatch, fake_registry(downloader=downloader))

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["run", URL])

        assert exc_info.value.code == cli.EXIT_FAILED
        assert "FAILED DOWNLOAD_NETWORK_ERROR: Connection reset" in capsys.readouterr().out

    def test_invalid_url_exits_one(self, monkeypatch, capsys):
        use_executors(monkeypatch, fake_registry())

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["run", "not a url"])

        assert exc_info.value.code == cli.EXIT_VALIDATION
        assert "ERROR:" in capsys.readouterr().err

    def test_bad_configuration_exits_one(self, monkeypatch, capsys):
        monkeypatch.setenv("MEDIAJOBS_MAX_CONCURRENT_STAGES", "zero")

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["run", URL])

        assert exc_info.value.code == cli.EXIT_VALIDATION
        assert "MEDIAJOBS_MAX_CONCURRENT_STAGES" in capsys.readouterr().err


class TestCmdServe:

    def test_serve_runs_uvicorn(self, monkeypatch):
        run = Mock()
        monkeypatch.setattr("uvicorn.run", run)
        use_executors(monkeypatch, fake_registry())

        with pytest.raises(SystemExit) as exc_info:
            cli.main(["serve", "--port", "9000"])

        assert exc_info.value.code == 0
        _, kwargs = run.call_args
        assert kwargs == {"host": "127.0.0.1", "port": 9000}
        app = run.call_args[0][0]
        assert app.state.persistence is None
