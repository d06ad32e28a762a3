"""
Tests for JobCommands.

GIVEN a queue, an orchestrator with fake executors and an output root
WHEN the command handlers are invoked
THEN job directories are created and removed with their jobs
"""

import asyncio
from pathlib import Path
from unittest.mock import Mock

import pytest

from mediajobs.commands import JobCommands
from mediajobs.jobs.errors import InvalidStateError, NotFoundError, ValidationError
from mediajobs.jobs.models import JobStatus
from mediajobs.jobs.orchestrator import PipelineOrchestrator

from fakes import fake_registry

URL = "https://example.com/watch?v=abc123"


@pytest.fixture
def opener():
    return Mock()


@pytest.fixture
def commands(queue, tmp_path, opener):
    orchestrator = PipelineOrchestrator(queue, fake_registry())
    return JobCommands(queue, orchestrator, downloads_dir=tmp_path / "downloads", opener=opener)


def create_and_finish(commands, request):
    async def scenario():
        job = commands.create(request)
        return await commands.orchestrator.wait(job.id)

    return asyncio.run(scenario())


class TestCreate:

    def test_job_directory_under_default_root(self, commands, tmp_path):
        job = commands.create({"url": URL}, start=False)

        job_dir = tmp_path / "downloads" / job.id
        assert job.output_dir == str(job_dir)
        assert job_dir.is_dir()
        assert job.status == JobStatus.PENDING

    def test_request_output_dir_is_root(self, commands, tmp_path):
        job = commands.create({"url": URL, "outputDir": str(tmp_path / "custom")}, start=False)
        assert Path(job.output_dir) == tmp_path / "custom" / job.id

    def test_snake_case_output_dir(self, commands, tmp_path):
        job = commands.create({"url": URL, "output_dir": str(tmp_path / "snake")}, start=False)
        assert Path(job.output_dir).parent == tmp_path / "snake"

    def test_invalid_request_creates_nothing(self, commands, tmp_path):
        with pytest.raises(ValidationError):
            commands.create({"url": "nope"}, start=False)
        assert commands.list() == []
        assert not (tmp_path / "downloads").exists()

    def test_non_mapping_request(self, commands):
        with pytest.raises(ValidationError):
            commands.create(["https://example.com"], start=False)

    def test_create_starts_pipeline(self, commands):
        final = create_and_finish(commands, {"url": URL})
        assert final.status == JobStatus.COMPLETED


class TestCleanup:

    def test_cleanup_removes_directory(self, commands):
        final = create_and_finish(commands, {"url": URL})
        job_dir = Path(final.output_dir)
        assert (job_dir / "metadata.json").is_file()

        commands.cleanup(final.id)

        assert not job_dir.exists()
        with pytest.raises(NotFoundError):
            commands.get(final.id)

    def test_cleanup_keep_files(self, commands):
        final = create_and_finish(commands, {"url": URL})
        commands.cleanup(final.id, remove_files=False)
        assert Path(final.output_dir).is_dir()

    def test_never_removes_foreign_directory(self, commands, queue, tmp_path):
        # A job added directly with the root as its directory
        root = tmp_path / "shared"
        root.mkdir()
        job = queue.add({"url": URL, "outputDir": str(root)})
        queue.cancel(job.id)

        commands.cleanup(job.id)

        assert root.is_dir()

    def test_cleanup_pending_job_refused(self, commands):
        job = commands.create({"url": URL}, start=False)
        with pytest.raises(InvalidStateError):
            commands.cleanup(job.id)
        assert Path(job.output_dir).is_dir()


class TestOtherCommands:

    def test_open_directory(self, commands, opener):
        job = commands.create({"url": URL}, start=False)

        path = commands.open_directory(job.id)

        assert path == Path(job.output_dir)
        opener.assert_called_once_with(Path(job.output_dir))

    def test_open_missing_directory(self, commands, opener):
        job = commands.create({"url": URL}, start=False)
        Path(job.output_dir).rmdir()

        with pytest.raises(InvalidStateError):
            commands.open_directory(job.id)
        opener.assert_not_called()

    def test_cancel_and_list(self, commands):
        first = commands.create({"url": URL}, start=False)
        second = commands.create({"url": URL}, start=False)

        commands.cancel(first.id)

        assert [j.id for j in commands.list()] == [first.id, second.id]
        assert [j.id for j in commands.list("CANCELLED")] == [first.id]
        assert commands.stats()["cancelled"] == 1

    def test_retry_requires_failed(self, commands):
        job = commands.create({"url": URL}, start=False)
        with pytest.raises(InvalidStateError):
            commands.retry(job.id)
