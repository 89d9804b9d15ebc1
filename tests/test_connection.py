"""Tests for file access through LocalHost."""

import pytest

from conftest import always_yes
from vpsharden.connection import LocalHost
from vpsharden.context import make_context
from vpsharden.errors import CommandError
from vpsharden.models import ApplyStatus, Step
from vpsharden.reporter import Reporter
from vpsharden.runner import run_steps


@pytest.fixture
def local():
    return LocalHost()


class TestLocalFiles:
    """Tests for LocalHost file operations."""

    def test_write_and_read(self, local, tmp_path):
        path = tmp_path / "jail.local"

        local.write_file(str(path), "[sshd]\n", mode="600")

        assert local.read_file(str(path)) == "[sshd]\n"
        assert path.stat().st_mode & 0o777 == 0o600
        assert [p.name for p in tmp_path.iterdir()] == ["jail.local"]

    def test_write_into_missing_directory(self, local, tmp_path):
        with pytest.raises(CommandError, match="write"):
            local.write_file(str(tmp_path / "missing" / "jail.local"), "[sshd]\n")
        assert not (tmp_path / "missing").exists()

    def test_copy_of_missing_source(self, local, tmp_path):
        with pytest.raises(CommandError, match="copy"):
            local.copy_file(str(tmp_path / "nope"), str(tmp_path / "copy"))
        assert list(tmp_path.iterdir()) == []

    def test_makedirs_below_a_file(self, local, tmp_path):
        (tmp_path / "plain").write_text("")
        with pytest.raises(CommandError, match="mkdir"):
            local.makedirs(str(tmp_path / "plain" / "sub"))

    def test_remove_missing_file_is_quiet(self, local, tmp_path):
        local.remove_file(str(tmp_path / "gone"))

    def test_write_error_fails_only_its_step(self, local, tmp_path, config):
        ctx = make_context(local, config, always_yes)
        target = str(tmp_path / "missing" / "jail.local")
        step = Step(
            name="jail",
            description="write a jail",
            check=lambda ctx: False,
            apply=lambda ctx: ctx.files.write(target, "[sshd]\n"),
            critical=False,
        )
        reporter = Reporter()

        code = run_steps([step], ctx, reporter)

        assert code == 0
        entry = reporter.report.steps[0]
        assert entry.outcome.status is ApplyStatus.FAILED
        assert "write" in entry.outcome.detail
