"""Tests for fetching the external program before startup."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from transfer_bot.bootstrap import BootstrapError, RepositoryBootstrap

REPO = "https://example.com/program.git"


@pytest.fixture
def bootstrap(tmp_path):
    return RepositoryBootstrap(repo_url=REPO, repo_dir=str(tmp_path / "program"), clone_timeout=5)


def _ok(*args, **kwargs):
    return subprocess.CompletedProcess(args[0], 0, "", "")


class TestClone:

    def test_shallow_clone_with_timeout(self, bootstrap):
        with patch("transfer_bot.bootstrap.subprocess.run", side_effect=_ok) as run:
            bootstrap.clone()

        cmd = run.call_args.args[0]
        assert cmd == ["git", "clone", "--depth", "1", REPO, str(bootstrap.repo_dir)]
        assert run.call_args.kwargs["timeout"] == 5

    def test_existing_checkout_removed_first(self, bootstrap):
        bootstrap.repo_dir.mkdir()
        (bootstrap.repo_dir / "stale.txt").write_text("old")

        with patch("transfer_bot.bootstrap.subprocess.run", side_effect=_ok):
            bootstrap.clone()

        assert not bootstrap.repo_dir.exists()

    def test_fallback_without_timeout(self, bootstrap):
        run = MagicMock(side_effect=[subprocess.TimeoutExpired(["git"], 5), _ok(["git"])])
        with patch("transfer_bot.bootstrap.subprocess.run", run):
            bootstrap.clone()

        assert run.call_count == 2
        assert run.call_args_list[1].kwargs["timeout"] is None

    def test_both_attempts_fail(self, bootstrap):
        error = subprocess.CalledProcessError(128, ["git"], stderr="repository not found")
        with patch("transfer_bot.bootstrap.subprocess.run", side_effect=error):
            with pytest.raises(BootstrapError):
                bootstrap.clone()


class TestInstall:

    def test_install_runs_in_checkout(self, bootstrap):
        with patch("transfer_bot.bootstrap.subprocess.run", side_effect=_ok) as run:
            assert bootstrap.install() is True

        assert run.call_args.args[0] == ["npm", "install"]
        assert run.call_args.kwargs["cwd"] == bootstrap.repo_dir

    def test_install_failure_only_warns(self, bootstrap):
        with patch("transfer_bot.bootstrap.subprocess.run", side_effect=FileNotFoundError("npm")):
            assert bootstrap.install() is False

    def test_install_can_be_disabled(self, tmp_path):
        bootstrap = RepositoryBootstrap(repo_url=REPO, repo_dir=str(tmp_path), install_command=[])

        with patch("transfer_bot.bootstrap.subprocess.run") as run:
            assert bootstrap.install() is True

        run.assert_not_called()


@pytest.mark.asyncio
async def test_run_clones_then_installs(bootstrap):
    with patch("transfer_bot.bootstrap.subprocess.run", side_effect=_ok) as run:
        await bootstrap.run()

    assert [c.args[0][0] for c in run.call_args_list] == ["git", "npm"]
