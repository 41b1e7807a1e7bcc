"""One-time fetch of the external program before the bot starts."""

import asyncio
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class BootstrapError(RuntimeError):
    """Raised when the external program could not be fetched."""


class RepositoryBootstrap:
    """Clones the external program's repository and installs its dependencies."""

    def __init__(
        self,
        repo_url: str,
        repo_dir: str = "./java",
        clone_timeout: int = 60,
        install_command: Optional[list[str]] = None,
    ):
        self.repo_url = repo_url
        self.repo_dir = Path(repo_dir)
        self.clone_timeout = clone_timeout
        self.install_command = install_command if install_command is not None else ["npm", "install"]

    def _run(self, cmd: list[str], cwd: Optional[Path] = None, timeout: Optional[int] = None) -> subprocess.CompletedProcess:
        logger.debug(f"Running: {' '.join(cmd)}")
        return subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, check=True, timeout=timeout)

    def clone(self):
        """
        Fresh shallow clone; retried once without a timeout.

        Raises:
            BootstrapError: both attempts failed
        """
        if self.repo_dir.exists():
            try:
                shutil.rmtree(self.repo_dir)
            except OSError as e:
                logger.warning(f"Could not remove existing checkout, continuing: {e}")

        cmd = ["git", "clone", "--depth", "1", self.repo_url, str(self.repo_dir)]
        try:
            self._run(cmd, timeout=self.clone_timeout)
            logger.info("Repository cloned successfully")
            return
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            logger.error(f"Error cloning repository: {e}")

        # A timed-out clone can leave a partial checkout behind
        shutil.rmtree(self.repo_dir, ignore_errors=True)
        try:
            self._run(cmd)
        except (subprocess.CalledProcessError, OSError) as e:
            raise BootstrapError(f"Fallback clone also failed: {e}") from e
        logger.info("Repository cloned successfully (fallback)")

    def install(self) -> bool:
        """Install the program's dependencies. Failure is logged, not raised."""
        if not self.install_command:
            return True
        try:
            self._run(self.install_command, cwd=self.repo_dir)
        except (subprocess.CalledProcessError, OSError) as e:
            logger.warning(f"Could not install dependencies in {self.repo_dir}: {e}")
            return False
        logger.info("Dependencies installed successfully")
        return True

    async def run(self):
        """Clone then install, off the event loop."""
        logger.info(f"Cloning {self.repo_url} into {self.repo_dir}...")
        await asyncio.to_thread(self.clone)
        await asyncio.to_thread(self.install)
