"""Main entry point - orchestrates all components."""

import asyncio
import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional

import yaml
import uvicorn

from .bootstrap import BootstrapError, RepositoryBootstrap
from .message_queue import DeliveryQueue
from .models import SendResult
from .output_classifier import OutputClassifier
from .process_supervisor import ProcessSupervisor
from .progress import ProgressPublisher
from .server import create_app
from .session_manager import SessionManager
from .state_machine import SessionStateMachine
from .summary_timer import SummaryTimers
from .telegram_bot import StartupError, TelegramBot

logger = logging.getLogger(__name__)

DEFAULT_REPO_URL = "https://github.com/adamfarreledu-cloud/java.git"


def load_config(config_path: str = "config.yaml") -> dict:
    """Load configuration from YAML file, then apply environment overrides."""
    path = Path(config_path)

    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        config = {}
    else:
        with open(path) as f:
            config = yaml.safe_load(f) or {}

    if os.environ.get("BOT_TOKEN"):
        config.setdefault("telegram", {})["token"] = os.environ["BOT_TOKEN"]
    if os.environ.get("PORT"):
        config.setdefault("server", {})["port"] = int(os.environ["PORT"])

    return config


class _Server(uvicorn.Server):
    """uvicorn server that runs a hook before it stops listening."""

    def __init__(self, config: uvicorn.Config, on_exit):
        super().__init__(config)
        self._on_exit = on_exit

    def handle_exit(self, sig, frame):
        self._on_exit()
        super().handle_exit(sig, frame)


class TransferBotApp:
    """Main application orchestrator."""

    def __init__(self, config: dict, telegram_bot: Optional[TelegramBot] = None):
        self.config = config
        self.started_at = time.monotonic()

        # Server config
        self.host = config.get("server", {}).get("host", "0.0.0.0")
        self.port = config.get("server", {}).get("port", 3000)

        # External program
        program_config = config.get("program", {})
        self.program_dir = program_config.get("repo_dir", "./java")
        self.bootstrap: Optional[RepositoryBootstrap] = None
        if program_config.get("bootstrap", True):
            self.bootstrap = RepositoryBootstrap(
                repo_url=program_config.get("repo_url", DEFAULT_REPO_URL),
                repo_dir=self.program_dir,
                clone_timeout=program_config.get("clone_timeout_seconds", 60),
                install_command=program_config.get("install_command"),
            )

        # Telegram bot
        telegram_config = config.get("telegram", {})
        if telegram_bot is None and telegram_config.get("token"):
            telegram_bot = TelegramBot(
                token=telegram_config["token"],
                allowed_user_ids=telegram_config.get("allowed_user_ids"),
                config=config,
            )
        self.telegram_bot = telegram_bot

        # Core components
        self.session_manager = SessionManager(config=config)
        self.progress = ProgressPublisher(active_count=self.session_manager.active_count, config=config)
        self.delivery_queue = DeliveryQueue(send=self._send, config=config)
        self.summary_timers = SummaryTimers(enqueue=self.delivery_queue.enqueue, config=config)
        self.classifier = OutputClassifier(config=config)
        self.supervisor = ProcessSupervisor(
            program_dir=self.program_dir,
            command=program_config.get("command"),
            config_file=program_config.get("config_file", "config.json"),
        )
        self.state_machine = SessionStateMachine(
            session_manager=self.session_manager,
            supervisor=self.supervisor,
            delivery_queue=self.delivery_queue,
            classifier=self.classifier,
            progress=self.progress,
            summary_timers=self.summary_timers,
        )

        # Wire up callbacks
        self.supervisor.set_event_callback(self.state_machine.dispatch)
        self.supervisor.set_kill_callback(self.summary_timers.stop)
        if self.telegram_bot:
            self.telegram_bot.set_event_handler(self.state_machine.dispatch)

        # Create FastAPI app
        self.app = create_app(progress=self.progress, config=config, started_at=self.started_at)

    async def _send(self, user_id: int, text: str, parse_mode: Optional[str] = None) -> SendResult:
        """Delivery transport: route a user's message to their chat."""
        if not self.telegram_bot:
            logger.warning(f"No transport configured, dropping message for {user_id}")
            return SendResult(ok=False, blocked=True, error="no transport")
        session = self.session_manager.get_session(user_id)
        chat_id = session.chat_id if session else user_id
        return await self.telegram_bot.send_message(chat_id, text, parse_mode=parse_mode)

    def kill_all_processes(self) -> int:
        """Kill every session's external program and reset those sessions to idle."""
        count = self.state_machine.kill_all()
        self.summary_timers.stop_all()
        if count:
            logger.info(f"Killed {count} running process(es)")
        return count

    async def start(self):
        """Start all components and serve until shutdown."""
        logger.info("Starting Transfer Bot...")

        if self.bootstrap:
            await self.bootstrap.run()

        await self.session_manager.start()

        if self.telegram_bot:
            await self.telegram_bot.start()
        else:
            logger.warning("No Telegram token configured; running status server only")

        server_config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        server = _Server(server_config, on_exit=self.kill_all_processes)

        logger.info(f"Starting server on http://{self.host}:{self.port}")
        logger.info(f"Progress API: http://{self.host}:{self.port}/progress")

        # Run until shutdown
        await server.serve()

    async def stop(self):
        """Stop all components."""
        logger.info("Stopping Transfer Bot...")

        self.kill_all_processes()
        self.progress.stop()
        await self.session_manager.stop()

        if self.telegram_bot:
            await self.telegram_bot.stop()

        await self.delivery_queue.stop()

        logger.info("Shutdown complete")


async def main():
    """Main entry point."""
    # Setup logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = load_config(os.environ.get("TRANSFER_BOT_CONFIG", "config.yaml"))

    app = TransferBotApp(config)
    exit_code = 0
    try:
        await app.start()
    except (StartupError, BootstrapError) as e:
        logger.error(f"Failed to start bot: {e}")
        exit_code = 1
    finally:
        await app.stop()

    if exit_code:
        sys.exit(exit_code)


def run():
    """Entry point for console script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
