"""Spawning and supervising the external program (one process per session)."""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .models import ProcessExited, ProcessFailed, ProcessHandle, ProcessOutput, Session

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536


class ProcessSpawnError(RuntimeError):
    """Raised when the external program cannot be started."""


class ProcessSupervisor:
    """
    Starts the external program for a session and reports what it does.

    Output is read in chunks rather than lines: the program's prompts are
    not newline-terminated. Every chunk, the exit code, and reader failures
    are handed to the event callback tagged with the handle they came from,
    so output from a killed process can be told apart from its successor's.
    """

    def __init__(
        self,
        program_dir: str = "./java",
        command: Optional[list[str]] = None,
        config_file: str = "config.json",
        on_event: Optional[Callable[[object], Awaitable[None]]] = None,
        on_kill: Optional[Callable[[int], None]] = None,
    ):
        """
        Args:
            program_dir: Working directory of the external program
            command: Command line to run (default: node index.js)
            config_file: Credentials file name, relative to program_dir
            on_event: Coroutine receiving ProcessOutput/ProcessExited/ProcessFailed
            on_kill: Called with the user id whenever a session's process is killed
        """
        self.program_dir = Path(program_dir)
        self.command = command or ["node", "index.js"]
        self.config_file = config_file
        self._on_event = on_event
        self._on_kill = on_kill

    def set_event_callback(self, callback: Callable[[object], Awaitable[None]]):
        """Set the callback for process events."""
        self._on_event = callback

    def set_kill_callback(self, callback: Callable[[int], None]):
        """Set the callback run after a session's process is killed."""
        self._on_kill = callback

    def write_config(self, session: Session) -> Path:
        """Write the credentials artifact the external program reads on startup."""
        creds = session.credentials
        config_path = self.program_dir / self.config_file
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(json.dumps({
            "apiId": creds.api_id,
            "apiHash": creds.api_hash,
            "sessionId": "",
        }, indent=2))
        return config_path

    async def spawn(self, session: Session) -> ProcessHandle:
        """
        Start the external program for a session.

        Any process the session still owns is killed first. On success the
        new handle is stored on the session.

        Raises:
            ProcessSpawnError: credentials missing or the OS refused to start it
        """
        if session.credentials is None:
            raise ProcessSpawnError("API credentials are missing")

        self.kill(session)

        try:
            self.write_config(session)
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.program_dir),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProcessSpawnError(str(e)) from e

        handle = ProcessHandle(user_id=session.user_id, process=proc)
        session.process = handle
        handle.watcher = asyncio.create_task(self._watch(handle))
        logger.info(f"Spawned {' '.join(self.command)} for user {session.user_id} (pid={proc.pid})")
        return handle

    def write(self, session: Session, line: str) -> bool:
        """Send one line to the session's process. Returns False if it cannot be delivered."""
        handle = session.process
        if handle is None or not handle.is_alive:
            return False
        stdin = handle.process.stdin
        if stdin is None or stdin.is_closing():
            return False
        try:
            stdin.write((line + "\n").encode("utf-8"))
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"Write to process for user {session.user_id} failed: {e}")
            return False
        return True

    def kill(self, session: Session) -> bool:
        """
        Terminate the session's process and clear the handle. Safe to repeat.

        Returns:
            True if a live process was signalled
        """
        handle = session.process
        session.process = None
        signalled = False

        if handle is not None and not handle.killed:
            handle.killed = True
            if handle.process.returncode is None:
                try:
                    handle.process.terminate()
                    signalled = True
                    logger.info(f"Terminated process for user {session.user_id} (pid={handle.pid})")
                except ProcessLookupError:
                    pass

        if self._on_kill:
            self._on_kill(session.user_id)
        return signalled

    async def _watch(self, handle: ProcessHandle):
        """Pump stdout/stderr, then report how the process ended."""
        proc = handle.process
        try:
            await asyncio.gather(
                self._pump(handle, proc.stdout, "stdout"),
                self._pump(handle, proc.stderr, "stderr"),
            )
            returncode = await proc.wait()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error supervising process for user {handle.user_id}: {e}")
            await self._emit(ProcessFailed(user_id=handle.user_id, handle=handle, error=str(e)))
            return

        logger.info(f"Process for user {handle.user_id} exited with code {returncode}")
        await self._emit(ProcessExited(user_id=handle.user_id, handle=handle, returncode=returncode))

    async def _pump(self, handle: ProcessHandle, stream: Optional[asyncio.StreamReader], name: str):
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(READ_CHUNK_SIZE)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    await self._emit(ProcessOutput(user_id=handle.user_id, handle=handle, text=tail, stream=name))
                break
            text = decoder.decode(data)
            if text:
                await self._emit(ProcessOutput(user_id=handle.user_id, handle=handle, text=text, stream=name))

    async def _emit(self, event):
        if not self._on_event:
            return
        try:
            await self._on_event(event)
        except Exception as e:
            logger.error(f"Error handling process event for user {event.user_id}: {e}", exc_info=True)
