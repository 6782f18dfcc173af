"""Subprocess helpers and the managed daemon handle."""

import asyncio
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

CommandResult = tuple[int | None, str, str]


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()


async def run_command(cmd: list[str], timeout: float | None = None) -> CommandResult:
    """Run a command and return (returncode, stdout, stderr).

    A missing binary yields returncode 127. A timeout yields returncode None.
    If the calling task is cancelled the child is killed before the
    cancellation propagates, so no process is left behind.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except OSError as e:
        logger.error(f"Command execution failed: {' '.join(cmd)}: {e}")
        return (127, "", str(e))

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        logger.warning(f"Command timed out after {timeout}s: {' '.join(cmd)}")
        await _kill(process)
        return (None, "", "timed out")
    except asyncio.CancelledError:
        await asyncio.shield(_kill(process))
        raise

    return (
        process.returncode,
        stdout.decode("utf-8", errors="replace").strip(),
        stderr.decode("utf-8", errors="replace").strip(),
    )


class ManagedProcess:
    """Handle for one supervised daemon running in the foreground.

    The daemon is never allowed to fork into the background, so this handle
    owns its PID and can verify that it has actually exited.
    """

    def __init__(
        self,
        name: str,
        log_dir: Path | None = None,
        startup_grace: float = 0.5,
        stop_timeout: float = 5.0,
    ):
        self.name = name
        self.log_dir = log_dir
        self.startup_grace = startup_grace
        self.stop_timeout = stop_timeout
        self.process: asyncio.subprocess.Process | None = None

    @property
    def log_file(self) -> Path | None:
        if self.log_dir is None:
            return None
        return self.log_dir / f"{self.name}.log"

    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def start(self, cmd: list[str]) -> bool:
        """Start the daemon. Returns False if it could not be launched or died at once."""
        if self.is_running():
            logger.debug(f"{self.name} already running, restarting")
            await self.stop()

        log_handle = None
        try:
            if self.log_file is not None:
                self.log_file.parent.mkdir(parents=True, exist_ok=True)
                log_handle = open(self.log_file, "ab")
            output = log_handle if log_handle is not None else asyncio.subprocess.DEVNULL

            self.process = await asyncio.create_subprocess_exec(
                *cmd, stdin=asyncio.subprocess.DEVNULL, stdout=output, stderr=output
            )
        except OSError as e:
            logger.error(f"Failed to start {self.name}: {e}")
            self.process = None
            return False
        finally:
            if log_handle is not None:
                log_handle.close()

        try:
            await asyncio.wait_for(self.process.wait(), timeout=self.startup_grace)
        except TimeoutError:
            logger.info(f"{self.name} started (pid {self.process.pid})")
            return True

        logger.error(
            f"{self.name} exited during startup with code {self.process.returncode}"
            + (f", see {self.log_file}" if self.log_file else "")
        )
        return False

    async def stop(self) -> bool:
        """Stop the daemon and wait until its exit has been observed."""
        process = self.process
        if process is None or process.returncode is not None:
            return True

        try:
            process.terminate()
        except ProcessLookupError:
            pass

        try:
            await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
        except TimeoutError:
            logger.warning(f"{self.name} ignored SIGTERM for {self.stop_timeout}s, killing")
            await _kill(process)

        stopped = process.returncode is not None
        if stopped:
            logger.info(f"{self.name} stopped")
        else:
            logger.error(f"{self.name} could not be stopped (pid {process.pid})")
        return stopped
