"""
Candidate Executor
==================

Runs one compressor invocation for one candidate argument set and reports
which volumes it produced.

The process is polled rather than waited on so a cancellation request
(threading.Event) kills it within one poll interval. Killing goes through
psutil so helper processes spawned by the compressor die with it. A
reader thread drains stderr while the process runs and keeps its tail for
error messages.

For split archives only the first volume is usually needed to rule a
candidate out: with first_volume_only the process is stopped as soon as
the second volume appears, i.e. once the first one has been closed.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Deque, List, Optional, Sequence

import psutil

from .errors import ExecutionError
from .versions import CompressorInstallation, SUBPROCESS_FLAGS
from .volumes import locate_volumes

logger = logging.getLogger(__name__)

# Exit codes the compressor uses for success and non-fatal warnings
OK_EXIT_CODES = (0, 1)

# stderr is kept as the last STDERR_TAIL_CHUNKS reads of STDERR_READ_SIZE bytes
STDERR_READ_SIZE = 4096
STDERR_TAIL_CHUNKS = 16


def _drain_stream(stream: IO[bytes], tail: Deque[bytes]) -> None:
    """Read a pipe until EOF so the writer never blocks on a full buffer."""
    try:
        for chunk in iter(lambda: stream.read(STDERR_READ_SIZE), b""):
            tail.append(chunk)
    except (OSError, ValueError) as e:
        logger.debug(f"stderr reader stopped: {e}")


@dataclass
class ExecutionOutcome:
    """
    Result of one compressor run.

    Attributes:
        completed: The run finished (fully, or deliberately after the first volume)
        cancelled: The run was killed because cancellation was requested
        partial: Only the first volume was produced on purpose
        volumes: Produced volumes in volume order
        returncode: Process exit code (None when killed before exit)
        duration: Wall-clock seconds
    """
    completed: bool
    cancelled: bool = False
    partial: bool = False
    volumes: List[Path] = field(default_factory=list)
    returncode: Optional[int] = None
    duration: float = 0.0


def kill_process_tree(process: subprocess.Popen, timeout: float = 5.0) -> None:
    """Kill a process and everything it spawned."""
    try:
        children = psutil.Process(process.pid).children(recursive=True)
    except psutil.NoSuchProcess:
        children = []

    for child in children:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass

    try:
        process.kill()
    except OSError:
        pass

    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process {process.pid} did not exit {timeout:.0f}s after kill")

    if children:
        psutil.wait_procs(children, timeout=timeout)


class CandidateExecutor:
    """
    Invokes the external compressor as a bounded sub-process.

    Example:
        executor = CandidateExecutor(timeout=3600)
        outcome = executor.run(
            installation, ["a", "-m3"], Path("out/release.rar"),
            inputs=["movie.mkv"], cwd=Path("release"), cancel_event=event
        )
    """

    def __init__(self, timeout: float = 0, poll_interval: float = 0.2) -> None:
        """
        Args:
            timeout: Seconds before a run is killed and failed (0 = no limit)
            poll_interval: Seconds between process / cancellation checks
        """
        self.timeout = timeout
        self.poll_interval = max(0.01, poll_interval)

    @staticmethod
    def build_command(
        installation: CompressorInstallation,
        arguments: Sequence[str],
        archive_path: Path,
        inputs: Sequence[str]
    ) -> List[str]:
        return [str(installation.executable), *arguments, str(archive_path), *inputs]

    def _wait(self, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None:
            cancel_event.wait(self.poll_interval)
        else:
            time.sleep(self.poll_interval)

    def run(
        self,
        installation: CompressorInstallation,
        arguments: Sequence[str],
        archive_path: Path,
        inputs: Sequence[str],
        cwd: Path,
        cancel_event: Optional[threading.Event] = None,
        first_volume_only: bool = False
    ) -> ExecutionOutcome:
        """
        Run one candidate.

        Returns:
            ExecutionOutcome; cancelled runs come back with completed=False

        Raises:
            ExecutionError: If the process cannot start, times out, exits
                            with an error code or produces no volume
        """
        if not arguments:
            raise ExecutionError("Refusing to run an empty argument set")

        # The compressor runs in cwd, the volume scan runs here
        archive_path = Path(archive_path).resolve()
        cmd = self.build_command(installation, arguments, archive_path, inputs)
        logger.debug(f"Running {installation.label}: {' '.join(arguments)}")

        start_time = time.time()
        try:
            process = subprocess.Popen(
                cmd,
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                creationflags=SUBPROCESS_FLAGS
            )
        except OSError as e:
            raise ExecutionError(f"Failed to start {installation.executable}: {e}") from e

        stderr_tail: Deque[bytes] = deque(maxlen=STDERR_TAIL_CHUNKS)
        reader = threading.Thread(
            target=_drain_stream,
            args=(process.stderr, stderr_tail),
            name=f"stderr-{installation.label}",
            daemon=True
        )
        reader.start()

        partial = False
        try:
            while process.poll() is None:
                if cancel_event is not None and cancel_event.is_set():
                    kill_process_tree(process)
                    logger.debug(f"Killed {installation.label} on cancellation")
                    return ExecutionOutcome(
                        completed=False,
                        cancelled=True,
                        duration=time.time() - start_time
                    )

                if first_volume_only and len(locate_volumes(archive_path)) > 1:
                    kill_process_tree(process)
                    partial = True
                    break

                if self.timeout and time.time() - start_time > self.timeout:
                    kill_process_tree(process)
                    raise ExecutionError(
                        f"{installation.label} timed out after {self.timeout:.0f}s"
                    )

                self._wait(cancel_event)
        finally:
            reader.join(timeout=5.0)
            if process.stderr:
                process.stderr.close()

        stderr = b"".join(stderr_tail)
        returncode = process.returncode
        duration = time.time() - start_time

        if not partial and returncode not in OK_EXIT_CODES:
            message = stderr.decode('utf-8', errors='replace').strip()
            raise ExecutionError(
                f"{installation.label} exited with code {returncode}: {message[-200:]}",
                returncode=returncode
            )

        volumes = locate_volumes(archive_path)
        if partial:
            # Later volumes were cut off mid-write
            for extra in volumes[1:]:
                try:
                    extra.unlink()
                except OSError as e:
                    logger.warning(f"Cannot remove truncated volume {extra.name}: {e}")
            volumes = volumes[:1]
        if not volumes:
            raise ExecutionError(f"{installation.label} produced no archive at {archive_path.name}")

        return ExecutionOutcome(
            completed=True,
            partial=partial,
            volumes=volumes,
            returncode=returncode,
            duration=duration
        )
