"""
Process supervision for external flashing tools.

Vendor tools run for seconds to tens of minutes and report progress as text.
``ProcessRunner.run`` launches one tool invocation, streams its merged
stdout/stderr line by line, extracts ``NN%`` progress, and enforces a
wall-clock timeout and a cancel signal by hard-killing the child (and, on
POSIX, its whole process group). The child is always reaped before ``run``
returns.

Success is not decided here: vendor tools print real output on stderr and
their exit codes are unreliable, so callers inspect ``exit_text``.
"""

import os
import re
import time
import signal
import threading
import subprocess
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from .tools import ToolHandle
from ..core.errors import ProcessCancelled, ProcessTimedOut

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.02
REAP_TIMEOUT = 10
READER_JOIN_TIMEOUT = 5

_PROGRESS = re.compile(r"(\d{1,3})(?:\.\d+)?\s*%")

IS_WINDOWS = os.name == "nt"


@dataclass
class ProcessOutcome:
    """Result of one supervised tool invocation"""
    exit_text: str = ""
    timed_out: bool = False
    cancelled: bool = False
    last_progress_percent: Optional[int] = None
    returncode: Optional[int] = None
    pid: Optional[int] = None
    duration: float = 0.0

    @property
    def completed(self) -> bool:
        """True if the tool ran to exit on its own"""
        return not (self.timed_out or self.cancelled) and self.returncode is not None and self.returncode >= 0

    def raise_for_status(self) -> "ProcessOutcome":
        if self.timed_out:
            raise ProcessTimedOut(f"Process {self.pid} timed out after {self.duration:.1f}s")
        if self.cancelled:
            raise ProcessCancelled(f"Process {self.pid} was cancelled")
        return self


def extract_progress(line: str) -> Optional[int]:
    """Last ``NN%`` value in a line, clamped to 0-100"""
    matches = _PROGRESS.findall(line)
    if not matches:
        return None
    return max(0, min(100, int(matches[-1])))


def _hard_kill(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    try:
        if IS_WINDOWS:
            proc.kill()
        else:
            # Child runs in its own session, so its pid is also the group id
            os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.warning(f"Group kill of {proc.pid} failed ({e}), killing child only")
        try:
            proc.kill()
        except OSError:
            pass


class ProcessRunner:
    """
    Runs vendor tools with timeout, cancellation and progress extraction.

    Usage:
        runner = ProcessRunner()
        outcome = runner.run(handle, ["w", "boot", "boot.img"], timeout=600,
                             cancel_event=event, on_output_line=print)
        if outcome.timed_out:
            ...
    """

    def __init__(self, poll_interval: float = POLL_INTERVAL):
        self.poll_interval = poll_interval

    def run(
        self,
        handle: ToolHandle,
        args: Sequence[str],
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        on_output_line: Optional[Callable[[str], None]] = None,
        on_progress: Optional[Callable[[int], None]] = None,
    ) -> ProcessOutcome:
        cmd = handle.command + [str(a) for a in args]
        logger.info(f"Executing: {' '.join(cmd)}")

        outcome = ProcessOutcome()
        lines: List[str] = []
        started = time.monotonic()

        if cancel_event is not None and cancel_event.is_set():
            outcome.cancelled = True
            outcome.exit_text = "Cancelled before launch"
            return outcome

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=handle.working_dir or None,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=not IS_WINDOWS,
            )
        except OSError as e:
            logger.error(f"Failed to launch {cmd[0]}: {e}")
            outcome.exit_text = f"Failed to launch {cmd[0]}: {e}"
            outcome.returncode = -1
            outcome.duration = time.monotonic() - started
            return outcome

        outcome.pid = proc.pid

        def read_output():
            for raw in proc.stdout:
                line = raw.rstrip("\r\n")
                lines.append(line)

                percent = extract_progress(line)
                if percent is not None:
                    outcome.last_progress_percent = percent

                try:
                    if on_output_line:
                        on_output_line(line)
                    if percent is not None and on_progress:
                        on_progress(percent)
                except Exception:
                    logger.exception("Output callback failed")

        reader = threading.Thread(target=read_output, name=f"tool-output-{proc.pid}", daemon=True)
        reader.start()

        deadline = started + timeout if timeout else None
        # Poll the child rather than the pipe, so a tool blocked on USB I/O can still be killed
        while proc.poll() is None:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"Cancelling process {proc.pid}")
                outcome.cancelled = True
                _hard_kill(proc)
                break
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning(f"Process {proc.pid} timed out after {timeout}s, killing")
                outcome.timed_out = True
                _hard_kill(proc)
                break
            time.sleep(self.poll_interval)

        try:
            outcome.returncode = proc.wait(timeout=REAP_TIMEOUT)
        except subprocess.TimeoutExpired:
            logger.error(f"Process {proc.pid} could not be reaped")

        reader.join(timeout=READER_JOIN_TIMEOUT)
        if reader.is_alive():
            # A detached grandchild still holds the pipe open
            logger.warning(f"Output of process {proc.pid} still open after exit")
        else:
            proc.stdout.close()

        outcome.exit_text = "\n".join(lines)
        outcome.duration = time.monotonic() - started
        logger.debug(
            f"Process {proc.pid} finished: returncode={outcome.returncode} "
            f"timed_out={outcome.timed_out} cancelled={outcome.cancelled} in {outcome.duration:.2f}s"
        )
        return outcome


__all__ = [
    "ProcessRunner",
    "ProcessOutcome",
    "extract_progress",
]
