"""Tool adapter: uniform invocation of external processes.

Each invocation runs in its own session so that the whole process group
(the tool plus anything it forks, e.g. ``mvn`` -> JVM, ``docker`` -> buildkit
client) can be terminated on timeout or abort.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from typing import Dict, Iterable, List, Optional

from shipgate.data_models import ToolInvocation
from shipgate.errors import ErrorKind, ToolInvocationError, ToolTimeout

logger = logging.getLogger(__name__)

REDACTED = "****"


class ToolAdapter:
    """Invoke external commands and capture exit code, stdout and stderr.

    The adapter performs no policy decisions: a non-zero exit is returned to
    the caller (see ``ToolInvocation.check``), while failure to start, timeout
    and cancellation are raised.
    """

    def __init__(self, poll_interval: float = 0.2, kill_grace_seconds: float = 5.0):
        """
        Args:
            poll_interval: Seconds between checks of the cancel event
            kill_grace_seconds: Seconds between SIGTERM and SIGKILL
        """
        self.poll_interval = poll_interval
        self.kill_grace_seconds = kill_grace_seconds

    def invoke(
        self,
        command: str,
        args: Optional[List[str]] = None,
        env: Optional[Dict[str, str]] = None,
        working_dir: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        redact: Iterable[str] = (),
    ) -> ToolInvocation:
        """
        Run ``command args...`` to completion.

        Args:
            command: Executable name or path
            args: Command arguments
            env: Variables merged over the parent environment
            working_dir: Working directory for the process
            timeout: Seconds before the process group is terminated
            cancel_event: When set, the process group is terminated
            redact: Secret values masked in the captured streams

        Returns:
            ToolInvocation with exit code, streams and duration

        Raises:
            ToolInvocationError: Process failed to start or was cancelled
            ToolTimeout: Process exceeded ``timeout``
        """
        argv = [command] + list(args or [])
        full_env = dict(os.environ)
        full_env.update(env or {})
        secrets = [value for value in redact if value]

        logger.info(f"Invoking {command} ({len(argv) - 1} args, timeout={timeout}s, cwd={working_dir})")
        start = time.monotonic()

        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=working_dir,
                env=full_env,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except OSError as exc:
            raise ToolInvocationError(f"failed to start '{command}': {exc}") from exc

        deadline = start + timeout if timeout else None
        while True:
            wait = self.poll_interval
            if deadline is not None:
                wait = max(0.0, min(wait, deadline - time.monotonic()))
            try:
                stdout, stderr = proc.communicate(timeout=wait)
                break
            except subprocess.TimeoutExpired:
                pass

            if cancel_event is not None and cancel_event.is_set():
                stdout, stderr = self._terminate(proc)
                logger.warning(f"{command} (pid {proc.pid}) terminated by abort")
                raise ToolInvocationError(f"'{command}' terminated: run aborted", kind=ErrorKind.ABORTED)

            if deadline is not None and time.monotonic() >= deadline:
                stdout, stderr = self._terminate(proc)
                logger.warning(f"{command} (pid {proc.pid}) timed out after {timeout}s")
                raise ToolTimeout(
                    f"'{command}' timed out after {timeout:g}s",
                    timeout_seconds=timeout,
                    stdout=self._redact(stdout, secrets),
                    stderr=self._redact(stderr, secrets),
                )

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(f"{command} exited with code {proc.returncode} in {duration_ms}ms")

        return ToolInvocation(
            command=argv,
            exit_code=proc.returncode,
            stdout=self._redact(stdout, secrets),
            stderr=self._redact(stderr, secrets),
            duration_ms=duration_ms,
        )

    def _terminate(self, proc: subprocess.Popen):
        """Terminate the process group (SIGTERM, then SIGKILL) and drain its streams."""
        self._signal_group(proc, signal.SIGTERM)
        try:
            return proc.communicate(timeout=self.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            pass

        self._signal_group(proc, signal.SIGKILL)
        try:
            return proc.communicate(timeout=self.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            # A descendant escaped the group and still holds the pipes
            logger.error(f"pid {proc.pid} did not release its output streams after SIGKILL")
            return "", ""

    def _signal_group(self, proc: subprocess.Popen, sig: int) -> None:
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError as exc:
            logger.error(f"Cannot signal process group {proc.pid}: {exc}")
            proc.send_signal(sig)

    @staticmethod
    def _redact(text: Optional[str], secrets: List[str]) -> str:
        text = text or ""
        # Longest first so a secret containing another is masked whole
        for secret in sorted(secrets, key=len, reverse=True):
            text = text.replace(secret, REDACTED)
        return text
