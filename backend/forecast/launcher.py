import codecs
import logging
import os
import subprocess
import threading
from typing import Dict, List, Optional

from .state import JobStatusTable
from .storage import RecordStore, user_data_type

logger = logging.getLogger("forecast-backend")

CHUNK_SIZE = 4096


class PredictionJob:
    """Handle on one external prediction process.

    A supervisor thread owns the process: it reads stdout (completion signal),
    drains stderr into the log and records the exit code.
    """

    def __init__(
        self,
        user: str,
        token: str,
        command: List[str],
        table: JobStatusTable,
        sentinel: str = "",
        timeout_seconds: int = 0,
        env: Optional[Dict[str, str]] = None,
    ):
        self.user = user
        self.token = token
        self.command = command
        self.table = table
        self.sentinel = sentinel
        self.timeout_seconds = timeout_seconds
        self.env = env
        self.process: Optional[subprocess.Popen] = None
        self.returncode: Optional[int] = None
        self.timed_out = False
        self._cancelled = False
        self._done = threading.Event()
        self._lock = threading.Lock()

    def start(self) -> "PredictionJob":
        threading.Thread(target=self._supervise, name=f"predict-{self.user}", daemon=True).start()
        return self

    @property
    def running(self) -> bool:
        return not self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            if self.process is not None and self.process.poll() is None:
                logger.info("Terminating prediction job for %s (token %s)", self.user, self.token)
                self.process.terminate()

    def _on_output(self, text: str) -> None:
        logger.info("Prediction output [%s]: %s", self.user, text.rstrip())
        if self.sentinel and text.strip() != self.sentinel:
            return
        if self.table.is_current(self.user, self.token):
            self.table.mark_complete(self.user, self.token)

    def _read_stdout(self, stream) -> None:
        # Chunks, not lines: output without a trailing newline still counts
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = stream.read1(CHUNK_SIZE)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if not text:
                continue
            if not self.sentinel:
                self._on_output(text)
                continue
            pending += text
            *lines, pending = pending.split("\n")
            for line in lines:
                self._on_output(line)
        pending += decoder.decode(b"", final=True)
        if pending:
            self._on_output(pending)

    def _drain_stderr(self, stream) -> None:
        for raw in stream:
            line = raw.decode("utf-8", errors="replace")
            logger.error("Prediction error [%s]: %s", self.user, line.rstrip())

    def _on_timeout(self) -> None:
        with self._lock:
            if self.process is not None and self.process.poll() is None:
                logger.warning(
                    "Prediction job for %s exceeded %ss, killing it", self.user, self.timeout_seconds
                )
                self.timed_out = True
                self.process.kill()

    def _supervise(self) -> None:
        timer = None
        try:
            with self._lock:
                if self._cancelled:
                    return
                try:
                    self.process = subprocess.Popen(
                        self.command,
                        stdin=subprocess.DEVNULL,
                        stdout=subprocess.PIPE,
                        stderr=subprocess.PIPE,
                        env=self.env,
                    )
                except OSError:
                    logger.exception("Failed to spawn prediction job for %s", self.user)
                    return
            if self.timeout_seconds > 0:
                timer = threading.Timer(self.timeout_seconds, self._on_timeout)
                timer.daemon = True
                timer.start()
            stderr_reader = threading.Thread(
                target=self._drain_stderr, args=(self.process.stderr,), daemon=True
            )
            stderr_reader.start()
            try:
                self._read_stdout(self.process.stdout)
            except Exception:
                logger.exception("Reading output of prediction job for %s failed", self.user)
            finally:
                self.returncode = self.process.wait()
                stderr_reader.join()
            if self.returncode != 0:
                logger.warning(
                    "Prediction job for %s (token %s) exited with code %s",
                    self.user,
                    self.token,
                    self.returncode,
                )
            else:
                logger.info("Prediction job for %s (token %s) finished", self.user, self.token)
        finally:
            if timer is not None:
                timer.cancel()
            self._done.set()


class PredictionLauncher:
    def __init__(
        self,
        store: RecordStore,
        table: JobStatusTable,
        script: str,
        python: str = "python3",
        sentinel: str = "",
        timeout_seconds: int = 0,
        cancel_superseded: bool = False,
        child_env: Optional[Dict[str, str]] = None,
    ):
        self.store = store
        self.table = table
        self.script = script
        self.python = python
        self.sentinel = sentinel
        self.timeout_seconds = timeout_seconds
        self.cancel_superseded = cancel_superseded
        self.child_env = child_env or {}
        self._jobs: Dict[str, PredictionJob] = {}
        self._jobs_lock = threading.Lock()

    def command(self, *args: str) -> List[str]:
        return [self.python, self.script, *args]

    def start(self, user: str, from_date: str, from_time: str, to_date: str, to_time: str) -> str:
        """Clear the user's previous results, mint a token and launch the job in the background."""
        # Store errors propagate and abort the start
        self.store.delete_many(user_data_type(user))
        token = self.table.register(user)
        job = PredictionJob(
            user,
            token,
            self.command(from_date, from_time, to_date, to_time, user, token),
            self.table,
            sentinel=self.sentinel,
            timeout_seconds=self.timeout_seconds,
            env={**os.environ, **self.child_env},
        )
        with self._jobs_lock:
            self._prune()
            previous = self._jobs.get(user)
            self._jobs[user] = job
        if previous is not None and previous.running and self.cancel_superseded:
            previous.cancel()
        logger.info("Starting prediction job for %s (token %s)", user, token)
        job.start()
        return token

    def get(self, user: str) -> Optional[PredictionJob]:
        return self._jobs.get(user)

    def running(self) -> int:
        return sum(1 for job in list(self._jobs.values()) if job.running)

    def _prune(self) -> None:
        # Finished jobs live as long as their user's status entry
        for user, job in list(self._jobs.items()):
            if not job.running and self.table.get(user) is None:
                del self._jobs[user]
