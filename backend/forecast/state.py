import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from pydantic import BaseModel


class JobStatus(BaseModel):
    token: str
    complete: bool = False
    updated_at: datetime


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobStatusTable:
    """Latest prediction token per user and whether that run has reported output.

    Entries are replaced, never mutated in place, and each user has its own
    lock so writers for different users do not contend.
    """

    def __init__(self, ttl_seconds: int = 0):
        self.ttl = timedelta(seconds=ttl_seconds) if ttl_seconds > 0 else None
        self._jobs: Dict[str, JobStatus] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._token_lock = threading.Lock()
        self._last_token = 0

    @contextmanager
    def _locked(self, user: str):
        # Eviction may retire a user's lock while another thread waits on it; retry with the live one
        while True:
            with self._locks_guard:
                lock = self._locks.setdefault(user, threading.Lock())
            with lock:
                if self._locks.get(user) is lock:
                    yield
                    return

    def _new_token(self) -> str:
        # Millisecond clock, bumped when two registrations land in the same millisecond
        with self._token_lock:
            token = max(time.time_ns() // 1_000_000, self._last_token + 1)
            self._last_token = token
        return str(token)

    def register(self, user: str) -> str:
        self.evict_expired()
        token = self._new_token()
        with self._locked(user):
            self._jobs[user] = JobStatus(token=token, complete=False, updated_at=_now())
        return token

    def mark_complete(self, user: str, token: str) -> bool:
        if user not in self._jobs:
            return False
        with self._locked(user):
            job = self._jobs.get(user)
            if job is None or job.token != token:
                return False
            self._jobs[user] = job.model_copy(update={"complete": True, "updated_at": _now()})
        return True

    def is_current(self, user: str, token: Optional[str]) -> bool:
        job = self._jobs.get(user)
        return job is not None and token is not None and job.token == token

    def is_complete(self, user: str) -> bool:
        job = self._jobs.get(user)
        return bool(job and job.complete)

    def get(self, user: str) -> Optional[JobStatus]:
        return self._jobs.get(user)

    def evict_expired(self) -> int:
        if self.ttl is None:
            return 0
        cutoff = _now() - self.ttl
        expired = [user for user, job in list(self._jobs.items()) if job.updated_at < cutoff]
        evicted = 0
        for user in expired:
            with self._locked(user):
                job = self._jobs.get(user)
                if job is not None and job.updated_at < cutoff:
                    del self._jobs[user]
                    with self._locks_guard:
                        self._locks.pop(user, None)
                    evicted += 1
        return evicted

    def clear(self) -> None:
        with self._locks_guard:
            self._jobs.clear()
            self._locks.clear()

    def __len__(self) -> int:
        return len(self._jobs)
