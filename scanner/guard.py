import threading
from contextlib import contextmanager
from typing import Iterator, Literal

GuardState = Literal["idle", "submitting"]


class ScanGuard:
    """
    Single-flight gate in front of the check-in submission.

    idle -> submitting on an accepted payload, submitting -> idle on finish(),
    whatever the submission's outcome. While submitting every decode is
    dropped; once idle again the payload that was just submitted is still
    dropped (the camera usually keeps seeing the same code) until reset().
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._state: GuardState = "idle"
        self._last_payload: str | None = None
        self.suppressed = 0

    @property
    def state(self) -> GuardState:
        with self._lock:
            return self._state

    @property
    def last_payload(self) -> str | None:
        with self._lock:
            return self._last_payload

    def try_begin(self, payload: str | None) -> bool:
        if not payload:
            return False
        with self._lock:
            if self._state != "idle" or payload == self._last_payload:
                self.suppressed += 1
                return False
            self._state = "submitting"
            self._last_payload = payload
            return True

    def finish(self) -> None:
        with self._lock:
            self._state = "idle"

    def reset(self) -> None:
        with self._lock:
            self._state = "idle"
            self._last_payload = None

    @contextmanager
    def submission(self, payload: str | None) -> Iterator[bool]:
        accepted = self.try_begin(payload)
        try:
            yield accepted
        finally:
            if accepted:
                self.finish()
