import logging
import os
import time
from typing import Literal, TypedDict

import httpx

from scanner.camera import ScanDecoder
from scanner.client import AttendanceClient
from scanner.guard import ScanGuard

logger = logging.getLogger(__name__)

OutcomeKind = Literal["checked_in", "already_in_gym", "checked_out", "error"]

TRANSPORT_ERROR_MESSAGE = "Could not reach the gym server. Please try again."
AUTH_ERROR_MESSAGE = "Your session has expired. Please sign in again."
SERVER_ERROR_MESSAGE = "The gym server could not handle the request. Please try again."

# Outcomes a rescan cannot change.
FINAL_ERROR_CODES = {"NOT_ELIGIBLE", "NOT_IN_GYM", "AUTH"}


class ScanOutcome(TypedDict):
    kind: OutcomeKind
    code: str
    message: str
    retryable: bool
    record: dict | None


def outcome_from_response(body: dict) -> ScanOutcome:
    code = str(body.get("code") or "")
    message = str(body.get("message") or "")
    record = body.get("record")

    if code in {"CHECKED_IN", "CHECKED_OUT"}:
        return {"kind": code.lower(), "code": code, "message": message, "record": record, "retryable": False}

    # Informational: the member can check out from here.
    if code == "ALREADY_IN_GYM":
        return {"kind": "already_in_gym", "code": code, "message": message, "record": record, "retryable": False}

    return {
        "kind": "error",
        "code": code or "UNKNOWN",
        "message": message or "Request failed.",
        "record": None,
        "retryable": code not in FINAL_ERROR_CODES,
    }


def outcome_from_http_error(exc: httpx.HTTPError) -> ScanOutcome:
    if isinstance(exc, httpx.HTTPStatusError):
        if exc.response.status_code in (401, 403):
            code, message = "AUTH", AUTH_ERROR_MESSAGE
        else:
            code, message = "SERVER", SERVER_ERROR_MESSAGE
    else:
        code, message = "TRANSPORT", TRANSPORT_ERROR_MESSAGE

    return {
        "kind": "error",
        "code": code,
        "message": message,
        "record": None,
        "retryable": code not in FINAL_ERROR_CODES,
    }


class ScannerSession:
    """
    One check-in attempt at the gym entrance.

    Decoded payloads go through the guard, so at most one submission is in
    flight. Any outcome stops the camera; try_again() re-arms it.
    """

    def __init__(self, decoder: ScanDecoder, client: AttendanceClient, guard: ScanGuard | None = None):
        self.decoder = decoder
        self.client = client
        self.guard = guard or ScanGuard()
        self.outcome: ScanOutcome | None = None
        self.submissions = 0

    @property
    def scanning(self) -> bool:
        return self.decoder.running and self.outcome is None

    def start(self) -> None:
        self.guard.reset()
        self.outcome = None
        self.decoder.start()

    def stop(self) -> None:
        self.decoder.stop()

    def handle_decoded(self, payload: str | None) -> ScanOutcome | None:
        with self.guard.submission(payload) as accepted:
            if not accepted:
                return None

            self.submissions += 1
            try:
                outcome = outcome_from_response(self.client.submit_check_in(payload))
            except httpx.HTTPError as exc:
                logger.warning("Check-in submission failed: %s", exc)
                outcome = outcome_from_http_error(exc)

        self.decoder.stop()
        self.outcome = outcome
        logger.info("Scan outcome: %s (%s)", outcome["kind"], outcome["code"])
        return outcome

    def step(self) -> ScanOutcome | None:
        payload = self.decoder.poll()
        if payload is None:
            return None
        return self.handle_decoded(payload)

    def run(self, *, max_frames: int | None = None, frame_delay: float = 0.0) -> ScanOutcome | None:
        if not self.decoder.running:
            self.start()

        frames = 0
        try:
            while self.outcome is None:
                if max_frames is not None and frames >= max_frames:
                    break
                self.step()
                frames += 1
                if frame_delay:
                    time.sleep(frame_delay)
        finally:
            if self.outcome is None:
                self.decoder.stop()
        return self.outcome

    def try_again(self) -> None:
        self.decoder.stop()
        self.start()

    def check_out(self) -> ScanOutcome:
        try:
            return outcome_from_response(self.client.submit_check_out())
        except httpx.HTTPError as exc:
            logger.warning("Check-out request failed: %s", exc)
            return outcome_from_http_error(exc)


def run_scanner() -> ScanOutcome | None:
    base_url = os.getenv("GYMPASS_API_URL", "http://127.0.0.1:8000")
    token = os.getenv("GYMPASS_MEMBER_TOKEN", "").strip()
    camera_index = int(os.getenv("GYMPASS_CAMERA_INDEX", "0"))
    if not token:
        raise SystemExit("GYMPASS_MEMBER_TOKEN is required")

    with AttendanceClient(base_url, token) as client:
        session = ScannerSession(ScanDecoder(camera_index), client)
        print(f"[scan] Point the camera at the gym QR code (camera {camera_index})")
        outcome = session.run(frame_delay=0.03)

    if outcome is None:
        print("[scan] Stopped without a decision")
    else:
        print(f"[scan] {outcome['kind']}: {outcome['message']}")
    return outcome


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_scanner()
