"""
Attempt session (test-taker side)

Drives one timed attempt against the API: countdown, 30 second autosave and
the anti-cheat counters. The countdown and autosave tasks belong to the
session and are cancelled on every way out of it (submit, close, error).

Nothing here is a security boundary. The server only trusts its own start
timestamp and the submitted answers.
"""

import asyncio
import enum
import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

AUTOSAVE_INTERVAL = 30.0
MAX_WARNINGS = 3
BLOCKED_EVENTS = frozenset({"copy", "cut", "contextmenu"})


class SessionState(str, enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"


class SessionError(Exception):
    pass


class AttemptSession:
    def __init__(
        self,
        client: httpx.AsyncClient,
        test_id: str,
        autosave_interval: float = AUTOSAVE_INTERVAL,
        tick: float = 1.0,
        max_warnings: int = MAX_WARNINGS,
        submit_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.client = client
        self.test_id = test_id
        self.autosave_interval = autosave_interval
        self.tick = tick
        self.max_warnings = max_warnings
        self.submit_retries = submit_retries
        self.retry_delay = retry_delay

        self.state = SessionState.NOT_STARTED
        self.attempt_id: Optional[str] = None
        self.test: Optional[Dict[str, Any]] = None
        self.answers: Dict[str, Optional[int]] = {}
        self.warnings = 0
        self.result: Optional[Dict[str, Any]] = None
        self._deadline: Optional[float] = None
        self._tasks: List[asyncio.Task] = []
        self._submit_lock = asyncio.Lock()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ---------------------- lifecycle ----------------------
    async def start(self) -> Dict[str, Any]:
        """Start (or resume) the attempt and arm the timers."""
        if self.state is not SessionState.NOT_STARTED:
            raise SessionError("Attempt already started")
        resp = await self.client.post(f"/tests/{self.test_id}/start")
        resp.raise_for_status()
        data = resp.json()

        self.attempt_id = data["attemptId"]
        self.test = data["test"]
        self.answers = {a["questionId"]: a.get("selectedAnswer") for a in data.get("answers") or []}
        self.state = SessionState.IN_PROGRESS
        self._arm(data["timeRemaining"])
        if data["timeRemaining"] <= 0:
            logger.info("Attempt %s is already out of time, submitting", self.attempt_id)
            await self.submit(auto=True)
        return data

    async def sync(self) -> Dict[str, Any]:
        """Re-read the attempt from the server and follow its clock."""
        self._require_started()
        resp = await self.client.get(f"/tests/attempts/{self.attempt_id}")
        resp.raise_for_status()
        data = resp.json()

        if data["isCompleted"]:
            self._cancel_timers()
            self.result = data
            self.state = SessionState.SUBMITTED
        elif data["timeRemaining"] <= 0:
            await self.submit(auto=True)
        else:
            self._deadline = asyncio.get_running_loop().time() + data["timeRemaining"]
        return data

    async def submit(self, auto: bool = False) -> Dict[str, Any]:
        """Finalize the attempt. Retries transient failures, then raises SessionError."""
        async with self._submit_lock:
            if self.state is SessionState.SUBMITTED:
                return self.result
            self._require_in_progress()
            self._cancel_timers()

            payload = {"attemptId": self.attempt_id, "answers": self._payload_answers(), "isAutoSubmit": auto}
            last_error: Optional[Exception] = None
            for attempt in range(1, self.submit_retries + 1):
                try:
                    resp = await self.client.post(f"/tests/{self.test_id}/submit", json=payload)
                    if resp.status_code == 409:
                        # finalized elsewhere: another tab, or the server closed it out
                        resp = await self.client.get(f"/tests/attempts/{self.attempt_id}")
                    resp.raise_for_status()
                except httpx.HTTPStatusError as e:
                    if e.response.status_code < 500:
                        raise SessionError(e.response.text) from e
                    last_error = e
                except httpx.TransportError as e:
                    last_error = e
                else:
                    self.result = resp.json()
                    self.state = SessionState.SUBMITTED
                    logger.info("Attempt %s submitted (auto=%s)", self.attempt_id, auto)
                    return self.result

                logger.warning("Submit of attempt %s failed (%d/%d): %s", self.attempt_id, attempt, self.submit_retries, last_error)
                if attempt < self.submit_retries:
                    await asyncio.sleep(self.retry_delay * attempt)

            raise SessionError(f"Could not submit attempt {self.attempt_id}, please retry") from last_error

    async def close(self) -> None:
        """Stop all timers without submitting."""
        tasks = [t for t in self._tasks if t is not asyncio.current_task()]
        self._cancel_timers()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ---------------------- answers ----------------------
    def select(self, question_id: str, option_index: Optional[int]) -> None:
        self._require_in_progress()
        self.answers[question_id] = option_index

    def clear(self, question_id: str) -> None:
        self.select(question_id, None)

    async def save_progress(self) -> bool:
        """Best effort; a failure is logged and left for the next tick."""
        if self.state is not SessionState.IN_PROGRESS:
            return False
        try:
            resp = await self.client.post(
                f"/tests/{self.test_id}/save-progress",
                json={"attemptId": self.attempt_id, "answers": self._payload_answers()},
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Autosave failed for attempt %s: %s", self.attempt_id, e)
            return False
        return True

    # ---------------------- anti-cheat ----------------------
    async def on_visibility_change(self, hidden: bool) -> None:
        if not hidden or self.state is not SessionState.IN_PROGRESS:
            return
        self.warnings += 1
        logger.warning("Attempt %s left the test window (%d/%d)", self.attempt_id, self.warnings, self.max_warnings)
        if self.warnings >= self.max_warnings:
            await self.submit(auto=True)

    def allows(self, event: str) -> bool:
        return not (self.state is SessionState.IN_PROGRESS and event in BLOCKED_EVENTS)

    def before_unload(self) -> Optional[str]:
        if self.state is SessionState.IN_PROGRESS:
            return "Your test is in progress. Answers since the last autosave may be lost."
        return None

    # ---------------------- timers ----------------------
    def time_remaining(self) -> int:
        if self.state is not SessionState.IN_PROGRESS or self._deadline is None:
            return 0
        return max(0, int(self._deadline - asyncio.get_running_loop().time()))

    def _arm(self, seconds: float) -> None:
        self._deadline = asyncio.get_running_loop().time() + max(0, seconds)
        if seconds > 0:
            self._tasks = [
                asyncio.create_task(self._countdown()),
                asyncio.create_task(self._autosave_loop()),
            ]

    async def _countdown(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            left = self._deadline - loop.time()
            if left <= 0:
                break
            await asyncio.sleep(min(self.tick, left))
        logger.info("Time is up on attempt %s", self.attempt_id)
        try:
            await self.submit(auto=True)
        except SessionError:
            logger.exception("Auto-submit of attempt %s failed", self.attempt_id)

    async def _autosave_loop(self) -> None:
        while self.state is SessionState.IN_PROGRESS:
            await asyncio.sleep(self.autosave_interval)
            await self.save_progress()

    def _cancel_timers(self) -> None:
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        self._tasks = [t for t in self._tasks if t is current]

    # ---------------------- helpers ----------------------
    def _payload_answers(self) -> List[Dict[str, Any]]:
        return [{"questionId": q, "selectedAnswer": v} for q, v in self.answers.items()]

    def _require_started(self) -> None:
        if self.attempt_id is None:
            raise SessionError("Attempt not started")

    def _require_in_progress(self) -> None:
        if self.state is not SessionState.IN_PROGRESS:
            raise SessionError(f"Attempt is {self.state.value}")
