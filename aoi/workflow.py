"""Capture workflow — step gating, operator input and completion checks.

Steps: Step1 → Step2 (only while the Step2 feature is enabled) → Step3

  Operator codes ``step1`` / ``step2`` / ``step3`` request a step change
  ``shutter`` asks the controller to fire the stations
  Step3 images trigger a completion check against the files on disk

A session is complete when its directory holds one image per camera per
applicable step: 9 files with Step2 enabled, 8 without.  Any other count
shows the "incomplete" notice and drops back to Step1 after a short grace
period so a stale count is never checked twice.

The machine itself never touches the disk or the network; the controller
feeds it file counts and carries out the shutter requests it returns.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

logger = logging.getLogger(__name__)

EXPECTED_FILES_WITH_STEP2 = 9
EXPECTED_FILES_WITHOUT_STEP2 = 8

CODE_SHUTTER = "shutter"


class Step(str, enum.Enum):
    STEP1 = "Step1"
    STEP2 = "Step2"
    STEP3 = "Step3"


class Focus(str, enum.Enum):
    OPERATOR = "operator"
    SERIAL = "serial"
    CODE = "code"


class NoticeKind(str, enum.Enum):
    STEP2_DISABLED = "step2_disabled"
    INCOMPLETE = "incomplete"
    INVALID_COMMAND = "invalid_command"
    WRITE_FAILED = "write_failed"


_STEP_CODES = {
    "step1": Step.STEP1,
    "step2": Step.STEP2,
    "step3": Step.STEP3,
}


@dataclass
class Notice:
    """A transient message for the operator."""

    kind: NoticeKind
    message: str
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message, "created_at": self.created_at}


@dataclass
class CaptureSession:
    """The single serial-number-scoped unit of work."""

    operator_id: str = ""
    serial_number: str = ""
    code: str = ""
    last_code: str = ""
    step: Step = Step.STEP1
    focus: Focus = Focus.OPERATOR
    previews: dict[Step, dict[int, bytes]] = field(
        default_factory=lambda: {step: {} for step in Step}
    )

    @property
    def serial(self) -> str:
        return self.serial_number.strip()

    def clear_previews(self) -> None:
        for images in self.previews.values():
            images.clear()


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...


class LoopScheduler:
    """Schedules callbacks on the running asyncio loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)


class WorkflowStateMachine:
    """Owns the capture session, the Step2 toggle and operator notices."""

    def __init__(
        self,
        scheduler: Optional[Scheduler] = None,
        step2_disabled_tip_seconds: float = 2.0,
        incomplete_reset_seconds: float = 2.0,
        error_tip_seconds: float = 3.0,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self.scheduler = scheduler or LoopScheduler()
        self.step2_disabled_tip_seconds = step2_disabled_tip_seconds
        self.incomplete_reset_seconds = incomplete_reset_seconds
        self.error_tip_seconds = error_tip_seconds
        self.on_change = on_change

        self.session = CaptureSession()
        self.feature_enabled = False
        self._notices: dict[NoticeKind, Notice] = {}
        self._timers: dict[NoticeKind, TimerHandle] = {}

    # ── Properties ─────────────────────────────────────────────────

    @property
    def step(self) -> Step:
        return self.session.step

    @property
    def expected_file_count(self) -> int:
        if self.feature_enabled:
            return EXPECTED_FILES_WITH_STEP2
        return EXPECTED_FILES_WITHOUT_STEP2

    @property
    def notices(self) -> list[Notice]:
        return list(self._notices.values())

    def has_notice(self, kind: NoticeKind) -> bool:
        return kind in self._notices

    # ── Step transitions ───────────────────────────────────────────

    def request_step(self, target: Step) -> bool:
        """Move to *target*. Returns False when Step2 is disabled."""
        target = Step(target)
        if target == Step.STEP2 and not self.feature_enabled:
            logger.warning("Step2 is disabled, refusing to switch")
            self._post(
                NoticeKind.STEP2_DISABLED,
                "Step2 is disabled, enable it and try again",
                self.step2_disabled_tip_seconds,
            )
            return False

        self.session.step = target
        self.session.focus = Focus.CODE
        logger.info("Workflow step → %s", target.value)
        self._changed()
        return True

    def toggle_feature(self) -> bool:
        """Flip the Step2 toggle. Always lands on Step1."""
        self.feature_enabled = not self.feature_enabled
        self.session.step = Step.STEP1
        logger.info("Step2 %s", "enabled" if self.feature_enabled else "disabled")
        self._changed()
        return self.feature_enabled

    # ── Operator input ─────────────────────────────────────────────

    def set_operator(self, operator_id: str) -> None:
        self.session.operator_id = operator_id.strip()
        self.session.focus = Focus.SERIAL
        self._changed()

    def set_serial(self, serial_number: str) -> None:
        """Scan a serial number; a different serial starts a new session."""
        serial = serial_number.strip()
        if serial != self.session.serial:
            if self.session.serial:
                logger.info("Abandoning session %s for %s", self.session.serial, serial)
            self.session.clear_previews()
            self.session.step = Step.STEP1
        self.session.serial_number = serial
        self.session.focus = Focus.CODE
        self._changed()

    def submit_code(self, code: str) -> Optional[str]:
        """Interpret a scanned command code.

        Step codes are handled here.  Returns ``"shutter"`` when the caller
        must fire the stations, ``None`` otherwise.
        """
        command = code.strip().lower()
        self.session.code = ""
        self.session.last_code = command
        action: Optional[str] = None

        if command in _STEP_CODES:
            self.request_step(_STEP_CODES[command])
        elif command == CODE_SHUTTER:
            action = CODE_SHUTTER
        else:
            logger.warning("Invalid command code: %r", command)
            self._post(
                NoticeKind.INVALID_COMMAND,
                f"Invalid command: {command}",
                self.error_tip_seconds,
            )
        self._changed()
        return action

    # ── Images ─────────────────────────────────────────────────────

    def record_preview(self, camera_id: int, step: Step, data: bytes) -> None:
        self.session.previews[Step(step)][camera_id] = data
        self._changed()

    def report_write_failure(self, camera_id: int, detail: str) -> None:
        self._post(
            NoticeKind.WRITE_FAILED,
            f"Could not save image from camera {camera_id}: {detail}",
            self.error_tip_seconds,
        )

    def on_image_persisted(self, camera_id: int, step: Step) -> bool:
        """Note a successful write. Returns True when a completion check is due.

        Step1 and Step2 images are accepted without gating.
        """
        if Step(step) != Step.STEP3:
            return False
        if not self.needs_completion_check(step):
            logger.debug("Step3 image from camera %d arrived outside Step3, no check", camera_id)
            return False
        return True

    def needs_completion_check(self, step: Step) -> bool:
        """Whether an image persisted under *step* should trigger a check."""
        if step != Step.STEP3:
            return False
        return self.session.step == Step.STEP3 and bool(self.session.serial)

    def complete_check(self, file_count: int) -> bool:
        """Apply a completion check result. Returns True if the session closed."""
        expected = self.expected_file_count
        logger.info("Step3 check for %s: %d/%d files", self.session.serial, file_count, expected)

        if file_count == expected:
            self._finish_session()
            return True

        if self.has_notice(NoticeKind.INCOMPLETE):
            # Grace period already running; its expiry stays where it is
            return False
        self._post(
            NoticeKind.INCOMPLETE,
            "Camera offline or images incomplete, check and retry",
            self.incomplete_reset_seconds,
            on_expire=self._back_to_step1,
        )
        return False

    # ── Snapshot ───────────────────────────────────────────────────

    def snapshot(self) -> dict[str, Any]:
        session = self.session
        return {
            "step": session.step.value,
            "step2_enabled": self.feature_enabled,
            "operator_id": session.operator_id,
            "serial_number": session.serial_number,
            "last_code": session.last_code,
            "focus": session.focus.value,
            "expected_files": self.expected_file_count,
            "previews": {
                step.value: {str(cam): len(data) for cam, data in sorted(images.items())}
                for step, images in session.previews.items()
            },
            "notices": [n.to_dict() for n in self.notices],
        }

    # ── Internal ───────────────────────────────────────────────────

    def _finish_session(self) -> None:
        logger.info("Session %s complete", self.session.serial)
        self._clear(NoticeKind.INCOMPLETE)
        session = self.session
        session.clear_previews()
        session.step = Step.STEP1
        session.serial_number = ""
        session.code = ""
        session.last_code = ""
        session.focus = Focus.SERIAL
        self._changed()

    def _back_to_step1(self) -> None:
        self.session.step = Step.STEP1

    def _clear(self, kind: NoticeKind) -> None:
        timer = self._timers.pop(kind, None)
        if timer is not None:
            timer.cancel()
        self._notices.pop(kind, None)

    def _post(
        self,
        kind: NoticeKind,
        message: str,
        expires_in: float,
        on_expire: Optional[Callable[[], None]] = None,
    ) -> None:
        self._clear(kind)
        self._notices[kind] = Notice(kind, message)

        def _expire() -> None:
            self._timers.pop(kind, None)
            self._notices.pop(kind, None)
            if on_expire is not None:
                on_expire()
            self._changed()

        self._timers[kind] = self.scheduler.call_later(expires_in, _expire)
        self._changed()

    def _changed(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change()
        except Exception:
            logger.exception("Workflow change listener failed")
