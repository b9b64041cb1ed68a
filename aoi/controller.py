"""AOI controller — owns all shared state and wires the pieces together.

Everything that mutates the registry, the workflow or the capture session
runs on the event loop thread and never awaits half way through a change,
so the presentation layer always sees a consistent state.  Only disk work
leaves the loop (see :mod:`aoi.storage`).

  station frame → registry (presence) / image → store (background) →
  completion check (Step3) → workflow → presenters
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol

from aoi.config import ControllerConfig
from aoi.station.discovery import ControllerAnnouncer
from aoi.station.dispatcher import CommandDispatcher
from aoi.station.protocol import (
    Command,
    Frame,
    Handshake,
    IdentityUpdate,
    ImageBody,
    ImageHeader,
)
from aoi.station.registry import CAMERA_IDS, StationRegistry
from aoi.station.server import StationConnection, StationServer
from aoi.storage import ImageStore
from aoi.workflow import CODE_SHUTTER, Scheduler, Step, WorkflowStateMachine

logger = logging.getLogger(__name__)


class Presenter(Protocol):
    def present(self, state: dict[str, Any]) -> None: ...


class LogPresenter:
    """Fallback presenter that only logs what a screen would show."""

    def present(self, state: dict[str, Any]) -> None:
        online = [cam for cam, up in state["presence"].items() if up]
        logger.debug(
            "step=%s step2=%s online=%s sn=%r notices=%s",
            state["step"], state["step2_enabled"], online,
            state["serial_number"], [n["kind"] for n in state["notices"]],
        )


class Controller:
    """Coordinates stations, images and the capture workflow."""

    def __init__(
        self,
        config: Optional[ControllerConfig] = None,
        store: Optional[ImageStore] = None,
        scheduler: Optional[Scheduler] = None,
        presenter: Optional[Presenter] = None,
    ) -> None:
        self.config = config or ControllerConfig()
        cfg = self.config

        self.registry = StationRegistry()
        self.dispatcher = CommandDispatcher(self.registry)
        self.store = store or ImageStore(cfg.image_dir)
        self.workflow = WorkflowStateMachine(
            scheduler=scheduler,
            step2_disabled_tip_seconds=cfg.step2_disabled_tip_seconds,
            incomplete_reset_seconds=cfg.incomplete_reset_seconds,
            error_tip_seconds=cfg.error_tip_seconds,
            on_change=self._present,
        )
        self.server = StationServer(self, host=cfg.host, port=cfg.port)
        self.announcer: Optional[ControllerAnnouncer] = None

        self._presenters: list[Presenter] = [presenter or LogPresenter()]
        self._writes: set[asyncio.Task] = set()
        self._check_task: Optional[asyncio.Task] = None
        self._recheck = False

        self.registry.on_presence_change(self._on_presence_change)

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        await self.server.start()
        if self.config.announce:
            self.announcer = ControllerAnnouncer(
                port=self.server.port,
                name=self.config.service_name,
                service_type=self.config.service_type,
            )
            await self.announcer.start()
        logger.info("Controller started, images under %s", self.store.base_dir)

    async def stop(self) -> None:
        if self.announcer:
            await self.announcer.stop()
            self.announcer = None
        await self.server.stop()
        if self._writes:
            await asyncio.gather(*self._writes, return_exceptions=True)
        if self._check_task:
            await asyncio.gather(self._check_task, return_exceptions=True)
        self.store.close()
        logger.info("Controller stopped")

    def add_presenter(self, presenter: Presenter) -> None:
        self._presenters.append(presenter)

    # ── Station events (called by StationServer) ───────────────────

    def on_connect(self, connection: StationConnection) -> None:
        logger.debug("Awaiting handshake from %r", connection)

    def on_frame(self, connection: StationConnection, frame: Frame) -> None:
        if isinstance(frame, Handshake):
            logger.info("HELLO from camera %d (%r)", frame.camera_id, connection)
            self.registry.on_identity_seen(connection, frame.camera_id)
        elif isinstance(frame, IdentityUpdate):
            logger.info("Camera ID update to %d (%r)", frame.camera_id, connection)
            self.registry.on_identity_seen(connection, frame.camera_id)
        elif isinstance(frame, ImageHeader):
            # A header alone is enough to count the station as online
            self.registry.on_identity_seen(connection, frame.camera_id)
        elif isinstance(frame, ImageBody):
            self._on_image(frame)
        elif isinstance(frame, Command):
            logger.warning("Ignoring command %r sent by station %r", frame.name, connection)

    def on_disconnect(self, connection: StationConnection) -> None:
        self.registry.on_disconnect(connection)

    # ── Operator actions ───────────────────────────────────────────

    def scan(
        self,
        operator_id: Optional[str] = None,
        serial_number: Optional[str] = None,
        code: Optional[str] = None,
    ) -> set[int]:
        """Apply scanner input. Returns the cameras a shutter code reached."""
        if operator_id is not None:
            self.workflow.set_operator(operator_id)
        if serial_number is not None:
            self.workflow.set_serial(serial_number)
        if code is not None and self.workflow.submit_code(code) == CODE_SHUTTER:
            return self.fire_shutter()
        return set()

    def request_step(self, step: Step) -> bool:
        return self.workflow.request_step(step)

    def toggle_feature(self) -> bool:
        return self.workflow.toggle_feature()

    def fire_shutter(self) -> set[int]:
        """Trigger the stations that belong to the current step."""
        if self.workflow.step == Step.STEP3:
            return self.dispatcher.send_shutter(CAMERA_IDS)
        return self.dispatcher.broadcast_shutter(
            self.workflow.feature_enabled, self.workflow.step,
        )

    # ── State ──────────────────────────────────────────────────────

    def state(self) -> dict[str, Any]:
        online = self.registry.presence_snapshot()
        state = self.workflow.snapshot()
        state["presence"] = {cam: cam in online for cam in CAMERA_IDS}
        state["connections"] = len(self.server.connections)
        return state

    def preview(self, step: Step, camera_id: int) -> Optional[bytes]:
        return self.workflow.session.previews[Step(step)].get(camera_id)

    # ── Images ─────────────────────────────────────────────────────

    def _on_image(self, frame: ImageBody) -> None:
        session = self.workflow.session
        # Filed under the controller's step at arrival time
        step = session.step
        serial = session.serial
        operator_id = session.operator_id

        logger.info("Image from camera %d: %d bytes (%s)", frame.camera_id, len(frame.data), step.value)
        self.workflow.record_preview(frame.camera_id, step, frame.data)

        if not serial:
            logger.warning("No serial number scanned, image from camera %d not saved", frame.camera_id)
            return

        task = asyncio.get_running_loop().create_task(
            self._persist(frame.data, frame.camera_id, step, serial, operator_id)
        )
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    async def _persist(
        self, data: bytes, camera_id: int, step: Step, serial: str, operator_id: str,
    ) -> None:
        try:
            result = await self.store.save_async(data, camera_id, step.value, serial, operator_id)
        except Exception:
            logger.exception("Image write task failed for camera %d", camera_id)
            return
        if not result.ok:
            self.workflow.report_write_failure(camera_id, result.error)
            return
        if self.workflow.on_image_persisted(camera_id, step):
            self.request_completion_check()

    # ── Completion ─────────────────────────────────────────────────

    def request_completion_check(self) -> None:
        """Start a Step3 completion check, or fold into the running one."""
        if self._check_task is not None and not self._check_task.done():
            self._recheck = True
            return
        self._check_task = asyncio.get_running_loop().create_task(self._completion_check())

    async def _completion_check(self) -> None:
        try:
            while True:
                self._recheck = False
                if not self.workflow.needs_completion_check(Step.STEP3):
                    return
                serial = self.workflow.session.serial
                count = await self.store.count_files_async(serial)

                session = self.workflow.session
                if session.serial != serial or session.step != Step.STEP3:
                    logger.info("Session moved on during completion check, ignoring count")
                    return
                if self.workflow.complete_check(count) or not self._recheck:
                    return
        except Exception:
            logger.exception("Completion check failed")
        finally:
            self._check_task = None

    # ── Presentation ───────────────────────────────────────────────

    def _on_presence_change(self, camera_id: int, online: bool) -> None:
        self._present()

    def _present(self) -> None:
        state = self.state()
        for presenter in self._presenters:
            try:
                presenter.present(state)
            except Exception:
                logger.exception("Presenter %r failed", presenter)
