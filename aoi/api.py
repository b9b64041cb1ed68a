"""Operator HTTP API — the boundary to screens and barcode scanners.

Exposes:
  GET  /health                           — liveness check
  GET  /state                            — step, presence, previews, notices
  POST /scan                             — operator ID / serial / command code
  POST /step                             — request a workflow step
  POST /feature/toggle                   — flip the Step2 toggle
  POST /shutter                          — fire the stations for this step
  GET  /previews/{step}/{camera_id}      — last received image (JPEG)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from pydantic import BaseModel

from aoi.controller import Controller
from aoi.workflow import Step

router = APIRouter()


class ScanRequest(BaseModel):
    operator_id: Optional[str] = None
    serial_number: Optional[str] = None
    code: Optional[str] = None


class StepRequest(BaseModel):
    step: Step


def _controller(request: Request) -> Controller:
    return request.app.state.controller


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/state")
async def get_state(controller: Controller = Depends(_controller)) -> dict[str, Any]:
    return controller.state()


@router.post("/scan")
async def scan(req: ScanRequest, controller: Controller = Depends(_controller)) -> dict[str, Any]:
    sent = controller.scan(
        operator_id=req.operator_id,
        serial_number=req.serial_number,
        code=req.code,
    )
    return {**controller.state(), "shutter_sent": sorted(sent)}


@router.post("/step")
async def request_step(req: StepRequest, controller: Controller = Depends(_controller)) -> dict[str, Any]:
    accepted = controller.request_step(req.step)
    return {**controller.state(), "accepted": accepted}


@router.post("/feature/toggle")
async def toggle_feature(controller: Controller = Depends(_controller)) -> dict[str, Any]:
    controller.toggle_feature()
    return controller.state()


@router.post("/shutter")
async def shutter(controller: Controller = Depends(_controller)) -> dict[str, Any]:
    return {"sent": sorted(controller.fire_shutter())}


@router.get("/previews/{step}/{camera_id}")
async def preview(step: Step, camera_id: int, controller: Controller = Depends(_controller)):
    data = controller.preview(step, camera_id)
    if data is None:
        raise HTTPException(status_code=404, detail="No image")
    return Response(content=data, media_type="image/jpeg")


def create_app(controller: Controller, manage_lifecycle: bool = False) -> FastAPI:
    """Build the API app. With *manage_lifecycle* the app starts/stops the controller."""

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        await controller.start()
        try:
            yield
        finally:
            await controller.stop()

    app = FastAPI(
        title="AOI Controller",
        version="0.1.0",
        lifespan=lifespan if manage_lifecycle else None,
    )
    app.state.controller = controller
    app.include_router(router)
    return app
