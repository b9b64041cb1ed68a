"""Tests for the camera station agent.

Tests the components that can run without camera hardware:
config, capture backends, the controller client and the agent loop.
"""

from __future__ import annotations

import asyncio
import json
from datetime import date

import pytest

from conftest import FakeScheduler, wait_for

# ── Config tests ──────────────────────────────────────────────────


class TestStationConfig:
    def test_defaults(self):
        from station.aoi_station.config import StationConfig

        cfg = StationConfig()
        assert cfg.camera_id == 1
        assert cfg.controller_port == 8080
        assert cfg.service_type == "_maccontrol._tcp.local."
        assert cfg.camera_type == "command"
        assert cfg.capture_command[0] == "libcamera-still"
        assert cfg.uses_discovery is True

    def test_static_host_skips_discovery(self):
        from station.aoi_station.config import StationConfig

        assert StationConfig(controller_host="10.0.0.5").uses_discovery is False

    def test_load_save(self, tmp_path):
        from station.aoi_station.config import StationConfig

        path = tmp_path / "config.json"
        StationConfig(camera_id=3, controller_host="10.0.0.5").save(path)

        loaded = StationConfig.load(path)
        assert loaded.camera_id == 3
        assert loaded.controller_host == "10.0.0.5"

    def test_load_missing_file(self, tmp_path):
        from station.aoi_station.config import StationConfig

        assert StationConfig.load(tmp_path / "nonexistent.json").camera_id == 1

    def test_load_ignores_unknown_keys(self, tmp_path):
        from station.aoi_station.config import StationConfig

        path = tmp_path / "config.json"
        path.write_text(json.dumps({"camera_id": 4, "lens": "macro"}))
        cfg = StationConfig.load(path)
        assert cfg.camera_id == 4
        assert not hasattr(cfg, "lens")


# ── Camera tests ──────────────────────────────────────────────────


class TestCameras:
    @pytest.mark.asyncio
    async def test_command_camera_returns_stdout(self):
        from station.aoi_station.camera import CommandCamera

        cam = CommandCamera(["sh", "-c", "printf 'JPEG'"])
        assert await cam.capture() == b"JPEG"

    @pytest.mark.asyncio
    async def test_command_camera_nonzero_exit(self):
        from station.aoi_station.camera import CaptureError, CommandCamera

        cam = CommandCamera(["sh", "-c", "echo broken >&2; exit 3"])
        with pytest.raises(CaptureError, match="exited with 3"):
            await cam.capture()

    @pytest.mark.asyncio
    async def test_command_camera_empty_output(self):
        from station.aoi_station.camera import CaptureError, CommandCamera

        with pytest.raises(CaptureError, match="no image"):
            await CommandCamera(["true"]).capture()

    @pytest.mark.asyncio
    async def test_command_camera_missing_binary(self):
        from station.aoi_station.camera import CaptureError, CommandCamera

        with pytest.raises(CaptureError, match="cannot run"):
            await CommandCamera(["definitely-not-a-camera-tool"]).capture()

    @pytest.mark.asyncio
    async def test_command_camera_timeout(self):
        from station.aoi_station.camera import CaptureError, CommandCamera

        with pytest.raises(CaptureError, match="timed out"):
            await CommandCamera(["sleep", "5"], timeout=0.2).capture()

    def test_command_camera_requires_command(self):
        from station.aoi_station.camera import CommandCamera

        with pytest.raises(ValueError):
            CommandCamera([])

    @pytest.mark.asyncio
    async def test_file_camera(self, tmp_path):
        from station.aoi_station.camera import FileCamera

        path = tmp_path / "still.jpg"
        path.write_bytes(b"\xff\xd8still")
        assert await FileCamera(path).capture() == b"\xff\xd8still"

    @pytest.mark.asyncio
    async def test_file_camera_missing(self, tmp_path):
        from station.aoi_station.camera import CaptureError, FileCamera

        with pytest.raises(CaptureError):
            await FileCamera(tmp_path / "missing.jpg").capture()

    def test_factory(self, tmp_path):
        from station.aoi_station.camera import CommandCamera, FileCamera, create_camera

        assert isinstance(create_camera("file", path=str(tmp_path / "a.jpg")), FileCamera)
        assert isinstance(create_camera("command", command=["true"]), CommandCamera)
        assert isinstance(create_camera("webcam", command=["true"]), CommandCamera)


# ── Client tests ──────────────────────────────────────────────────


class TestStationClient:
    @pytest.mark.asyncio
    async def test_connect_refused(self):
        from station.aoi_station.client import StationClient, StationConnectionError

        server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        client = StationClient("127.0.0.1", port, camera_id=1, connect_timeout=2)
        with pytest.raises(StationConnectionError):
            await client.connect()
        assert client.connected is False

    @pytest.mark.asyncio
    async def test_handshake_commands_and_image(self):
        from station.aoi_station.client import StationClient

        received = bytearray()
        done = asyncio.Event()

        async def fake_controller(reader, writer):
            received.extend(await reader.readline())
            writer.write(b"garbage\nshutter\n")
            await writer.drain()
            received.extend(await reader.readexactly(len(b"IMAGE;2;3\nabc")))
            writer.close()
            done.set()

        server = await asyncio.start_server(fake_controller, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        client = StationClient("127.0.0.1", port, camera_id=2)
        commands = []

        async def on_command(name):
            commands.append(name)
            await client.send_image(b"abc")

        try:
            await client.connect()
            await asyncio.wait_for(client.listen(on_command), timeout=3)
            await asyncio.wait_for(done.wait(), timeout=3)
        finally:
            await client.disconnect()
            server.close()
            await server.wait_closed()

        assert commands == ["shutter"]
        assert bytes(received) == b"HELLO;2\nIMAGE;2;3\nabc"
        assert client.connected is False

    @pytest.mark.asyncio
    async def test_send_when_disconnected(self):
        from station.aoi_station.client import StationClient, StationConnectionError

        client = StationClient("127.0.0.1", 1, camera_id=1)
        with pytest.raises(StationConnectionError):
            await client.send_image(b"x")


# ── Agent tests ───────────────────────────────────────────────────


class FakeClient:
    def __init__(self):
        self.connected = True
        self.camera_id = 1
        self.images = []
        self.camera_ids = []

    async def send_image(self, data):
        self.images.append(data)

    async def send_camera_id(self, camera_id):
        self.camera_id = camera_id
        self.camera_ids.append(camera_id)


class GatedCamera:
    """Camera whose capture blocks until released."""

    def __init__(self, data=b"img"):
        self.data = data
        self.release = asyncio.Event()
        self.calls = 0
        self.closed = False

    async def capture(self):
        self.calls += 1
        await self.release.wait()
        return self.data

    def close(self):
        self.closed = True


class FailingCamera(GatedCamera):
    async def capture(self):
        from station.aoi_station.camera import CaptureError

        raise CaptureError("sensor unplugged")


class FakeDiscovery:
    def __init__(self, result):
        self.result = result
        self.calls = 0

    async def resolve(self, timeout=30.0):
        self.calls += 1
        return self.result


class TestStationAgent:
    @pytest.mark.asyncio
    async def test_capture_sends_image(self):
        from station.aoi_station.agent import State, StationAgent
        from station.aoi_station.config import StationConfig

        camera = GatedCamera()
        agent = StationAgent(StationConfig(), camera=camera)
        agent.client = FakeClient()

        assert agent.request_capture() is True
        camera.release.set()
        await agent._capture_task
        assert agent.client.images == [b"img"]
        assert agent.state == State.IDLE

    @pytest.mark.asyncio
    async def test_shutter_while_capturing_is_ignored(self):
        from station.aoi_station.agent import State, StationAgent
        from station.aoi_station.config import StationConfig

        camera = GatedCamera()
        agent = StationAgent(StationConfig(), camera=camera)
        agent.client = FakeClient()

        await agent._on_command("shutter")
        await asyncio.sleep(0)
        assert agent.state == State.CAPTURING
        assert agent.request_capture() is False

        camera.release.set()
        await agent._capture_task
        assert camera.calls == 1
        assert agent.client.images == [b"img"]

    @pytest.mark.asyncio
    async def test_capture_without_connection(self):
        from station.aoi_station.agent import StationAgent
        from station.aoi_station.config import StationConfig

        agent = StationAgent(StationConfig(), camera=GatedCamera())
        assert agent.request_capture() is False

    @pytest.mark.asyncio
    async def test_capture_failure_sends_nothing(self):
        from station.aoi_station.agent import State, StationAgent
        from station.aoi_station.config import StationConfig

        agent = StationAgent(StationConfig(), camera=FailingCamera())
        agent.client = FakeClient()
        agent.request_capture()
        await agent._capture_task
        assert agent.client.images == []
        assert agent.state == State.IDLE

    @pytest.mark.asyncio
    async def test_resolve_static_and_discovered(self):
        from station.aoi_station.agent import StationAgent
        from station.aoi_station.config import StationConfig

        static = StationAgent(
            StationConfig(controller_host="10.0.0.5", controller_port=9000),
            camera=GatedCamera(),
            discovery=FakeDiscovery(None),
        )
        assert await static.resolve() == ("10.0.0.5", 9000)
        assert static.discovery.calls == 0

        found = StationAgent(
            StationConfig(), camera=GatedCamera(), discovery=FakeDiscovery(("10.0.0.9", 8080)),
        )
        assert await found.resolve() == ("10.0.0.9", 8080)

    @pytest.mark.asyncio
    async def test_unresolved_controller_stays_disconnected(self):
        from station.aoi_station.agent import State, StationAgent
        from station.aoi_station.config import StationConfig

        agent = StationAgent(StationConfig(), camera=GatedCamera(), discovery=FakeDiscovery(None))
        await agent._run_connection()
        assert agent.state == State.DISCONNECTED
        assert agent.client is None

    @pytest.mark.asyncio
    async def test_set_camera_id_persists_and_notifies(self, tmp_path):
        from station.aoi_station.agent import StationAgent
        from station.aoi_station.config import StationConfig

        path = tmp_path / "config.json"
        agent = StationAgent(StationConfig(), camera=GatedCamera(), config_path=path)
        agent.client = FakeClient()

        await agent.set_camera_id(3)
        assert agent.config.camera_id == 3
        assert agent.client.camera_ids == [3]
        assert StationConfig.load(path).camera_id == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("camera_id", [0, 5, -1])
    async def test_set_camera_id_rejects_out_of_range(self, camera_id):
        from station.aoi_station.agent import StationAgent
        from station.aoi_station.config import StationConfig

        agent = StationAgent(StationConfig(), camera=GatedCamera())
        with pytest.raises(ValueError):
            await agent.set_camera_id(camera_id)
        assert agent.config.camera_id == 1

    @pytest.mark.asyncio
    async def test_stop_closes_camera(self):
        from station.aoi_station.agent import StationAgent
        from station.aoi_station.config import StationConfig

        camera = GatedCamera()
        agent = StationAgent(StationConfig(), camera=camera)
        await agent.stop()
        assert camera.closed is True


# ── Agent ↔ controller ────────────────────────────────────────────


class TestAgentWithController:
    @pytest.mark.asyncio
    async def test_shutter_round_trip(self, tmp_path):
        from aoi.config import ControllerConfig
        from aoi.controller import Controller
        from station.aoi_station.agent import StationAgent
        from station.aoi_station.camera import FileCamera
        from station.aoi_station.config import StationConfig

        still = tmp_path / "still.jpg"
        still.write_bytes(b"\xff\xd8station")
        images = tmp_path / "images"
        controller = Controller(
            ControllerConfig(host="127.0.0.1", port=0, announce=False, base_dir=str(images)),
            scheduler=FakeScheduler(),
        )
        await controller.start()

        config_path = tmp_path / "station.json"
        agent = StationAgent(
            StationConfig(
                camera_id=2,
                controller_host="127.0.0.1",
                controller_port=controller.server.port,
                reconnect_delay=0.1,
            ),
            camera=FileCamera(still),
            config_path=config_path,
        )
        task = asyncio.create_task(agent.start())
        try:
            await wait_for(lambda: controller.registry.is_online(2))

            controller.scan(operator_id="op", serial_number="SN42")
            assert controller.fire_shutter() == {2}
            saved = images / date.today().strftime("%Y%m%d") / "SN42" / "Step1_2_op.jpg"
            await wait_for(saved.exists)
            assert saved.read_bytes() == b"\xff\xd8station"

            await agent.set_camera_id(3)
            await wait_for(lambda: controller.registry.is_online(3))
            assert not controller.registry.is_online(2)
            assert StationConfig.load(config_path).camera_id == 3
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            await controller.stop()

    @pytest.mark.asyncio
    async def test_reconnect_after_controller_drops(self, tmp_path):
        from aoi.config import ControllerConfig
        from aoi.controller import Controller
        from station.aoi_station.agent import StationAgent
        from station.aoi_station.config import StationConfig

        controller = Controller(
            ControllerConfig(host="127.0.0.1", port=0, announce=False, base_dir=str(tmp_path)),
            scheduler=FakeScheduler(),
        )
        await controller.start()
        agent = StationAgent(
            StationConfig(
                camera_id=1,
                controller_host="127.0.0.1",
                controller_port=controller.server.port,
                reconnect_delay=0.1,
            ),
            camera=GatedCamera(),
        )
        task = asyncio.create_task(agent.start())
        try:
            await wait_for(lambda: controller.registry.is_online(1))
            first = controller.server.connections[0]

            first.close()
            await wait_for(lambda: not controller.registry.is_online(1))
            await wait_for(lambda: controller.registry.is_online(1))
            assert controller.server.connections[0] is not first
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            await controller.stop()

    @pytest.mark.asyncio
    async def test_manual_reconnect_redials_immediately(self, tmp_path):
        from aoi.config import ControllerConfig
        from aoi.controller import Controller
        from station.aoi_station.agent import StationAgent
        from station.aoi_station.config import StationConfig

        controller = Controller(
            ControllerConfig(host="127.0.0.1", port=0, announce=False, base_dir=str(tmp_path)),
            scheduler=FakeScheduler(),
        )
        await controller.start()
        agent = StationAgent(
            StationConfig(
                camera_id=3,
                controller_host="127.0.0.1",
                controller_port=controller.server.port,
                reconnect_delay=30,
            ),
            camera=GatedCamera(),
        )
        resolves = []
        original_resolve = agent.resolve

        async def counting_resolve():
            resolves.append(1)
            return await original_resolve()

        agent.resolve = counting_resolve
        task = asyncio.create_task(agent.start())
        try:
            await wait_for(lambda: controller.registry.is_online(3) and agent.client is not None)
            first = controller.server.connections[0]
            old_client = agent.client

            agent.reconnect()
            await wait_for(
                lambda: first not in controller.server.connections
                and len(controller.server.connections) == 1
                and controller.registry.is_online(3)
                and agent.client not in (None, old_client)
            )
            assert len(resolves) == 2
            assert not task.done()
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            await controller.stop()
