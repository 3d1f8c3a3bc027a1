"""Test the ZhiyunController connection lifecycle and command fan-out."""
import asyncio
import struct
from unittest.mock import MagicMock

import pytest

from custom_components.zhiyun_ble import protocol
from custom_components.zhiyun_ble.const import Command, ConnectionState
from custom_components.zhiyun_ble.controller import ZhiyunController
from custom_components.zhiyun_ble.known_devices import (
    KnownDeviceRegistry,
    KnownDeviceStore,
    MemoryKnownDeviceStore,
)

from .conftest import (
    DEBOUNCE,
    INIT_START,
    INIT_STEP,
    SETTLE,
    FakePeripheral,
    command_of,
    payload_of,
)

INIT_DONE = INIT_START + INIT_STEP * len(protocol.INIT_QUERIES) + 0.05
FLUSH = DEBOUNCE + SETTLE * 3


def make_controller(transport, store=None, **kwargs) -> ZhiyunController:
    options = {
        "debounce_delay": DEBOUNCE,
        "settle_delay": SETTLE,
        "init_start_delay": INIT_START,
        "init_step_delay": INIT_STEP,
    }
    options.update(kwargs)
    return ZhiyunController(transport, store or MemoryKnownDeviceStore(), **options)


async def connect_ready(controller, peripheral) -> None:
    controller.handle_discovered(peripheral)
    assert await controller.connect(peripheral.address)
    await asyncio.sleep(INIT_DONE)
    assert controller.is_ready(peripheral.address)


class TestDiscovery:
    """Tests for scanning and discovery."""

    @pytest.mark.asyncio
    async def test_supported_device_is_discovered(self, fake_transport, light_a):
        controller = make_controller(fake_transport)
        assert await controller.start_scanning()
        assert controller.is_scanning

        fake_transport.advertise(light_a)

        assert controller.discovered_devices == [light_a.address]
        assert controller.device_name(light_a.address) == "PL105_0001"
        assert controller.connection_state(light_a.address) == ConnectionState.DISCOVERED

    @pytest.mark.asyncio
    async def test_unsupported_device_is_ignored(self, fake_transport):
        controller = make_controller(fake_transport)

        assert not controller.handle_discovered(FakePeripheral("11:22:33:44:55:66", "LEDnetWF07"))
        assert not controller.handle_discovered(FakePeripheral("11:22:33:44:55:67", None))
        assert controller.discovered_devices == []

    @pytest.mark.asyncio
    async def test_radio_unavailable(self, fake_transport):
        controller = make_controller(fake_transport)
        fake_transport.radio_available = False

        assert not await controller.start_scanning()
        assert not controller.is_scanning
        assert controller.last_error == "Bluetooth is powered off"

        fake_transport.radio_available = True
        await controller.handle_radio_state(True)
        assert controller.is_scanning

    @pytest.mark.asyncio
    async def test_radio_lost(self, fake_transport):
        controller = make_controller(fake_transport)
        await controller.start_scanning()

        await controller.handle_radio_state(False)

        assert not controller.is_scanning
        assert controller.last_error == "Bluetooth is not available"

    @pytest.mark.asyncio
    async def test_stop_scanning(self, fake_transport):
        controller = make_controller(fake_transport)
        await controller.start_scanning()
        await controller.stop_scanning()

        assert not controller.is_scanning
        assert not fake_transport.scanning


class TestConnectionLifecycle:
    """Tests for connect, initialization and teardown."""

    @pytest.mark.asyncio
    async def test_connect_reaches_ready(self, fake_transport, light_a):
        controller = make_controller(fake_transport)
        controller.handle_discovered(light_a)

        assert await controller.connect(light_a.address)
        assert controller.connection_state(light_a.address) == ConnectionState.INITIALIZING
        assert controller.connected_devices == [light_a.address]
        assert controller.selected_device_id == light_a.address
        assert controller.is_known(light_a.address)

        await asyncio.sleep(INIT_DONE)

        assert controller.connection_state(light_a.address) == ConnectionState.READY
        state = controller.device_state(light_a.address)
        assert state.model_code == "PL105"
        assert state.model_name == "MOLUS X100"

    @pytest.mark.asyncio
    async def test_initialization_queries_in_order(self, fake_transport, light_a):
        controller = make_controller(fake_transport)
        await connect_ready(controller, light_a)

        frames = fake_transport.frames_for(light_a.address)
        assert [(command_of(f), payload_of(f)) for f in frames] == [
            (int(command), payload) for command, payload in protocol.INIT_QUERIES
        ]

        times = [w.time for w in fake_transport.writes]
        gaps = [later - earlier for earlier, later in zip(times, times[1:])]
        assert all(gap >= INIT_STEP - 0.005 for gap in gaps)

    @pytest.mark.asyncio
    async def test_concurrent_connects_share_one_attempt(self, fake_transport, light_a):
        controller = make_controller(fake_transport)
        controller.handle_discovered(light_a)

        results = await asyncio.gather(
            controller.connect(light_a.address), controller.connect(light_a.address)
        )

        assert results == [True, True]
        assert fake_transport.connect_calls == [light_a.address]

    @pytest.mark.asyncio
    async def test_connect_undiscovered_device(self, fake_transport):
        controller = make_controller(fake_transport)

        assert not await controller.connect("AA:BB:CC:DD:EE:99")
        assert controller.last_error == "Unknown device AA:BB:CC:DD:EE:99"
        assert fake_transport.connect_calls == []

    @pytest.mark.asyncio
    async def test_connect_failure(self, fake_transport, light_a):
        controller = make_controller(fake_transport)
        controller.handle_discovered(light_a)
        fake_transport.connect_error = "Device not found"

        assert not await controller.connect(light_a.address)

        assert controller.last_error == "Device not found"
        assert controller.connected_devices == []
        assert controller.connection_state(light_a.address) == ConnectionState.DISCONNECTED
        assert not controller.is_known(light_a.address)

    @pytest.mark.asyncio
    async def test_missing_service_tears_down(self, fake_transport):
        peripheral = FakePeripheral("AA:BB:CC:DD:EE:05", "PL109_0005", services=[])
        controller = make_controller(fake_transport)
        controller.handle_discovered(peripheral)

        assert not await controller.connect(peripheral.address)

        assert controller.connected_devices == []
        assert peripheral.address not in fake_transport.connected
        assert controller.connection_state(peripheral.address) == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_missing_characteristic_tears_down(self, fake_transport):
        peripheral = FakePeripheral(
            "AA:BB:CC:DD:EE:06", "PL109_0006", characteristics=[]
        )
        controller = make_controller(fake_transport)
        controller.handle_discovered(peripheral)

        assert not await controller.connect(peripheral.address)
        assert controller.connected_devices == []
        assert controller.last_error == "Control characteristics not found"

    @pytest.mark.asyncio
    async def test_disconnect_during_initialization_stops_queries(self, fake_transport, light_a):
        controller = make_controller(fake_transport, init_step_delay=0.05)
        controller.handle_discovered(light_a)
        await controller.connect(light_a.address)

        await asyncio.sleep(INIT_START + 0.075)
        fake_transport.drop(light_a.address)
        sent = len(fake_transport.writes)
        await asyncio.sleep(0.05 * len(protocol.INIT_QUERIES))

        assert 0 < sent < len(protocol.INIT_QUERIES)
        assert len(fake_transport.writes) == sent
        assert controller.connection_state(light_a.address) == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_drop_cleans_up_and_promotes_selection(self, fake_transport, light_a, light_b):
        controller = make_controller(fake_transport)
        await connect_ready(controller, light_a)
        await connect_ready(controller, light_b)
        assert controller.select_device(light_b.address)

        fake_transport.drop(light_b.address)

        assert controller.connected_devices == [light_a.address]
        assert controller.selected_device_id == light_a.address
        assert controller.device_state(light_b.address) is None
        assert controller.last_error == "Device unexpectedly disconnected"

    @pytest.mark.asyncio
    async def test_drop_cancels_pending_commands(self, fake_transport, light_a):
        controller = make_controller(fake_transport)
        await connect_ready(controller, light_a)
        before = len(fake_transport.writes)

        controller.set_brightness(80)
        fake_transport.drop(light_a.address)
        await asyncio.sleep(FLUSH)

        assert len(fake_transport.writes) == before

    @pytest.mark.asyncio
    async def test_disconnect_request(self, fake_transport, light_a):
        controller = make_controller(fake_transport)
        await connect_ready(controller, light_a)

        await controller.disconnect(light_a.address)

        assert light_a.address not in fake_transport.connected
        assert controller.connected_devices == []
        assert controller.selected_device_id is None
        assert controller.last_error is None

    @pytest.mark.asyncio
    async def test_stop_disconnects_everything(self, fake_transport, light_a, light_b):
        controller = make_controller(fake_transport)
        await connect_ready(controller, light_a)
        await connect_ready(controller, light_b)

        await controller.stop()

        assert controller.connected_devices == []
        assert fake_transport.connected == set()


class TestAutoConnect:
    """Tests for reconnecting known devices."""

    @pytest.mark.asyncio
    async def test_known_device_connects_when_seen(self, fake_transport, light_a):
        controller = make_controller(fake_transport, MemoryKnownDeviceStore({light_a.address}))
        await controller.start_scanning()

        fake_transport.advertise(light_a)
        await asyncio.sleep(INIT_DONE)

        assert controller.is_ready(light_a.address)

    @pytest.mark.asyncio
    async def test_unknown_device_is_not_connected(self, fake_transport, light_a):
        controller = make_controller(fake_transport)
        await controller.start_scanning()

        fake_transport.advertise(light_a)
        await asyncio.sleep(INIT_DONE)

        assert fake_transport.connect_calls == []

    @pytest.mark.asyncio
    async def test_auto_connect_disabled(self, fake_transport, light_a):
        controller = make_controller(
            fake_transport, MemoryKnownDeviceStore({light_a.address}), auto_connect=False
        )
        await controller.start_scanning()

        fake_transport.advertise(light_a)
        await asyncio.sleep(INIT_DONE)

        assert fake_transport.connect_calls == []

    @pytest.mark.asyncio
    async def test_repeated_advertisements_connect_once(self, fake_transport, light_a):
        controller = make_controller(fake_transport, MemoryKnownDeviceStore({light_a.address}))
        await controller.start_scanning()

        for _ in range(3):
            fake_transport.advertise(light_a)
        await asyncio.sleep(INIT_DONE)
        fake_transport.advertise(light_a)

        assert fake_transport.connect_calls == [light_a.address]

    @pytest.mark.asyncio
    async def test_reconnects_after_drop(self, fake_transport, light_a):
        controller = make_controller(fake_transport)
        await controller.start_scanning()
        await connect_ready(controller, light_a)

        fake_transport.drop(light_a.address)
        fake_transport.advertise(light_a)
        await asyncio.sleep(INIT_DONE)

        assert controller.is_ready(light_a.address)
        assert len(fake_transport.connect_calls) == 2

    @pytest.mark.asyncio
    async def test_forget_all_devices(self, fake_transport, light_a):
        store = MemoryKnownDeviceStore({light_a.address})
        controller = make_controller(fake_transport, store)

        controller.forget_all_devices()

        assert controller.known_devices == frozenset()
        assert store.load() == set()

    @pytest.mark.asyncio
    async def test_prebuilt_known_registry_saves_through_saver(self, fake_transport, light_a):
        store = MagicMock(spec=KnownDeviceStore)
        saver = MagicMock()
        known = KnownDeviceRegistry(store, {"AA:BB:CC:DD:EE:09"}, saver)
        controller = make_controller(fake_transport, known_devices=known)

        await connect_ready(controller, light_a)

        saver.assert_called_once_with({"AA:BB:CC:DD:EE:09", light_a.address})
        store.load.assert_not_called()
        store.save.assert_not_called()
        assert controller.is_known(light_a.address)


class TestCommands:
    """Tests for command fan-out across devices."""

    @pytest.mark.asyncio
    async def test_untargeted_command_goes_to_selected(self, fake_transport, light_a, light_b):
        controller = make_controller(fake_transport)
        await connect_ready(controller, light_a)
        await connect_ready(controller, light_b)
        fake_transport.writes.clear()

        assert controller.turn_off() == [light_a.address]
        await asyncio.sleep(0)

        assert fake_transport.frames_for(light_b.address) == []
        assert len(fake_transport.frames_for(light_a.address)) == 1

    @pytest.mark.asyncio
    async def test_all_devices_each_get_their_own_frame(self, fake_transport, light_a, light_b):
        controller = make_controller(fake_transport)
        await connect_ready(controller, light_a)
        await connect_ready(controller, light_b)
        fake_transport.writes.clear()

        targets = controller.set_color_temperature(3200, all_devices=True)
        await asyncio.sleep(FLUSH)

        assert targets == [light_a.address, light_b.address]
        for address in targets:
            frames = fake_transport.frames_for(address)
            assert len(frames) == 1
            assert command_of(frames[0]) == Command.SET_COLOR_TEMPERATURE
            # Every device numbers its own frames
            assert frames[0][6:8] == len(protocol.INIT_QUERIES).to_bytes(2, "little")

    @pytest.mark.asyncio
    async def test_explicit_device(self, fake_transport, light_a, light_b):
        controller = make_controller(fake_transport)
        await connect_ready(controller, light_a)
        await connect_ready(controller, light_b)
        fake_transport.writes.clear()

        assert controller.set_brightness(0, device_id=light_b.address) == [light_b.address]
        await asyncio.sleep(FLUSH)

        assert fake_transport.frames_for(light_a.address) == []
        frames = fake_transport.frames_for(light_b.address)
        assert [payload_of(f) for f in frames] == [protocol.power_payload(False)]

    @pytest.mark.asyncio
    async def test_debounce_timers_are_per_device(self, fake_transport, light_a, light_b):
        controller = make_controller(fake_transport)
        await connect_ready(controller, light_a)
        await connect_ready(controller, light_b)
        power_on = protocol.encode(Command.POWER_STATE, b"\x03\x80\x01", 0)
        for address in (light_a.address, light_b.address):
            fake_transport.notify(address, power_on)
        fake_transport.writes.clear()
        loop = asyncio.get_running_loop()

        a_requested = loop.time()
        controller.set_brightness(10, device_id=light_a.address)
        await asyncio.sleep(DEBOUNCE * 0.75)
        b_requested = loop.time()
        controller.set_brightness(20, device_id=light_b.address)
        await asyncio.sleep(FLUSH)

        a_writes = [w for w in fake_transport.writes if w.address == light_a.address]
        b_writes = [w for w in fake_transport.writes if w.address == light_b.address]
        assert len(a_writes) == 1
        assert len(b_writes) == 1
        assert struct.unpack_from("<f", payload_of(a_writes[0].data), 3)[0] == 10.0
        assert struct.unpack_from("<f", payload_of(b_writes[0].data), 3)[0] == 20.0
        # B's request must not push A's flush back
        assert a_writes[0].time - a_requested < DEBOUNCE + 0.01
        assert b_writes[0].time - b_requested >= DEBOUNCE - 0.005
        assert a_writes[0].time < b_writes[0].time

    @pytest.mark.asyncio
    async def test_unconnected_device_is_a_no_op(self, fake_transport, light_a):
        controller = make_controller(fake_transport)
        await connect_ready(controller, light_a)
        fake_transport.writes.clear()

        assert controller.set_brightness(40, device_id="AA:BB:CC:DD:EE:99") == []
        assert controller.turn_on(device_id="AA:BB:CC:DD:EE:99") == []
        await asyncio.sleep(FLUSH)

        assert fake_transport.writes == []

    @pytest.mark.asyncio
    async def test_no_devices(self, fake_transport):
        controller = make_controller(fake_transport)
        assert controller.set_brightness(40) == []
        assert controller.turn_off(all_devices=True) == []
        assert controller.device_state() is None

    @pytest.mark.asyncio
    async def test_brightness_while_off_wakes_light(self, fake_transport, light_a):
        controller = make_controller(fake_transport)
        await connect_ready(controller, light_a)
        fake_transport.writes.clear()

        controller.set_brightness(60)
        await asyncio.sleep(FLUSH)

        frames = fake_transport.frames_for(light_a.address)
        assert [command_of(f) for f in frames] == [Command.POWER_STATE, Command.SET_BRIGHTNESS]
        assert payload_of(frames[0]) == protocol.power_payload(True)
        assert fake_transport.writes[1].time - fake_transport.writes[0].time >= SETTLE - 0.005

    @pytest.mark.asyncio
    async def test_query_firmware_version(self, fake_transport, light_a):
        controller = make_controller(fake_transport)
        await connect_ready(controller, light_a)
        fake_transport.writes.clear()

        controller.query_firmware_version()
        await asyncio.sleep(0)

        frames = fake_transport.frames_for(light_a.address)
        assert [command_of(f) for f in frames] == [Command.FIRMWARE_VERSION]


class TestNotifications:
    """Tests for response handling through the controller."""

    @pytest.mark.asyncio
    async def test_response_updates_only_that_device(self, fake_transport, light_a, light_b):
        controller = make_controller(fake_transport)
        await connect_ready(controller, light_a)
        await connect_ready(controller, light_b)

        payload = b"\x03\x80\x01" + struct.pack("<H", 3200)
        fake_transport.notify(
            light_b.address, protocol.encode(Command.SET_COLOR_TEMPERATURE, payload, 0)
        )

        assert controller.device_state(light_b.address).color_temperature == 3200
        assert controller.device_state(light_a.address).color_temperature == 5600

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "data",
        [b"\x24", b"\xff" * 12, protocol.encode(0x4242, b"\x01\x02", 0)],
    )
    async def test_bad_notifications_do_not_raise(self, fake_transport, light_a, data):
        controller = make_controller(fake_transport)
        await connect_ready(controller, light_a)
        before = controller.device_state(light_a.address)

        fake_transport.notify(light_a.address, data)

        assert controller.device_state(light_a.address) == before
        assert controller.is_ready(light_a.address)

    @pytest.mark.asyncio
    async def test_notification_after_drop_is_ignored(self, fake_transport, light_a):
        controller = make_controller(fake_transport)
        await connect_ready(controller, light_a)
        fake_transport.drop(light_a.address)

        fake_transport.notify(light_a.address, protocol.build_brightness_command(10.0, 0))

        assert controller.device_state(light_a.address) is None

    @pytest.mark.asyncio
    async def test_device_state_is_a_copy(self, fake_transport, light_a):
        controller = make_controller(fake_transport)
        await connect_ready(controller, light_a)

        state = controller.device_state(light_a.address)
        state.brightness = 99.0

        assert controller.device_state(light_a.address).brightness == 0.0
        assert controller.device_states[light_a.address].brightness == 0.0


class TestCallbacks:
    """Tests for state change listeners."""

    @pytest.mark.asyncio
    async def test_listener_called_and_removed(self, fake_transport, light_a):
        controller = make_controller(fake_transport)
        listener = MagicMock()
        controller.register_callback(listener)

        controller.handle_discovered(light_a)
        assert listener.call_count == 1

        controller.unregister_callback(listener)
        controller.handle_discovered(FakePeripheral("AA:BB:CC:DD:EE:07", "PL107_0007"))
        assert listener.call_count == 1

    @pytest.mark.asyncio
    async def test_failing_listener_is_isolated(self, fake_transport, light_a):
        controller = make_controller(fake_transport)
        broken = MagicMock(side_effect=RuntimeError("boom"))
        listener = MagicMock()
        controller.register_callback(broken)
        controller.register_callback(listener)

        controller.handle_discovered(light_a)

        listener.assert_called_once()
