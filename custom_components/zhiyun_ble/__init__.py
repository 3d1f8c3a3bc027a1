"""Zhiyun BLE lights integration for Home Assistant."""
from __future__ import annotations

import logging

from homeassistant.config_entries import ConfigEntry
from homeassistant.const import CONF_MAC, CONF_NAME, Platform
from homeassistant.core import HomeAssistant, callback
from homeassistant.exceptions import ConfigEntryNotReady

from .const import (
    DATA_CONTROLLER,
    DATA_ENTRIES,
    DATA_TRANSPORT,
    DOMAIN,
    KNOWN_DEVICES_FILE,
)
from .controller import ZhiyunController
from .known_devices import JsonKnownDeviceStore, KnownDeviceRegistry
from .transport import BleakTransport

_LOGGER = logging.getLogger(__name__)

PLATFORMS: list[Platform] = [Platform.LIGHT]


async def _async_get_controller(
    hass: HomeAssistant,
) -> tuple[ZhiyunController, BleakTransport]:
    """Return the controller shared by all config entries, creating it if needed."""
    data = hass.data.setdefault(DOMAIN, {})
    if DATA_CONTROLLER not in data:
        store = JsonKnownDeviceStore(hass.config.path(KNOWN_DEVICES_FILE))
        device_ids = await hass.async_add_executor_job(store.load)
        # Re-check after the await; another entry may have finished first
        if DATA_CONTROLLER not in data:

            @callback
            def _async_save_known(ids: set[str]) -> None:
                hass.async_add_executor_job(store.save, ids)

            known = KnownDeviceRegistry(store, device_ids, _async_save_known)
            transport = BleakTransport()
            data[DATA_TRANSPORT] = transport
            data[DATA_CONTROLLER] = ZhiyunController(transport, known_devices=known)
            data[DATA_ENTRIES] = {}
    return data[DATA_CONTROLLER], data[DATA_TRANSPORT]


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Set up a Zhiyun light from a config entry."""
    # Imported here so the protocol engine loads without the bluetooth adapter stack
    from homeassistant.components.bluetooth import (
        BluetoothCallbackMatcher,
        BluetoothChange,
        BluetoothServiceInfoBleak,
        async_ble_device_from_address,
        async_register_callback,
    )

    address = entry.data[CONF_MAC]
    name = entry.data.get(CONF_NAME, address)
    _LOGGER.debug("Setting up Zhiyun device: %s (%s)", name, address)

    controller, transport = await _async_get_controller(hass)

    ble_device = async_ble_device_from_address(hass, address, connectable=True)
    if ble_device is None:
        raise ConfigEntryNotReady(f"Could not find Zhiyun device {name} ({address})")

    transport.update_device(ble_device)
    controller.handle_discovered(ble_device, name)
    hass.data[DOMAIN][DATA_ENTRIES][entry.entry_id] = address

    @callback
    def _async_update_ble(
        service_info: BluetoothServiceInfoBleak,
        change: BluetoothChange,
    ) -> None:
        """Handle Bluetooth advertisement updates."""
        transport.update_device(service_info.device)
        # Known devices are reconnected from here after a disconnect
        controller.handle_discovered(service_info.device, service_info.name or name)

    entry.async_on_unload(
        async_register_callback(
            hass,
            _async_update_ble,
            BluetoothCallbackMatcher(address=address),
            BluetoothChange.ADVERTISEMENT,
        )
    )

    if not controller.is_connected(address) and not await controller.connect(address):
        hass.data[DOMAIN][DATA_ENTRIES].pop(entry.entry_id, None)
        raise ConfigEntryNotReady(
            f"Could not connect to {name}: {controller.last_error}"
        )

    await hass.config_entries.async_forward_entry_setups(entry, PLATFORMS)

    return True


async def async_unload_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Unload a config entry."""
    if unload_ok := await hass.config_entries.async_unload_platforms(entry, PLATFORMS):
        data = hass.data[DOMAIN]
        address = data[DATA_ENTRIES].pop(entry.entry_id)
        controller: ZhiyunController = data[DATA_CONTROLLER]
        await controller.disconnect(address)
        if not data[DATA_ENTRIES]:
            _LOGGER.debug("Last Zhiyun entry unloaded, stopping controller")
            await controller.stop()
            hass.data.pop(DOMAIN)

    return unload_ok
