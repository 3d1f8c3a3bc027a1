"""Light platform for the Zhiyun BLE integration."""
from __future__ import annotations

import logging
from typing import Any

from homeassistant.components.light import (
    ATTR_BRIGHTNESS,
    ATTR_COLOR_TEMP_KELVIN,
    ColorMode,
    LightEntity,
)
from homeassistant.config_entries import ConfigEntry
from homeassistant.const import CONF_MAC, CONF_NAME
from homeassistant.core import HomeAssistant, callback
from homeassistant.helpers.device_registry import DeviceInfo
from homeassistant.helpers.entity_platform import AddEntitiesCallback

from .const import DATA_CONTROLLER, DOMAIN, MANUFACTURER, MAX_BRIGHTNESS, MAX_KELVIN, MIN_KELVIN
from .controller import ZhiyunController

_LOGGER = logging.getLogger(__name__)


def brightness_to_percent(value: int) -> float:
    """Convert Home Assistant brightness (0-255) to device percent (0-100)."""
    return round(value * MAX_BRIGHTNESS / 255, 1)


def percent_to_brightness(value: float) -> int:
    """Convert device percent (0-100) to Home Assistant brightness (0-255)."""
    return round(value * 255 / MAX_BRIGHTNESS)


async def async_setup_entry(
    hass: HomeAssistant,
    entry: ConfigEntry,
    async_add_entities: AddEntitiesCallback,
) -> None:
    """Set up the light platform."""
    controller: ZhiyunController = hass.data[DOMAIN][DATA_CONTROLLER]

    async_add_entities(
        [ZhiyunLight(controller, entry.data[CONF_MAC], entry.data.get(CONF_NAME))]
    )


class ZhiyunLight(LightEntity):
    """Representation of a Zhiyun bi-color light."""

    _attr_has_entity_name = True
    _attr_name = None  # Use device name
    _attr_color_mode = ColorMode.COLOR_TEMP
    _attr_supported_color_modes = {ColorMode.COLOR_TEMP}
    _attr_min_color_temp_kelvin = MIN_KELVIN
    _attr_max_color_temp_kelvin = MAX_KELVIN
    _attr_should_poll = False

    def __init__(self, controller: ZhiyunController, address: str, name: str | None) -> None:
        """Initialize the light."""
        self._controller = controller
        self._address = address
        self._device_name = name or address
        self._attr_unique_id = address

    async def async_added_to_hass(self) -> None:
        """Subscribe to controller updates."""
        self._controller.register_callback(self._handle_state_update)

    async def async_will_remove_from_hass(self) -> None:
        """Handle entity removal."""
        self._controller.unregister_callback(self._handle_state_update)

    @callback
    def _handle_state_update(self) -> None:
        """Handle state updates from the controller."""
        self.async_write_ha_state()

    @property
    def device_info(self) -> DeviceInfo:
        """Return device info."""
        state = self._controller.device_state(self._address)
        return DeviceInfo(
            identifiers={(DOMAIN, self._address)},
            name=self._device_name,
            manufacturer=MANUFACTURER,
            model=state.model_name if state else None,
            sw_version=(state.firmware_version or None) if state else None,
        )

    @property
    def available(self) -> bool:
        """Return True once the light has finished initializing."""
        return self._controller.is_ready(self._address)

    @property
    def is_on(self) -> bool | None:
        state = self._controller.device_state(self._address)
        return state.is_on if state else None

    @property
    def brightness(self) -> int | None:
        state = self._controller.device_state(self._address)
        return percent_to_brightness(state.brightness) if state else None

    @property
    def color_temp_kelvin(self) -> int | None:
        state = self._controller.device_state(self._address)
        return state.color_temperature if state else None

    async def async_turn_on(self, **kwargs: Any) -> None:
        """Turn the light on."""
        _LOGGER.debug("turn_on called with kwargs: %s", kwargs)

        brightness = kwargs.get(ATTR_BRIGHTNESS)
        percent = brightness_to_percent(brightness) if brightness is not None else None

        if ATTR_COLOR_TEMP_KELVIN in kwargs:
            self._controller.set_color_temperature(
                kwargs[ATTR_COLOR_TEMP_KELVIN], device_id=self._address
            )

        if not self.is_on:
            self._controller.turn_on(percent, device_id=self._address)
        elif percent is not None:
            self._controller.set_brightness(percent, device_id=self._address)

    async def async_turn_off(self, **kwargs: Any) -> None:
        """Turn the light off."""
        self._controller.turn_off(device_id=self._address)
