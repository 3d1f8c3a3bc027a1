"""Config flow for the Zhiyun BLE integration."""
from __future__ import annotations

import logging
from typing import Any

import voluptuous as vol

from homeassistant import config_entries
from homeassistant.components.bluetooth import (
    BluetoothServiceInfoBleak,
    async_discovered_service_info,
)
from homeassistant.const import CONF_MAC, CONF_NAME
from homeassistant.data_entry_flow import FlowResult
from homeassistant.helpers.device_registry import format_mac

from .const import DOMAIN, UNKNOWN_MODEL_NAME
from . import protocol

_LOGGER = logging.getLogger(__name__)


def _parse_discovery(discovery: BluetoothServiceInfoBleak) -> dict | None:
    """Return address, name and model for a supported light, else None."""
    name = discovery.name or ""
    model = protocol.match_model(name)
    if model is None:
        _LOGGER.debug("Device %s (%s) is not a supported Zhiyun light", name, discovery.address)
        return None

    return {
        "address": discovery.address,
        "name": name,
        "model": model[1],
        "rssi": discovery.rssi,
    }


class ZhiyunConfigFlow(config_entries.ConfigFlow, domain=DOMAIN):
    """Handle config flow for Zhiyun BLE lights."""

    VERSION = 1

    def __init__(self) -> None:
        """Initialize the config flow."""
        self._discovery_info: dict | None = None
        self._discovered_devices: dict[str, dict] = {}

    async def async_step_bluetooth(
        self, discovery_info: BluetoothServiceInfoBleak
    ) -> FlowResult:
        """Handle Bluetooth discovery."""
        _LOGGER.debug("Bluetooth discovery: %s (%s)", discovery_info.name, discovery_info.address)

        parsed = _parse_discovery(discovery_info)
        if not parsed:
            return self.async_abort(reason="not_supported")

        await self.async_set_unique_id(format_mac(parsed["address"]))
        self._abort_if_unique_id_configured()

        self._discovery_info = parsed
        self.context["title_placeholders"] = {"name": parsed["name"]}

        return await self.async_step_confirm()

    async def async_step_user(
        self, user_input: dict[str, Any] | None = None
    ) -> FlowResult:
        """Handle user-initiated setup (manual selection)."""
        if user_input is not None:
            address = user_input[CONF_MAC]
            if address in self._discovered_devices:
                self._discovery_info = self._discovered_devices[address]
                await self.async_set_unique_id(format_mac(address))
                self._abort_if_unique_id_configured()
                return self._create_entry()

        self._discovered_devices = {}
        configured_addresses = {
            entry.unique_id for entry in self._async_current_entries()
        }

        for discovery in async_discovered_service_info(self.hass):
            parsed = _parse_discovery(discovery)
            if parsed and format_mac(parsed["address"]) not in configured_addresses:
                self._discovered_devices[parsed["address"]] = parsed

        if not self._discovered_devices:
            return self.async_abort(reason="no_devices_found")

        device_options = {
            addr: f"{info['name']} - {info['model']} ({addr})"
            for addr, info in self._discovered_devices.items()
        }

        return self.async_show_form(
            step_id="user",
            data_schema=vol.Schema(
                {vol.Required(CONF_MAC): vol.In(device_options)}
            ),
        )

    async def async_step_confirm(
        self, user_input: dict[str, Any] | None = None
    ) -> FlowResult:
        """Ask the user to confirm a discovered light."""
        if self._discovery_info is None:
            return self.async_abort(reason="no_discovery_info")

        if user_input is not None:
            return self._create_entry()

        self._set_confirm_only()
        return self.async_show_form(
            step_id="confirm",
            description_placeholders={
                "name": self._discovery_info["name"],
                "model": self._discovery_info.get("model", UNKNOWN_MODEL_NAME),
            },
        )

    def _create_entry(self) -> FlowResult:
        """Create the config entry."""
        return self.async_create_entry(
            title=self._discovery_info["name"],
            data={
                CONF_MAC: self._discovery_info["address"],
                CONF_NAME: self._discovery_info["name"],
            },
        )
