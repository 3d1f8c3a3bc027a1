#!/usr/bin/env python3
"""
Zhiyun BLE Light Control Tool

Scans for Zhiyun studio lights (MOLUS, FIVERAY and CINEPEER families),
connects to them and sends power, brightness and color temperature
commands through the same controller the Home Assistant integration uses.

Devices that were successfully initialized once are remembered in a JSON
file (~/.zhiyun_known_devices.json by default) and reconnected
automatically when they are seen again.

Usage:
    python zhiyun_ctl.py [--duration SECONDS]            # Scan and list lights
    python zhiyun_ctl.py --connect AA:BB:CC:DD:EE:FF --on
    python zhiyun_ctl.py --connect AA:BB:... --brightness 40 --kelvin 4300
    python zhiyun_ctl.py --all --off                      # Every known light
    python zhiyun_ctl.py --clear-known                    # Forget known lights
"""

import argparse
import asyncio
import logging
import math
import os

from custom_components.zhiyun_ble.const import ConnectionState
from custom_components.zhiyun_ble.controller import ZhiyunController
from custom_components.zhiyun_ble.known_devices import JsonKnownDeviceStore
from custom_components.zhiyun_ble.transport import BleakTransport

KNOWN_DEVICES_PATH = os.path.expanduser("~/.zhiyun_known_devices.json")

# Upper bound on how long to wait for connected lights to finish initializing
READY_TIMEOUT = 10.0
# Long enough for debounce and wake/settle delays to flush
COMMAND_FLUSH_TIME = 0.5


def print_device_table(controller: ZhiyunController) -> None:
    """Print every discovered light with its connection state."""
    devices = controller.discovered_devices
    if not devices:
        print("No Zhiyun lights found.")
        return

    print(f"\n{'Address':<20} {'Name':<12} {'Model':<20} {'State':<22} Known")
    print("-" * 82)
    for device_id in devices:
        name = controller.device_name(device_id) or "?"
        state = controller.connection_state(device_id)
        device_state = controller.device_state(device_id)
        model = device_state.model_name if device_state else ""
        known = "yes" if controller.is_known(device_id) else ""
        print(f"{device_id:<20} {name:<12} {model:<20} {state.name if state else '-':<22} {known}")


def print_light_states(controller: ZhiyunController) -> None:
    """Print the cached state of every connected light."""
    for device_id, state in controller.device_states.items():
        marker = "*" if device_id == controller.selected_device_id else " "
        power = "ON " if state.is_on else "OFF"
        firmware = f" fw {state.firmware_version}" if state.firmware_version else ""
        print(
            f" {marker} {state.device_name or device_id} [{state.model_name}] "
            f"{power} {state.brightness:.0f}% {state.color_temperature}K{firmware}"
        )


async def wait_until_ready(controller: ZhiyunController, device_ids: list, timeout: float) -> list:
    """Wait for the given devices to reach READY; returns those that did."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        pending = [
            device_id for device_id in device_ids
            if controller.connection_state(device_id) not in (ConnectionState.READY, ConnectionState.DISCONNECTED)
        ]
        if not pending:
            break
        await asyncio.sleep(0.1)
    return [device_id for device_id in device_ids if controller.is_ready(device_id)]


async def run(args: argparse.Namespace) -> None:
    transport = BleakTransport()
    controller = ZhiyunController(transport, JsonKnownDeviceStore(args.known_file))

    known = sorted(controller.known_devices)
    if known:
        print(f"Known lights (auto-connect): {', '.join(known)}")

    print(f"Scanning for Zhiyun lights ({args.duration:.0f}s)...")
    if not await controller.start_scanning():
        print(f"Error: {controller.last_error}")
        return
    try:
        await asyncio.sleep(args.duration)
    finally:
        await controller.stop_scanning()

    print_device_table(controller)

    try:
        for address in args.connect or []:
            device_id = address.upper()
            if device_id not in controller.discovered_devices:
                print(f"  {address}: not found during scan")
                continue
            print(f"  Connecting to {controller.device_name(device_id)} ({device_id})...")
            if not await controller.connect(device_id):
                print(f"  Error: {controller.last_error}")

        connected = controller.connected_devices
        if not connected:
            if args.connect or has_commands(args):
                print("No lights connected.")
            return

        ready = await wait_until_ready(controller, connected, READY_TIMEOUT)
        print(f"\n{len(ready)} of {len(connected)} light(s) ready")
        if args.connect and not args.all:
            controller.select_device(args.connect[-1].upper())

        await send_commands(controller, args)
        print_light_states(controller)
    finally:
        await controller.stop()


def has_commands(args: argparse.Namespace) -> bool:
    return args.on or args.off or args.brightness is not None or args.kelvin is not None


async def send_commands(controller: ZhiyunController, args: argparse.Namespace) -> None:
    """Send the requested commands to the selected light (or every light with --all)."""
    if not has_commands(args):
        return

    if args.off:
        targets = controller.turn_off(all_devices=args.all)
        print(f"  Power OFF -> {', '.join(targets)}")
    elif args.on:
        targets = controller.turn_on(args.brightness, all_devices=args.all)
        print(f"  Power ON -> {', '.join(targets)}")
    elif args.brightness is not None:
        targets = controller.set_brightness(args.brightness, all_devices=args.all)
        print(f"  Brightness {args.brightness:.0f}% -> {', '.join(targets)}")

    if args.kelvin is not None:
        targets = controller.set_color_temperature(args.kelvin, all_devices=args.all)
        print(f"  Color temperature {args.kelvin}K -> {', '.join(targets)}")

    await asyncio.sleep(COMMAND_FLUSH_TIME)


def brightness_arg(text: str) -> float:
    """Parse a brightness percentage, rejecting nan and inf."""
    value = float(text)
    if not math.isfinite(value):
        raise argparse.ArgumentTypeError(f"invalid brightness: {text}")
    return value


def clear_known_devices(path: str) -> None:
    if os.path.exists(path):
        os.remove(path)
        print(f"Cleared known lights: {path}")
    else:
        print("No known lights file found.")


def main():
    parser = argparse.ArgumentParser(
        description="Scan for and control Zhiyun BLE studio lights"
    )
    parser.add_argument(
        "--duration", "-d",
        type=float,
        default=5.0,
        help="Scan duration in seconds (default: 5)"
    )
    parser.add_argument(
        "--connect", "-C",
        action="append",
        metavar="ADDRESS",
        help="Connect to a light by address; may be given more than once"
    )
    parser.add_argument(
        "--brightness", "-b",
        type=brightness_arg,
        metavar="PERCENT",
        help="Set brightness (0-100, 0 turns the light off)"
    )
    parser.add_argument(
        "--kelvin", "-k",
        type=int,
        help="Set color temperature (2700-6500)"
    )
    power = parser.add_mutually_exclusive_group()
    power.add_argument("--on", action="store_true", help="Turn the light on")
    power.add_argument("--off", action="store_true", help="Turn the light off")
    parser.add_argument(
        "--all", "-a",
        action="store_true",
        help="Send commands to every connected light instead of the selected one"
    )
    parser.add_argument(
        "--clear-known",
        action="store_true",
        help="Forget all known lights"
    )
    parser.add_argument(
        "--known-file",
        default=KNOWN_DEVICES_PATH,
        help=f"Known lights file (default: {KNOWN_DEVICES_PATH})"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log protocol frames and lifecycle transitions"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.clear_known:
            clear_known_devices(args.known_file)
            return
        asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nStopped by user")


if __name__ == "__main__":
    main()
