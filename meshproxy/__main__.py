"""Command line for talking to a Bluetooth Mesh proxy node.

    python -m meshproxy --ble-scan
    python -m meshproxy --ble AA:BB:CC:DD:EE:FF
    python -m meshproxy --saved
    python -m meshproxy --decode "02 13 FF 80"
"""

import argparse
import logging
import sys
import threading
from typing import List, Optional

from pubsub import pub
from tabulate import tabulate

from meshproxy import __version__
from meshproxy.interfaces.ble.client import BLEClient
from meshproxy.interfaces.ble.constants import BLEConfig
from meshproxy.interfaces.ble.discovery import ProxyScanner
from meshproxy.interfaces.ble.exceptions import ConnectionFailedError
from meshproxy.mesh_interface import MeshInterface
from meshproxy.sensor_decoder import SensorTelemetryDecoder
from meshproxy.storage import DEFAULT_PREFS_PATH, JsonAddressStore


def get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="meshproxy",
        description="Connect to a Bluetooth Mesh network through a GATT proxy node.",
    )
    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument(
        "--ble-scan", action="store_true", help="List nearby nodes advertising the Mesh Proxy service"
    )
    action.add_argument("--ble", metavar="ADDRESS", help="Connect to the proxy node at ADDRESS")
    action.add_argument(
        "--saved", action="store_true", help="Connect to the last proxy node that connected successfully"
    )
    action.add_argument(
        "--auto", action="store_true", help="Connect to the first proxy node found by scanning"
    )
    action.add_argument(
        "--decode", metavar="HEX", help="Decode Sensor Status parameters given as hex and exit"
    )
    parser.add_argument(
        "--src",
        type=lambda s: int(s, 0),
        default=0,
        help="Source element address reported with --decode readings (default: 0)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=BLEConfig.CONNECTION_TIMEOUT * BLEConfig.RETRY_MAX_ATTEMPTS,
        help="Seconds to wait for the proxy link to become ready",
    )
    parser.add_argument(
        "--prefs",
        default=str(DEFAULT_PREFS_PATH),
        help="Preferences file holding the saved proxy address",
    )
    parser.add_argument(
        "--strict-ack",
        action="store_true",
        help="Wait for the notification enable to be acknowledged before reporting ready",
    )
    parser.add_argument("--debug", action="store_true", help="Show debug log output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def decode_hex(text: str, source_address: int = 0) -> int:
    """Print the property entries and readings found in a hex Sensor Status payload."""
    try:
        data = bytes.fromhex(text.replace(":", " "))
    except ValueError as e:
        print(f"Invalid hex: {e}", file=sys.stderr)
        return 2
    decoder = SensorTelemetryDecoder()
    rows = [
        [f"0x{p.property_id:04X}", p.fmt.value, p.length, p.value_offset]
        for p in decoder.iter_properties(data)
    ]
    print(tabulate(rows, headers=["Property", "Format", "Length", "Offset"], missingval="N/A"))
    readings = list(decoder.decode(data, source_address))
    if not readings:
        print("No readings")
        return 1
    print()
    print(
        tabulate(
            [[f"0x{r.source_address:04X}", f"0x{r.property_id:04X}", r.value] for r in readings],
            headers=["Source", "Property", "Value (C)"],
        )
    )
    return 0


def scan() -> int:
    with BLEClient() as client:
        devices = ProxyScanner(client).discover()
    if not devices:
        print("No proxy nodes found")
        return 1
    print(tabulate([[d.address, d.name or "N/A"] for d in devices], headers=["Address", "Name"]))
    return 0


def run_link(args) -> int:
    """Connect as requested and stay connected until interrupted or the link drops."""
    lost = threading.Event()

    def on_status(interface, text):  # pylint: disable=W0613
        print(text)

    def on_connection(interface, connected):  # pylint: disable=W0613
        if not connected:
            lost.set()

    pub.subscribe(on_status, "meshproxy.status.text")
    pub.subscribe(on_connection, "meshproxy.connection.status")

    iface = MeshInterface.create(
        store=JsonAddressStore(args.prefs), strict_notification_ack=args.strict_ack
    )
    try:
        if args.ble:
            iface.connect(args.ble)
        elif args.saved:
            iface.connect_to_saved_proxy()
        else:
            iface.auto_connect()
        iface.wait_for_connection(args.timeout)
        print(f"Proxy link ready, MTU {iface.get_mtu()}. Press Ctrl-C to exit.")
        lost.wait()
        return 1
    except ConnectionFailedError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 0
    finally:
        iface.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = get_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.decode is not None:
        return decode_hex(args.decode, args.src)
    if args.ble_scan:
        return scan()
    return run_link(args)


if __name__ == "__main__":
    sys.exit(main())
