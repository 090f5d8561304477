"""
Example of a long-running application that keeps a proxy link up.

The ConnectionSupervisor retries failed connection attempts on its own, but a
link that drops after it became ready is only reported. This example reacts to
that report by starting a new sequence on the same MeshInterface:
- Connect to the given address, or to the last saved proxy when none is given
- Wait for the `meshproxy.connection.status` message with connected=False
- Connect again after a short pause
"""
import argparse
import logging
import threading
import time

from pubsub import pub

from meshproxy.interfaces.ble import ConnectionFailedError
from meshproxy.mesh_interface import MeshInterface

# Pause before starting a new sequence after the link was lost
RETRY_DELAY_SECONDS = 5

logger = logging.getLogger(__name__)

# A thread-safe flag to signal disconnection
disconnected_event = threading.Event()


def on_connection_change(interface, connected):
    """
    Signal the main loop when the proxy link is lost.

    Parameters:
        interface: The MeshInterface whose link changed.
        connected (bool): `True` when the link became ready, `False` when it was lost.
    """
    logger.info(
        "Proxy link %s (MTU %d)",
        "ready" if connected else "lost",
        interface.get_mtu(),
    )
    if not connected:
        disconnected_event.set()


def on_status(interface, text):  # pylint: disable=W0613
    logger.info("Status: %s", text)


def main():
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(
        description="Bluetooth Mesh proxy reconnection example."
    )
    parser.add_argument(
        "address", nargs="?", help="BLE address of the proxy node (default: the saved proxy)"
    )
    args = parser.parse_args()

    pub.subscribe(on_connection_change, "meshproxy.connection.status")
    pub.subscribe(on_status, "meshproxy.status.text")

    iface = MeshInterface.create()
    try:
        while True:
            try:
                disconnected_event.clear()
                if args.address:
                    iface.connect(args.address)
                elif not iface.connect_to_saved_proxy():
                    logger.error("No saved proxy; pass an address once to save one")
                    return
                iface.wait_for_connection(timeout=120)
                logger.info("Connected. Waiting for disconnection event...")
                disconnected_event.wait()
            except KeyboardInterrupt:
                logger.info("Exiting...")
                break
            except ConnectionFailedError as e:
                logger.error("Connection failed: %s", e.message)

            logger.info("Retrying in %d seconds...", RETRY_DELAY_SECONDS)
            time.sleep(RETRY_DELAY_SECONDS)
    finally:
        logger.info("Closing proxy interface...")
        iface.close()


if __name__ == "__main__":
    main()
