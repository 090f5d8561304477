"""
# A library for talking to Bluetooth Mesh networks through a GATT proxy node

Connects to a mesh node that exposes the Mesh Proxy service (0x1828), keeps the
link alive with a bounded retry loop, relays proxy PDUs to an external mesh stack
and decodes the Sensor Status messages it hands back.

## Published PubSub topics

We use a [publish-subscribe](https://pypubsub.readthedocs.io/en/v4.0.3/) model to communicate asynchronous events.
Available topics:

- meshproxy.connection.status(connected) - sent when the proxy link is ready (connected=True) or lost (connected=False)
- meshproxy.status.text(text) - human readable progress of the connection sequence
- meshproxy.sensor.reading(reading) - a decoded SensorReading from a Sensor Status message

## Example Usage
```
from pubsub import pub
from meshproxy.mesh_interface import MeshInterface

def onReading(reading):
    print(f"node 0x{reading.source_address:04X}: {reading.value} C")

pub.subscribe(onReading, "meshproxy.sensor.reading")
iface = MeshInterface.create(mesh_stack)
iface.connect_to_saved_proxy()
```
"""

from meshproxy.util import DeferredExecution

__version__ = "0.3.0"

publishingThread = DeferredExecution("publishing")
