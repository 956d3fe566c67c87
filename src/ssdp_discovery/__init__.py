"""
Module providing SSDP service discovery over IPv4 multicast UDP.

Services on the network announce themselves with ``NOTIFY`` datagrams sent to the
multicast group ``239.255.255.250:1900``, and reply to ``M-SEARCH`` probes with
HTTP-style responses. Both carry a ``LOCATION`` header pointing at a descriptor
document, a ``CACHE-CONTROL: max-age`` staleness window and a ``USN`` identifying
the service instance.

An example announcement is:

.. code::

    NOTIFY * HTTP/1.1
    HOST: 239.255.255.250:1900
    CACHE-CONTROL: max-age=1800
    LOCATION: http://10.0.0.5:80/desc.xml
    NT: upnp:rootdevice
    NTS: ssdp:alive
    USN: uuid:abc::upnp:rootdevice

The :class:`DiscoveryManager` class listens for these messages, fetches the
descriptor of every new or refreshed service and hands the results to consumers
through its blocking :meth:`DiscoveryManager.read` method.
"""

from ssdp_discovery.message import Method, ProtocolMessage, parse
from ssdp_discovery.transport import Transport
from ssdp_discovery.cache import CacheEntry, ServiceCache
from ssdp_discovery.manager import DiscoveryManager

__version__ = "1.0.0"
