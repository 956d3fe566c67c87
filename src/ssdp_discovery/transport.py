"""
Module providing the SSDP multicast transport.
"""

import logging
import select
import socket
import threading
from socket import (
    AF_INET,
    IP_ADD_MEMBERSHIP,
    IP_MULTICAST_IF,
    IP_MULTICAST_TTL,
    IPPROTO_IP,
    IPPROTO_UDP,
    SO_REUSEADDR,
    SOCK_DGRAM,
    SOL_SOCKET,
    inet_aton,
)
from typing import Iterable, Optional

import requests

from ssdp_discovery.errors import (
    FetchDecodeError,
    FetchNetworkError,
    TransportIOError,
)
from ssdp_discovery.message import (
    DEFAULT_MX,
    DEFAULT_USER_AGENT,
    SSDP_MULTICAST_ADDRESS,
    SSDP_PORT,
    ProtocolMessage,
    construct_search,
    parse,
)
from ssdp_discovery.utilities.network import get_ipv4_addresses

IP_ADDRESS_ANY = "0.0.0.0"
MAXIMUM_MESSAGE_SIZE = 8192
MULTICAST_TTL = 2
DEFAULT_FETCH_TIMEOUT = 5.0


def configure_reusable_socket() -> socket.socket:
    """
    Sets up a UDP socket with a reusable address, so that several listeners on the
    same host can share the discovery port.

    :return: A socket.
    """
    s = socket.socket(AF_INET, SOCK_DGRAM, IPPROTO_UDP)
    try:
        s.setsockopt(SOL_SOCKET, SO_REUSEADDR, 1)
        # not available on every platform
        if hasattr(socket, "SO_REUSEPORT"):
            s.setsockopt(SOL_SOCKET, socket.SO_REUSEPORT, 1)
        s.setsockopt(IPPROTO_IP, IP_MULTICAST_TTL, MULTICAST_TTL)
    except OSError:
        s.close()
        raise
    return s


def membership_request(group: str, interface_address: str) -> bytes:
    """
    Pack an ``ip_mreq`` structure for joining ``group`` on the interface with the
    given address.
    """
    return inet_aton(group) + inet_aton(interface_address)


class Transport:
    """
    Owns the multicast socket used to receive announcements and send search probes,
    and fetches service descriptors over HTTP.

    :param address: The multicast group to join and to send probes to.
    :param port: The discovery port to bind and to send probes to.
    :param interfaces: Names of the network interfaces to join the group on. By
        default the group is joined on the interface chosen by the operating system.
    :param user_agent: Value of the ``USER-AGENT`` header of probes and descriptor requests.
    :param mx: Maximum response delay, in seconds, requested from responders.
    :param fetch_timeout: Timeout, in seconds, of a descriptor request.
    :param logger: Logger to report to. Defaults to the logger of this module.
    """

    def __init__(
        self,
        address: Optional[str] = None,
        port: Optional[int] = None,
        *,
        interfaces: Optional[Iterable[str]] = None,
        user_agent: Optional[str] = None,
        mx: Optional[int] = None,
        fetch_timeout: Optional[float] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.address = address if address is not None else SSDP_MULTICAST_ADDRESS
        self.destination_port = port if port is not None else SSDP_PORT
        self.interfaces = list(interfaces) if interfaces is not None else None
        self.user_agent = user_agent if user_agent is not None else DEFAULT_USER_AGENT
        self.mx = mx if mx is not None else DEFAULT_MX
        self.fetch_timeout = (
            fetch_timeout if fetch_timeout is not None else DEFAULT_FETCH_TIMEOUT
        )
        self.logger = logger or logging.getLogger(__name__)
        self._socket: Optional[socket.socket] = None
        self._interface_addresses: list[str] = []
        self._send_lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._socket is not None

    @property
    def port(self) -> int:
        """
        The port the transport is bound to.
        """
        if self._socket is None:
            raise RuntimeError("Transport is not open.")
        return self._socket.getsockname()[1]

    def open(self):
        """
        Bind the discovery port and join the multicast group.

        :raises TransportIOError: if the port cannot be bound or the group cannot be
            joined. The transport stays closed in that case.
        :raises RuntimeError: if the transport is already open.
        """
        if self._socket is not None:
            raise RuntimeError("Transport already open!")

        s = None
        try:
            s = configure_reusable_socket()
            s.bind((IP_ADDRESS_ANY, self.destination_port))
            interface_addresses = self._get_interface_addresses()
            for interface_address in interface_addresses:
                s.setsockopt(
                    IPPROTO_IP,
                    IP_ADD_MEMBERSHIP,
                    membership_request(self.address, interface_address),
                )
                self.logger.debug(
                    f"Joined {self.address} on interface address {interface_address}"
                )
        except (OSError, KeyError) as e:
            if s is not None:
                s.close()
            raise TransportIOError(
                f"Unable to listen for discovery traffic on "
                f"{self.address}:{self.destination_port}: {e}"
            ) from e

        self._socket = s
        self._interface_addresses = interface_addresses
        self.logger.info(
            f"Listening for discovery traffic on {self.address}, port {self.port}"
        )

    def _get_interface_addresses(self) -> list[str]:
        if self.interfaces is None:
            return [IP_ADDRESS_ANY]
        addresses = [entry.address for entry in get_ipv4_addresses(self.interfaces)]
        if not addresses:
            raise OSError(f"No IPv4 address on interfaces {self.interfaces}")
        return addresses

    def close(self):
        if self._socket is not None:
            self._socket.close()
            self._socket = None

    def _check_for_messages(self, s: socket.socket, timeout: Optional[float]) -> bool:
        socket_list = [s]
        readable, _, exceptional = select.select(socket_list, [], socket_list, timeout)
        if len(exceptional) > 0:
            raise ConnectionError("Exception on socket while checking for messages.")
        return len(readable) > 0

    def receive(self, timeout: Optional[float] = None) -> Optional[ProtocolMessage]:
        """
        Wait for a datagram and decode it.

        :param timeout: Time, in seconds, to wait for a datagram. Waits indefinitely
            by default.
        :return: The decoded message, or ``None`` if no datagram arrived in time.
        :raises MessageParseError: if the datagram is not a valid discovery message.
        :raises TransportIOError: if the socket failed or is closed.
        """
        s = self._socket
        if s is None:
            raise TransportIOError("Transport is not open.")
        try:
            if not self._check_for_messages(s, timeout):
                return None
            data, (host, port) = s.recvfrom(MAXIMUM_MESSAGE_SIZE)
        except (OSError, ValueError) as e:
            raise TransportIOError(f"Failed to receive from discovery socket: {e}") from e
        self.logger.debug(f"Received {len(data)} bytes from {host}:{port}")
        return parse(data)

    def send_search(self, target: str):
        """
        Multicast a single ``M-SEARCH`` probe for the given search target.

        When the transport listens on given interfaces, the probe is sent out of
        each of them, so that replies come back on every joined network.

        :raises TransportIOError: if the probe could not be sent on any interface.
        """
        s = self._socket
        if s is None:
            raise TransportIOError("Transport is not open.")
        packet = construct_search(
            target,
            address=self.address,
            port=self.destination_port,
            user_agent=self.user_agent,
            mx=self.mx,
        )
        destination = (self.address, self.destination_port)
        if self._interface_addresses == [IP_ADDRESS_ANY]:
            try:
                s.sendto(packet, destination)
            except OSError as e:
                raise TransportIOError(f"Failed to send search for {target}: {e}") from e
            return

        failures = []
        with self._send_lock:
            for interface_address in self._interface_addresses:
                try:
                    s.setsockopt(IPPROTO_IP, IP_MULTICAST_IF, inet_aton(interface_address))
                    s.sendto(packet, destination)
                except OSError as e:
                    self.logger.debug(
                        f"Failed to send search for {target} from {interface_address}: {e}"
                    )
                    failures.append(f"{interface_address}: {e}")
        if len(failures) == len(self._interface_addresses):
            raise TransportIOError(
                f"Failed to send search for {target}: {'; '.join(failures)}"
            )

    def fetch_descriptor(self, message: ProtocolMessage) -> str:
        """
        Retrieve the descriptor document advertised by a message.

        A new connection is used for every request, and closed once the body is read.

        :param message: The message whose ``location`` to fetch.
        :return: The body of the descriptor document.
        :raises FetchNetworkError: if the request failed or returned an error status.
        :raises FetchDecodeError: if the body could not be decoded as text.
        """
        try:
            response = requests.get(
                message.location,
                headers={"Connection": "close", "User-Agent": self.user_agent},
                timeout=self.fetch_timeout,
            )
            response.raise_for_status()
            content = response.content
        except requests.RequestException as e:
            raise FetchNetworkError(
                f"Failed to fetch descriptor from {message.location}: {e}"
            ) from e

        # without a charset requests assumes ISO-8859-1 for text, descriptors default to UTF-8
        encoding = "utf-8"
        if "charset" in response.headers.get("Content-Type", "").lower():
            encoding = response.encoding or encoding
        try:
            return content.decode(encoding)
        except (UnicodeDecodeError, LookupError) as e:
            raise FetchDecodeError(
                f"Descriptor from {message.location} is not valid {encoding}: {e}"
            ) from e

    def __enter__(self):
        if not self.is_open:
            self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
