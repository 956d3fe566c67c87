"""
Module providing the SSDP message codec.

SSDP messages are HTTP/1.1 messages without a body, carried in a single UDP
datagram. Requests use the ``M-SEARCH`` (search probe) or ``NOTIFY``
(announcement) methods, while replies to a search probe are plain HTTP
responses. Every message that can lead to a cache entry must carry the
``LOCATION``, ``CACHE-CONTROL`` (with a ``max-age`` directive) and ``USN``
headers.
"""

import enum
import re
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from requests.structures import CaseInsensitiveDict

from ssdp_discovery.errors import (
    MalformedPacket,
    MissingHeader,
    TruncatedPacket,
    UnknownMethod,
)

SSDP_MULTICAST_ADDRESS = "239.255.255.250"
SSDP_PORT = 1900
DEFAULT_USER_AGENT = "Linux/5.0 UPnP/1.1 ssdp-discovery/1.0.0"
DEFAULT_MX = 1

LOCATION_HEADER = "Location"
CACHE_CONTROL_HEADER = "Cache-Control"
USN_HEADER = "USN"

_TOKEN = r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+"
REQUEST_LINE = re.compile(
    rf"(?P<method>{_TOKEN}) (?P<target>\S+) HTTP/(?P<version>[0-9]\.[0-9])"
)
STATUS_LINE = re.compile(
    r"HTTP/(?P<version>[0-9]\.[0-9]) (?P<code>[0-9]{3})(?: (?P<reason>.*))?"
)
HEADER_LINE = re.compile(rf"(?P<name>{_TOKEN}):[ \t]*(?P<value>.*?)[ \t]*")
# ten digits is over three centuries, anything longer is treated as garbage
MAX_AGE_VALUE = re.compile(r"[0-9]{1,10}")


class Method(enum.Enum):
    SEARCH = "M-SEARCH"
    NOTIFY = "NOTIFY"
    RESPONSE = "RESPONSE"


REQUEST_METHODS = {
    Method.SEARCH.value: Method.SEARCH,
    Method.NOTIFY.value: Method.NOTIFY,
}


@dataclass(frozen=True, kw_only=True)
class ProtocolMessage:
    """
    A decoded SSDP message.

    Instances are immutable. ``headers`` is a read-only, case-insensitive view
    of every header of the datagram, with repeated headers combined into a
    single comma-separated value.
    """

    method: Method
    location: str
    expires_at: float
    service_id: str
    headers: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType(CaseInsensitiveDict()),
        hash=False,
    )
    status_code: int | None = None
    status_reason: str | None = None

    @property
    def target(self) -> str | None:
        """
        The search target of a response, or the notification type of an announcement.
        """
        return self.headers.get("ST", self.headers.get("NT"))

    @property
    def server(self) -> str | None:
        return self.headers.get("SERVER")

    @property
    def notification_subtype(self) -> str | None:
        return self.headers.get("NTS")

    def is_expired(self, now: float | None = None) -> bool:
        if now is None:
            now = time.time()
        return self.expires_at < now

    def __str__(self):
        return f"{self.method.value} {self.service_id} at {self.location}"


def parse(raw: bytes, now: float | None = None) -> ProtocolMessage:
    """
    Decode a datagram into a :class:`ProtocolMessage`.

    The datagram is first read as a request. If its first line is not a request
    line at all, it is read as a response instead. A request line naming any
    method other than ``M-SEARCH`` or ``NOTIFY`` is rejected outright.

    :param raw: The datagram payload.
    :param now: Wall-clock time of receipt, in seconds since the epoch. Defaults
        to the current time. The expiry of the message is ``now + max-age``.
    :return: The decoded message.
    :raises TruncatedPacket: The datagram ends before the header block does.
    :raises MalformedPacket: The start line or a header line is not well-formed.
    :raises UnknownMethod: The request method is not a discovery method.
    :raises MissingHeader: ``LOCATION``, ``CACHE-CONTROL: max-age`` or ``USN`` is
        missing or unusable.
    """
    if now is None:
        now = time.time()

    # header bytes are ISO-8859-1, which also makes decoding total
    text = raw.decode("iso-8859-1")
    *complete_lines, _ = text.split("\n")
    lines = [line.removesuffix("\r") for line in complete_lines]
    if not lines:
        raise TruncatedPacket("Datagram does not contain a complete start line.")

    method, status_code, status_reason = _parse_start_line(lines[0])
    headers = _parse_header_block(lines[1:])

    location = headers.get(LOCATION_HEADER)
    if not location:
        raise MissingHeader(LOCATION_HEADER)
    max_age = _parse_max_age(headers.get(CACHE_CONTROL_HEADER))
    if max_age is None:
        raise MissingHeader(CACHE_CONTROL_HEADER)
    service_id = headers.get(USN_HEADER)
    if not service_id:
        raise MissingHeader(USN_HEADER)

    return ProtocolMessage(
        method=method,
        location=location,
        expires_at=now + max_age,
        service_id=service_id,
        headers=MappingProxyType(headers),
        status_code=status_code,
        status_reason=status_reason,
    )


def _parse_start_line(line: str):
    request = REQUEST_LINE.fullmatch(line)
    if request is not None:
        token = request["method"]
        try:
            return REQUEST_METHODS[token], None, None
        except KeyError:
            raise UnknownMethod(token) from None

    response = STATUS_LINE.fullmatch(line)
    if response is not None:
        return Method.RESPONSE, int(response["code"]), response["reason"] or ""

    raise MalformedPacket(f"Not a request or status line: {line!r}")


def _parse_header_block(lines) -> CaseInsensitiveDict:
    headers = CaseInsensitiveDict()
    for line in lines:
        if line == "":
            return headers
        if line[0] in " \t":
            raise MalformedPacket(f"Folded header lines are not supported: {line!r}")
        match = HEADER_LINE.fullmatch(line)
        if match is None:
            raise MalformedPacket(f"Not a header line: {line!r}")
        name, value = match["name"], match["value"]
        if name in headers:
            headers[name] = f"{headers[name]}, {value}"
        else:
            headers[name] = value
    raise TruncatedPacket("Datagram ends before the end of the header block.")


def _parse_max_age(cache_control: str | None) -> int | None:
    if cache_control is None:
        return None
    for directive in cache_control.split(","):
        name, _, argument = directive.partition("=")
        if name.strip().lower() != "max-age":
            continue
        argument = argument.strip().strip('"')
        if MAX_AGE_VALUE.fullmatch(argument) is None:
            return None
        return int(argument)
    return None


def construct_search(
    target: str,
    *,
    address: str = SSDP_MULTICAST_ADDRESS,
    port: int = SSDP_PORT,
    user_agent: str = DEFAULT_USER_AGENT,
    mx: int = DEFAULT_MX,
) -> bytes:
    """
    Render an ``M-SEARCH`` probe for the given search target.

    >>> construct_search("ssdp:all", user_agent="test/1.0").decode()
    'M-SEARCH * HTTP/1.1\\r\\nHOST: 239.255.255.250:1900\\r\\nMAN: "ssdp:discover"\\r\\nMX: 1\\r\\nST: ssdp:all\\r\\nUSER-AGENT: test/1.0\\r\\n\\r\\n'
    """
    lines = [
        "M-SEARCH * HTTP/1.1",
        f"HOST: {address}:{port}",
        'MAN: "ssdp:discover"',
        f"MX: {mx}",
        f"ST: {target}",
        f"USER-AGENT: {user_agent}",
        "",
        "",
    ]
    return "\r\n".join(lines).encode("utf-8")
