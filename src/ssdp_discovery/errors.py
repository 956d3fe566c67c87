"""
Exceptions raised while decoding, receiving and resolving discovery messages.
"""


class SsdpError(Exception):
    """
    Base class for every error raised by this package.
    """


class MessageParseError(SsdpError, ValueError):
    """
    A datagram could not be turned into a :class:`ProtocolMessage`.
    """


class MalformedPacket(MessageParseError):
    """
    The datagram does not follow the request or response grammar.
    """


class TruncatedPacket(MessageParseError):
    """
    The datagram ends before the header block is terminated.
    """


class MissingHeader(MessageParseError):
    """
    The datagram is well-formed but lacks a mandatory header.

    :param name: Name of the missing header.
    """

    def __init__(self, name: str):
        super().__init__(f"Missing or invalid mandatory header: {name}")
        self.name = name

    def __eq__(self, other):
        return isinstance(other, MissingHeader) and other.name == self.name

    def __hash__(self):
        return hash((MissingHeader, self.name))


class UnknownMethod(MessageParseError):
    """
    The request line names a method other than ``M-SEARCH`` or ``NOTIFY``.

    :param token: The method token found in the request line.
    """

    def __init__(self, token: str):
        super().__init__(f"Unknown discovery method: {token!r}")
        self.token = token

    def __eq__(self, other):
        return isinstance(other, UnknownMethod) and other.token == self.token

    def __hash__(self):
        return hash((UnknownMethod, self.token))


class TransportIOError(SsdpError, OSError):
    """
    The multicast socket failed to bind, join, send or receive.
    """


class FetchFailure(SsdpError):
    """
    A service descriptor could not be retrieved.
    """


class FetchNetworkError(FetchFailure):
    """
    The descriptor request failed at the connection or HTTP level.
    """


class FetchDecodeError(FetchFailure):
    """
    The descriptor was retrieved but its body could not be decoded as text.
    """
