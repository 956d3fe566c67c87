"""
Command line interface listing the services discovered on the local network.

Run the script as `ssdp-discovery-list` to search for every service for a few
seconds and print each one as its descriptor is retrieved. Run
`ssdp-discovery-list --help` to find options for narrowing the search and
choosing the network interfaces to listen on.
"""

import argparse
import logging
import textwrap
import time
from queue import Empty

from rich.logging import RichHandler

from ssdp_discovery.cache import CacheEntry
from ssdp_discovery.errors import TransportIOError
from ssdp_discovery.manager import (
    DEFAULT_FETCH_WORKERS,
    DEFAULT_SEARCH_ATTEMPTS,
    DEFAULT_SEARCH_TARGET,
    DiscoveryManager,
)
from ssdp_discovery.message import SSDP_PORT
from ssdp_discovery.transport import Transport
from ssdp_discovery.utilities.cli import suppress_keyboard_interrupt_as_cancellation

READ_INTERVAL = 0.1


def handle_user_arguments(args=None) -> argparse.Namespace:
    """
    Parse the arguments from the command line.

    :return: The namespace of arguments read from the command line.
    """
    description = textwrap.dedent(
        """\
    List the services announcing themselves over SSDP.
    """
    )
    parser = argparse.ArgumentParser(description=description)

    parser.add_argument(
        "-t",
        "--target",
        default=DEFAULT_SEARCH_TARGET,
        metavar="ST",
        help="Search target to probe for, e.g. upnp:rootdevice.",
    )
    parser.add_argument(
        "-a",
        "--attempts",
        type=int,
        default=DEFAULT_SEARCH_ATTEMPTS,
        help="Number of search probes to send.",
    )
    parser.add_argument(
        "-s",
        "--search-time",
        type=float,
        default=5.0,
        metavar="SECONDS",
        help="Time to listen for services before exiting.",
    )
    parser.add_argument(
        "-i",
        "--interface",
        dest="interfaces",
        action="append",
        default=None,
        metavar="NAME",
        help="Network interface to listen on. Can be given multiple times.",
    )
    parser.add_argument("-p", "--port", type=int, default=SSDP_PORT)
    parser.add_argument(
        "--fetch-workers",
        type=int,
        default=DEFAULT_FETCH_WORKERS,
        help="Maximum number of descriptors fetched at the same time.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=False,
        help="Log every received and dropped message.",
    )

    arguments = parser.parse_args(args)
    return arguments


def format_entry(entry: CacheEntry) -> str:
    message, descriptor = entry
    server = message.server or "unknown server"
    return (
        f"{message.service_id}\n"
        f"    location:   {message.location}\n"
        f"    server:     {server}\n"
        f"    descriptor: {len(descriptor)} characters"
    )


def main(args=None):
    """
    Entry point for the command line.
    """
    arguments = handle_user_arguments(args)
    logging.basicConfig(
        level=logging.DEBUG if arguments.verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True)],
    )

    transport = Transport(port=arguments.port, interfaces=arguments.interfaces)
    with suppress_keyboard_interrupt_as_cancellation() as cancellation:
        with DiscoveryManager(
            transport, fetch_workers=arguments.fetch_workers
        ) as manager:
            try:
                manager.start()
            except TransportIOError as e:
                logging.error(f"Unable to start discovery: {e}")
                return 1
            manager.search(arguments.target, arguments.attempts)

            count = 0
            deadline = time.monotonic() + arguments.search_time
            while not cancellation.is_cancelled:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                try:
                    entry = manager.read(timeout=min(remaining, READ_INTERVAL))
                except Empty:
                    continue
                if entry is None:
                    break
                count += 1
                print(format_entry(entry))

    print(f"Found {count} service(s).")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
