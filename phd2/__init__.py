"""Client for the PHD2 guiding application's control protocols.

Two clients are provided:

- ``RPCClient`` speaks the line-delimited JSON-RPC event server protocol
  (commands and asynchronous event notifications on one connection).
- ``SocketClient`` speaks the legacy single-byte socket server protocol.

Example usage:
    client = RPCClient()
    client.subscribe_all_events(print)
    await client.connect("localhost")
    exposure_ms = await client.get_exposure()
    await client.disconnect()
"""

from phd2.clients.errors import (
    CommandError,
    ConnectionError,
    NotConnectedError,
    NotImplementedError,
    PHD2ClientError,
    ProtocolError,
    TimeoutError,
    UnexpectedResponseError,
)
from phd2.clients.rpc_client import RPCClient
from phd2.clients.socket_client import SocketClient, SocketDitherAmount, SocketStatus

__version__ = "0.1.0"

__all__ = [
    "CommandError",
    "ConnectionError",
    "NotConnectedError",
    "NotImplementedError",
    "PHD2ClientError",
    "ProtocolError",
    "RPCClient",
    "SocketClient",
    "SocketDitherAmount",
    "SocketStatus",
    "TimeoutError",
    "UnexpectedResponseError",
]
