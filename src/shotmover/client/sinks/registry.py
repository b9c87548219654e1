"""Creation of sinks from destinations."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from shotmover.client.sinks.base import Sink
from shotmover.client.sinks.blob import AzureBlobSink
from shotmover.client.sinks.filesystem import FilesystemSink
from shotmover.client.sinks.obj import GCSSink
from shotmover.client.sinks.relay import RelaySink
from shotmover.client.sinks.s3 import S3Sink
from shotmover.core.destinations import (
    BlobDestination,
    Destination,
    LocalDestination,
    ObjDestination,
    RelayDestination,
    S3Destination,
)
from shotmover.core.errors import ConfigInvalid
from shotmover.core.types import DestinationType

if TYPE_CHECKING:
    from shotmover.client.api import RelayClient
    from shotmover.client.auth import TokenAdapter

SinkFactory = Callable[[Destination], Sink]


@dataclass
class SinkContext:
    """Shared services some sinks need."""

    relay_client: RelayClient | None = None
    tokens: TokenAdapter | None = None


def create_sink(destination: Destination, context: SinkContext | None = None) -> Sink:
    """Create the sink for a destination.

    Raises:
        ConfigInvalid: If the destination cannot be served.
    """
    context = context or SinkContext()
    dest_type = destination.type

    if dest_type in (DestinationType.LOCAL, DestinationType.BACKUP):
        assert isinstance(destination, LocalDestination)
        return FilesystemSink(destination)
    if dest_type == DestinationType.RELAY:
        assert isinstance(destination, RelayDestination)
        if context.relay_client is None:
            raise ConfigInvalid("Relay uploads need a server connection")
        return RelaySink(destination, context.relay_client, context.tokens)
    if dest_type == DestinationType.S3:
        assert isinstance(destination, S3Destination)
        return S3Sink(destination)
    if dest_type == DestinationType.BLOB:
        assert isinstance(destination, BlobDestination)
        return AzureBlobSink(destination)
    if dest_type == DestinationType.OBJ:
        assert isinstance(destination, ObjDestination)
        return GCSSink(destination)
    raise ConfigInvalid(f"Unsupported destination: {dest_type}")


def sink_factory(context: SinkContext | None = None) -> SinkFactory:
    """Bind create_sink to a context."""

    def factory(destination: Destination) -> Sink:
        return create_sink(destination, context)

    return factory
