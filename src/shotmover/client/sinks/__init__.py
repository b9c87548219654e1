"""Upload sinks, one per destination backend."""

from shotmover.client.sinks.base import ConnectionCheck, ProgressReader, PutResult, Sink
from shotmover.client.sinks.blob import AzureBlobSink
from shotmover.client.sinks.filesystem import FilesystemSink
from shotmover.client.sinks.obj import GCSSink
from shotmover.client.sinks.registry import SinkContext, SinkFactory, create_sink, sink_factory
from shotmover.client.sinks.relay import RelaySink
from shotmover.client.sinks.s3 import S3Sink

__all__ = [
    "AzureBlobSink",
    "ConnectionCheck",
    "FilesystemSink",
    "GCSSink",
    "ProgressReader",
    "PutResult",
    "RelaySink",
    "S3Sink",
    "Sink",
    "SinkContext",
    "SinkFactory",
    "create_sink",
    "sink_factory",
]
