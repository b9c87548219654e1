"""Client side of shotmover: sinks, worker pools, import engine, sync poller and CLI."""
