"""Budgeted L2 ingest run: stream reader, snapshot fetcher, recovery loop, emitter."""
