"""Region info, cellblock framing, multi batching and a client for HBase region servers."""

__version__ = "0.1.0"