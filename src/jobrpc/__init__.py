"""RPC-style calls executed through a durable, polling job queue."""

__version__ = "0.1.0"
