"""Worker daemon for the RPC job queue."""

from jobrpc.worker.daemon import DaemonRunSummary, RpcDaemon

__all__ = ["DaemonRunSummary", "RpcDaemon"]
