"""Server-Sent Events (SSE) streaming of run progress."""

from .stream import SSEManager, SSEConnection, format_keepalive, format_sse_message

__all__ = ["SSEManager", "SSEConnection", "format_keepalive", "format_sse_message"]
