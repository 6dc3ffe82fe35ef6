"""Backend transport: REST calls and the SSE subscription."""

from taskboard_sync.transport.client import TaskApiClient
from taskboard_sync.transport.sse import ServerSentEvent, SSEDecoder

__all__ = ["SSEDecoder", "ServerSentEvent", "TaskApiClient"]
