from flowstream.client.stream_client import (
    ExecutionStreamClient,
    StreamConnectionError,
    backoff_delay,
)

__all__ = ["ExecutionStreamClient", "StreamConnectionError", "backoff_delay"]
