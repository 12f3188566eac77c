from opencode_companion.integrations.transport import (
    ContextPart,
    TransportClient,
    TransportResult,
    unwrap_payload,
)

__all__ = ["ContextPart", "TransportClient", "TransportResult", "unwrap_payload"]
