"""
learnbridge.schemas
~~~~~~~~~~~~~~~~~~~

HTTP 应答体与 WebSocket 事件协议的 Pydantic 模型。
"""
from learnbridge.schemas.api_response import ApiResponse, HealthData
from learnbridge.schemas.events import (
    ClientEvent,
    MessageData,
    OutboundPayload,
    encode_event,
    parse_client_event,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
