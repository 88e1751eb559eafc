from echorelay.observability.metrics import (
    ACTIVE_TUNNELS,
    HTTP_REQUESTS,
    PENDING_REQUESTS,
    REQUEST_DURATION,
    STREAM_SUBSCRIBERS,
    TUNNEL_CONNECTIONS,
    TUNNEL_FRAMES,
    generate_metrics,
    get_content_type,
)

__all__ = [
    "TUNNEL_CONNECTIONS",
    "ACTIVE_TUNNELS",
    "HTTP_REQUESTS",
    "REQUEST_DURATION",
    "TUNNEL_FRAMES",
    "PENDING_REQUESTS",
    "STREAM_SUBSCRIBERS",
    "generate_metrics",
    "get_content_type",
]
