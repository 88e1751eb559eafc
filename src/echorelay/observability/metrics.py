from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

TUNNEL_CONNECTIONS = Counter(
    "echorelay_tunnel_connections_total",
    "Total tunnel connections",
    ["outcome"],  # outcome: accepted/rejected/superseded
)

ACTIVE_TUNNELS = Gauge(
    "echorelay_active_tunnels",
    "Current connected tunnels",
)

HTTP_REQUESTS = Counter(
    "echorelay_http_requests_total",
    "Total proxied HTTP requests",
    ["method", "status"],
)

REQUEST_DURATION = Histogram(
    "echorelay_request_duration_seconds",
    "Proxied request latency",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# direction: in/out, type: frame type
TUNNEL_FRAMES = Counter(
    "echorelay_tunnel_frames_total",
    "Tunnel WebSocket frames",
    ["direction", "type"],
)

PENDING_REQUESTS = Gauge(
    "echorelay_pending_requests",
    "Proxied requests awaiting a laptop response",
)

STREAM_SUBSCRIBERS = Gauge(
    "echorelay_stream_subscribers",
    "Open stream subscriptions",
    ["kind"],
)


def bucket_status(status: int) -> str:
    """Bucket HTTP status to prevent cardinality explosion."""
    if 100 <= status < 200:
        return "1xx"
    if 200 <= status < 300:
        return "2xx"
    if 300 <= status < 400:
        return "3xx"
    if 400 <= status < 500:
        return "4xx"
    if 500 <= status < 600:
        return "5xx"
    return "other"


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
