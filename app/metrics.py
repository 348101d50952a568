from prometheus_client import Counter, Histogram

# Webhook events by kind (text, sticker, image, follow, ...).
EVENT_TOTAL = Counter(
    "line_events_total",
    "Total number of LINE webhook events processed",
    ["type"],
)

# In-band command usage (reset, prompt).
COMMAND_TOTAL = Counter(
    "session_commands_total",
    "Total number of in-band session commands processed",
    ["command"],
)

# Messages refused by the topic filter.
TOPIC_REJECTIONS = Counter(
    "topic_rejections_total",
    "Total number of messages refused by the topic filter",
)

# Backend call latency in seconds (chat vs image).
BACKEND_LATENCY = Histogram(
    "backend_response_latency_seconds",
    "Time spent waiting for the conversation backend",
    ["kind"],
)

# Backend errors (timeout, rate limit or other).
BACKEND_ERRORS = Counter(
    "backend_response_errors_total",
    "Total number of conversation backend errors",
    ["type"],
)

# Replies the LINE API refused or that failed in transit.
REPLY_ERRORS = Counter(
    "line_reply_errors_total",
    "Total number of failed LINE reply calls",
)
