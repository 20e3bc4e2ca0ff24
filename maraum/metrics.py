from prometheus_client import Counter, Histogram

# HTTP request metrics
HTTP_REQUESTS_TOTAL = Counter(
    "maraum_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status_class"],
)
HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "maraum_http_request_duration_seconds",
    "Duration of HTTP requests in seconds",
    ["method", "path"],
)

# Submission pipeline
SUBMISSIONS_TOTAL = Counter(
    "maraum_submissions_total",
    "Message submissions by channel and outcome",
    ["channel", "outcome"],
)
SUBMISSION_SECONDS = Histogram(
    "maraum_submission_seconds",
    "End-to-end submission duration in seconds",
    ["channel"],
)

# Generation gateway
GENERATION_ATTEMPTS_TOTAL = Counter(
    "maraum_generation_attempts_total",
    "Generation attempts by provider, channel and outcome",
    ["provider", "channel", "outcome"],
)
GENERATION_SECONDS = Histogram(
    "maraum_generation_seconds",
    "Generation duration including retries in seconds",
    ["provider", "model", "channel"],
)
GENERATION_TOKENS_TOTAL = Counter(
    "maraum_generation_tokens_total",
    "Total generation tokens",
    ["direction", "provider", "model", "channel"],
)

# Lifecycle
SESSIONS_STARTED_TOTAL = Counter(
    "maraum_sessions_started_total",
    "Sessions started",
    ["scenario_id"],
)
SESSION_COMPLETIONS_TOTAL = Counter(
    "maraum_session_completions_total",
    "Session completions by trigger",
    ["trigger"],
)
