from prometheus_client import Counter, Histogram, start_http_server

METRICS_PORT = 8000

requests_total = Counter(
    "wizard_requests_total",
    "Total requests to the edit service",
    ["operation", "status"],
)

request_duration = Histogram(
    "wizard_request_duration_seconds",
    "Edit service request duration in seconds",
    ["operation"],
    buckets=[0.5, 1, 2, 5, 10, 30, 60, 120, 300],
)

masks_generated = Counter(
    "wizard_masks_generated_total",
    "Total masks returned by the mask service",
)

images_edited = Counter(
    "wizard_images_edited_total",
    "Total edited images returned by the edit service",
)

transitions_total = Counter(
    "wizard_transitions_total",
    "Wizard step transitions",
    ["step"],
)

resets_total = Counter(
    "wizard_resets_total",
    "Total wizard resets",
)

errors_total = Counter(
    "wizard_errors_total",
    "Total wizard errors",
    ["error_type"],
)


def start_metrics_server() -> None:
    start_http_server(METRICS_PORT)
