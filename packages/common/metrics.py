"""
Prometheus metrics for the categorization engine
"""
from prometheus_client import Counter, Histogram

PREDICTIONS_TOTAL = Counter(
    "spendwise_predictions_total",
    "Category predictions served, by source",
    ["source"],
)

TRAINING_RUNS_TOTAL = Counter(
    "spendwise_training_runs_total",
    "Model training runs, by outcome",
    ["outcome"],
)

TRAINING_DURATION_SECONDS = Histogram(
    "spendwise_training_duration_seconds",
    "Wall-clock duration of successful training runs",
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)

MODEL_LOAD_FAILURES_TOTAL = Counter(
    "spendwise_model_load_failures_total",
    "Persisted model artifacts that failed to load or validate",
)
