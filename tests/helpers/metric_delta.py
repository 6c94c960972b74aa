"""
Helpers for asserting that crawler metrics move while code runs.
"""

from contextlib import contextmanager


def _child(metric, labels):
    return metric.labels(**labels) if labels else metric


def counter_value(metric, **labels) -> float:
    """Current value of a counter or gauge, optionally for one label set."""
    child = _child(metric, labels)
    if not hasattr(child, "_value"):
        raise ValueError(f"Metric {metric} doesn't have a _value attribute")
    return child._value.get()


@contextmanager
def metric_delta(metric, expected_delta=1, **labels):
    """
    Assert that ``metric`` (for ``labels``) changes by exactly ``expected_delta``.

    Usage:
        with metric_delta(METRICS["crawler_responses_total"], 1, status_class="4xx"):
            await fetcher.fetch(url)
    """
    initial_value = counter_value(metric, **labels)

    yield

    final_value = counter_value(metric, **labels)
    actual_delta = final_value - initial_value
    if actual_delta != expected_delta:
        raise AssertionError(
            f"Expected metric to change by {expected_delta}, "
            f"but it changed by {actual_delta} "
            f"(from {initial_value} to {final_value})"
        )


def histogram_count(histogram) -> float:
    for metric in histogram.collect():
        for sample in metric.samples:
            if sample.name.endswith("_count"):
                return sample.value
    return 0.0


@contextmanager
def histogram_observes(histogram, min_observations=1):
    """Assert that ``histogram`` records at least ``min_observations`` samples."""
    initial_count = histogram_count(histogram)

    yield

    observed = histogram_count(histogram) - initial_count
    if observed < min_observations:
        raise AssertionError(f"Expected at least {min_observations} histogram observations, got {observed}")
