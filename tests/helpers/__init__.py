from .doubles import FakeClock, HTTPError, RecordingSleep, ScriptedProvider, page
from .metric_delta import histogram_observes, metric_delta, sample_value

__all__ = [
    "FakeClock",
    "HTTPError",
    "RecordingSleep",
    "ScriptedProvider",
    "histogram_observes",
    "metric_delta",
    "page",
    "sample_value",
]
