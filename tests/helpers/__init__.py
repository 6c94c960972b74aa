from .fake_transport import SITE, FakeTransport, html_page, response
from .metric_delta import counter_value, histogram_observes, metric_delta

__all__ = ["SITE", "FakeTransport", "html_page", "response", "counter_value", "histogram_observes", "metric_delta"]
