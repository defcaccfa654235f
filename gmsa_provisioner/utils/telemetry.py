import logging
from collections import Counter, deque
from datetime import datetime
from typing import Any, Deque, Dict, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter


def setup_telemetry(service_name: str = "gmsa-provisioner"):
    resource = Resource(attributes={
        "service.name": service_name
    })

    provider = TracerProvider(resource=resource)
    processor = BatchSpanProcessor(ConsoleSpanExporter())
    provider.add_span_processor(processor)

    trace.set_tracer_provider(provider)

    return trace.get_tracer(__name__)


def setup_logging(log_level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    # Azure SDK request logging echoes vault URLs and headers at INFO.
    logging.getLogger("azure").setLevel(logging.WARNING)
    return logging.getLogger("gmsa_provisioner")


class ProvisioningMetrics:
    def __init__(self, max_events: int = 1000):
        self.outcomes: Counter = Counter()
        # Recent outcomes only; counts are kept for the life of the process.
        self.events: Deque[Dict[str, Any]] = deque(maxlen=max_events)

    def record_outcome(self, status: str, error_kind: Optional[str] = None, metadata: Dict[str, Any] = None):
        key = f"{status}:{error_kind}" if error_kind else status
        self.outcomes[key] += 1
        self.events.append({
            "status": status,
            "error_kind": error_kind,
            "timestamp": datetime.now(),
            "metadata": metadata or {}
        })

    def get_metrics(self, status: str = None):
        if status:
            return {key: count for key, count in self.outcomes.items() if key.split(":")[0] == status}
        return dict(self.outcomes)

    def reset(self):
        self.outcomes.clear()
        self.events.clear()


provisioning_metrics = ProvisioningMetrics()
