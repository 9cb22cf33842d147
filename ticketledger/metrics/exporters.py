"""Render registry contents for external monitoring systems."""
from __future__ import annotations

from .registry import MetricsRegistry


class PrometheusExporter:
    """Generate Prometheus text exposition format output."""

    def __init__(self, registry: MetricsRegistry) -> None:
        self.registry = registry

    def build_payload(self) -> str:
        lines: list[str] = []
        for metric in self.registry.metrics():
            lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} {metric.kind}")
            for labels, values in sorted(metric.snapshot().items()):
                label_text = ""
                if labels:
                    pairs = ",".join(f'{name}="{value}"' for name, value in zip(metric.label_names, labels))
                    label_text = "{" + pairs + "}"
                if "value" in values:
                    lines.append(f"{metric.name}{label_text} {values['value']}")
                else:
                    lines.append(f"{metric.name}_count{label_text} {values['count']}")
                    lines.append(f"{metric.name}_sum{label_text} {values['sum']}")
        return "\n".join(lines) + ("\n" if lines else "")
