"""
External Metrics service.

Serves ``GET /apis/external.metrics.k8s.io/v1beta1/namespaces/<namespace>/<metric>``
for horizontal pod autoscalers. Application code registers metrics with
:meth:`ExternalMetricsService.add_metric` before serving::

    service = ExternalMetricsService()
    service.add_metric(NAMESPACE_ALL, "queue-depth", tick(5.0), queue_depth)
    service.run()
"""

import asyncio
from datetime import datetime
from typing import Optional

from fastapi import Request, Response

from shared.base_service import BaseService
from shared.errors import MalformedRequestError, MetricNotFoundError, SerializationError

from .registry import MetricRegistry, MetricComputation, UpdateLoop
from .triggers import TriggerSource
from .query import LABEL_SELECTOR_PARAM, NAMESPACES_PREFIX, QueryResolver, parse_query
from .exporters.external_metrics import build_value_list, render_value_list


class ExternalMetricsService(BaseService):
    """External metrics API server."""

    def __init__(self, port: Optional[int] = None):
        super().__init__("external_metrics", port)

        self.registry = MetricRegistry(metrics=self.metrics)
        self.resolver = QueryResolver(self.registry)

        self._setup_external_metrics_routes()

    def add_metric(
        self,
        namespace: str,
        name: str,
        trigger: TriggerSource,
        computation: MetricComputation,
        stop_event: Optional[asyncio.Event] = None
    ) -> UpdateLoop:
        """Register a metric, recomputed by ``computation`` whenever ``trigger`` fires."""
        return self.registry.register(namespace, name, trigger, computation, stop_event)

    def _setup_external_metrics_routes(self):
        """Set up external metrics routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": self.service_name,
                "message": "External Metrics Service",
                "version": "1.0.0",
                "api_prefix": NAMESPACES_PREFIX.rstrip("/")
            }

        @self.app.get("/registry")
        async def get_registry():
            """Stored values and update loop status, for debugging."""
            return {
                "values": self.registry.snapshot(),
                "stats": self.registry.get_registry_stats(),
                "timestamp": datetime.now().isoformat()
            }

        @self.app.get(NAMESPACES_PREFIX + "{metric_path:path}")
        async def get_external_metric(request: Request, metric_path: str):
            """Serve one external metric value list."""
            selectors = request.query_params.getlist(LABEL_SELECTOR_PARAM)
            return self.handle_metric_request(
                request.url.path,
                selectors[0] if selectors else None
            )

    def handle_metric_request(self, path: str, label_selector: Optional[str] = None) -> Response:
        """Parse, resolve and render one metric request.

        Error responses carry no body; the reason is only logged.
        """
        try:
            query = parse_query(path, label_selector)
            scalar = self.resolver.resolve_query(query)
        except (MalformedRequestError, MetricNotFoundError) as e:
            self.logger.warning(
                "Rejected external metric query",
                code=e.code,
                message=e.message,
                details=e.details
            )
            self.metrics.record_query("bad_request")
            return Response(status_code=400)

        try:
            body = render_value_list(build_value_list(query, scalar))
        except Exception as e:
            error = e if isinstance(e, SerializationError) else SerializationError(
                f"Failed to build external metric response: {e}",
                {"error_type": type(e).__name__}
            )
            self.logger.error(
                "Failed to serialize external metric",
                code=error.code,
                message=error.message,
                details=error.details
            )
            self.metrics.record_query("error")
            return Response(status_code=500)

        self.metrics.record_query("ok")
        return Response(content=body, media_type="application/json")

    async def _check_dependencies(self):
        """Check external metrics service dependencies."""
        return {
            "registry": "ok" if self.registry.running else "error"
        }

    async def start(self):
        """Start update loops."""
        await super().start()
        await self.registry.start()

        self.logger.info("External metrics service started")

    async def stop(self):
        """Stop update loops."""
        await self.registry.stop(timeout=self.config.shutdown_timeout_seconds)
        await super().stop()

        self.logger.info("External metrics service stopped")


def create_app():
    """Create external metrics service application."""
    service = ExternalMetricsService()
    return service.app


if __name__ == "__main__":
    service = ExternalMetricsService()
    service.run()
