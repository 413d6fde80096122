from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from pflow.metrics import PrometheusExporter, metrics_registry

router = APIRouter(tags=["observability"])

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


@router.get("/metrics", summary="Prometheus metrics", response_class=PlainTextResponse)
async def metrics() -> PlainTextResponse:
    payload = PrometheusExporter(metrics_registry).build_payload()
    return PlainTextResponse(payload, media_type=PROMETHEUS_CONTENT_TYPE)
