from fastapi import APIRouter, Depends, status
from fastapi.responses import PlainTextResponse
from dataclasses import asdict
from ..core.deps import get_services
from ..services.container import MobileServices

router = APIRouter(prefix="/metrics", tags=["metrics"])


@router.get("/summary")
async def get_summary(services: MobileServices = Depends(get_services)):
    """Trailing-hour performance summary."""
    return services.telemetry.get_performance_summary()


@router.get("/")
async def get_all_metrics(services: MobileServices = Depends(get_services)):
    buffers = services.telemetry.get_all_metrics()
    return {name: [asdict(m) for m in samples] for name, samples in buffers.items()}


@router.get("/export.csv", response_class=PlainTextResponse)
async def export_metrics(services: MobileServices = Depends(get_services)):
    return PlainTextResponse(
        services.telemetry.export_metrics_as_csv(),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=performance_metrics.csv"},
    )


@router.delete("/", status_code=status.HTTP_204_NO_CONTENT)
async def clear_metrics(services: MobileServices = Depends(get_services)):
    services.telemetry.clear_metrics()
