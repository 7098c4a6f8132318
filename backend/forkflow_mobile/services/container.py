"""
Service wiring: one shared instance of each field service per process,
constructed at application start and handed to consumers explicitly.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from ..core.config import Settings
from .file_transfer import FileTransferService, UploadOptions
from .geolocation import GeoLocationProvider, LocationOptions, StaticLocationSource
from .interaction_validator import InteractionValidator
from .local_storage import KeyValueStore, SqlKeyValueStore
from .offline_sync import OfflineSyncEngine
from .record_store import HttpRecordStore, RecordStore
from .telemetry import PerformanceTelemetryCollector

logger = logging.getLogger(__name__)


@dataclass
class MobileServices:
    store: KeyValueStore
    telemetry: PerformanceTelemetryCollector
    geolocation: GeoLocationProvider
    file_transfer: FileTransferService
    validator: InteractionValidator
    sync_engine: OfflineSyncEngine
    upload_endpoint: Optional[str] = None

    def start(self) -> None:
        """Start background loops; must be called from inside the running event loop."""
        self.telemetry.start()
        self.sync_engine.start()

    async def stop(self) -> None:
        await self.sync_engine.stop()
        await self.telemetry.stop()
        self.geolocation.clear_all_watches()
        self.file_transfer.cancel_all_uploads()


def build_services(
    settings: Settings,
    store: Optional[KeyValueStore] = None,
    record_store: Optional[RecordStore] = None,
) -> MobileServices:
    store = store if store is not None else SqlKeyValueStore.from_url(settings.DATABASE_URL)

    telemetry = PerformanceTelemetryCollector(
        store=store,
        max_samples=settings.METRICS_MAX_SAMPLES,
        retention_days=settings.METRICS_RETENTION_DAYS,
        cleanup_interval_seconds=settings.METRICS_CLEANUP_INTERVAL_SECONDS,
        persist_interval_seconds=settings.METRICS_PERSIST_INTERVAL_SECONDS,
    )

    source = None
    if settings.GPS_FALLBACK_LATITUDE is not None and settings.GPS_FALLBACK_LONGITUDE is not None:
        source = StaticLocationSource(settings.GPS_FALLBACK_LATITUDE, settings.GPS_FALLBACK_LONGITUDE)
    geolocation = GeoLocationProvider(
        source=source,
        store=store,
        telemetry=telemetry,
        default_options=LocationOptions(
            timeout_ms=settings.GPS_TIMEOUT_MS,
            max_cache_age_ms=settings.GPS_MAX_CACHE_AGE_MS,
        ),
    )

    file_transfer = FileTransferService(
        telemetry=telemetry,
        default_options=UploadOptions(max_size_bytes=settings.UPLOAD_MAX_SIZE_BYTES),
    )

    validator = InteractionValidator()
    validator.update_settings(settings.INTERACTION_TYPES)

    if record_store is None and settings.RECORD_STORE_URL:
        record_store = HttpRecordStore(
            base_url=settings.RECORD_STORE_URL,
            api_key=settings.RECORD_STORE_API_KEY,
            timeout=settings.RECORD_STORE_TIMEOUT,
            telemetry=telemetry,
        )
    if record_store is None:
        logger.warning("RECORD_STORE_URL not set; queued interactions will stay local until one is configured")

    sync_engine = OfflineSyncEngine(
        store=store,
        record_store=record_store,
        max_retries=settings.SYNC_MAX_RETRIES,
        sync_interval_seconds=settings.SYNC_INTERVAL_SECONDS,
        debounce_seconds=settings.SYNC_DEBOUNCE_SECONDS,
    )

    return MobileServices(
        store=store,
        telemetry=telemetry,
        geolocation=geolocation,
        file_transfer=file_transfer,
        validator=validator,
        sync_engine=sync_engine,
        upload_endpoint=settings.UPLOAD_ENDPOINT,
    )
