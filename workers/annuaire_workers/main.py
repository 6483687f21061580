from __future__ import annotations

import asyncio
import logging

from annuaire_workers.core.config import get_settings
from annuaire_workers.core.telemetry import (
    configure_worker_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from annuaire_workers.jobs.pool import WorkerPool
from annuaire_workers.jobs.scheduler import Scheduler
from annuaire_workers.services.directory_client import DirectoryClient
from annuaire_workers.services.engine_client import EngineClient

logger = logging.getLogger(__name__)


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging(settings.log_level)
    telemetry_runtime = setup_worker_telemetry(settings)
    client = EngineClient(
        base_url=settings.api_base_url,
        module_id=settings.module_id,
        api_key=settings.api_key,
        timeout_seconds=settings.api_timeout_seconds,
        scheduler_timeout_seconds=settings.scheduler_timeout_seconds,
        api_key_header=settings.api_key_header,
    )
    directory = DirectoryClient(
        settings.directory_base_url,
        api_key=settings.directory_api_key,
        operator_id=settings.operator_id,
        timeout_seconds=settings.directory_timeout_seconds,
        cert_path=settings.directory_cert_path,
        key_path=settings.directory_key_path,
        ca_path=settings.directory_ca_path,
    )
    scheduler = Scheduler(
        client,
        reconciliation_hour_utc=settings.reconciliation_hour_utc,
        indicator_aggregation_day=settings.indicator_aggregation_day,
        stale_reap_interval_seconds=settings.stale_reap_interval_seconds,
        stale_reap_batch_size=settings.stale_reap_batch_size,
        maintenance_interval_seconds=settings.maintenance_interval_seconds,
    )
    pool = WorkerPool(
        client,
        directory,
        concurrency=settings.concurrency,
        poll_interval_seconds=settings.poll_interval_seconds,
        poll_batch_size=settings.poll_batch_size,
        max_backoff_seconds=settings.max_backoff_seconds,
        stale_reap_batch_size=settings.stale_reap_batch_size,
        scheduler=scheduler,
        scheduler_interval_seconds=settings.scheduler_interval_seconds,
    )

    logger.info(
        "publication worker starting module_id=%s concurrency=%s api=%s",
        settings.module_id,
        settings.concurrency,
        settings.api_base_url,
    )
    try:
        await pool.run()
    finally:
        shutdown_worker_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
