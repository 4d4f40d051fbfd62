import asyncio
import logging

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from worker.celery_app import celery
from app.core.config import settings
import app.models  # noqa: F401  # ensures Models are registered
from app.orders.sql_store import SqlOrderStore
from app.services.apply_processor import drain_apply_queue
from app.services.courier_client import CourierClient
from app.services.export_dispatcher import dispatch_export_batch
from app.services.export_prepare import drain_export_prepare
from app.services.payload_builder import PayloadPolicy


log = logging.getLogger(__name__)


def _session_factory():
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    return engine, async_sessionmaker(engine, expire_on_commit=False)


async def _prepare() -> dict:
    engine, Session = _session_factory()
    try:
        async with Session() as db:
            summary = await drain_export_prepare(db, SqlOrderStore(db), policy=PayloadPolicy.from_settings())
    finally:
        await engine.dispose()
    return {"claimed": summary.claimed, "outcomes": summary.outcomes}


async def _dispatch() -> tuple[dict, bool]:
    engine, Session = _session_factory()
    try:
        async with Session() as db, CourierClient.from_settings() as client:
            summary = await dispatch_export_batch(db, SqlOrderStore(db), client)
    finally:
        await engine.dispose()
    return {"selected": summary.selected, "outcomes": summary.outcomes}, summary.full


async def _apply() -> dict:
    engine, Session = _session_factory()
    try:
        async with Session() as db:
            summary = await drain_apply_queue(db, SqlOrderStore(db))
    finally:
        await engine.dispose()
    return {"selected": summary.selected, "outcomes": summary.outcomes}


@celery.task(name="worker.tasks.prepare_export_queue")
def prepare_export_queue() -> dict:
    return asyncio.run(_prepare())


@celery.task(name="worker.tasks.dispatch_export_queue")
def dispatch_export_queue() -> dict:
    result, full = asyncio.run(_dispatch())
    if full:
        # a full batch usually means more is due; don't wait for the next beat
        log.info("dispatch: batch full, rescheduling immediately")
        dispatch_export_queue.apply_async(queue="export")
    return result


@celery.task(name="worker.tasks.apply_courier_events")
def apply_courier_events() -> dict:
    return asyncio.run(_apply())
