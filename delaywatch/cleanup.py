import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from delaywatch.business_days import utcnow
from delaywatch.models import Merchant, Shipment

logger = logging.getLogger(__name__)


DATA_CLEANUP_QUEUE = "data-cleanup"
DATA_CLEANUP_JOB_ID = "data-cleanup"
DATA_CLEANUP_INTERVAL_SECONDS = 24 * 60 * 60


def archive_delivered_shipments(db: Session, now: Optional[datetime] = None) -> int:
    """Archive shipments delivered longer ago than the merchant's ``auto_archive_days``."""
    now = now or utcnow()
    archived = 0

    for merchant in db.query(Merchant).all():
        cutoff = now - timedelta(days=merchant.get_settings().auto_archive_days)
        count = (
            db.query(Shipment)
            .filter(
                Shipment.merchant_id == merchant.id,
                Shipment.is_delivered.is_(True),
                Shipment.is_archived.is_(False),
                Shipment.delivered_at.isnot(None),
                Shipment.delivered_at < cutoff,
            )
            .update(
                {
                    Shipment.is_archived: True,
                    Shipment.archived_at: now,
                    Shipment.next_poll_at: None,
                },
                synchronize_session=False,
            )
        )
        if count:
            logger.info(f"📦 Archived {count} delivered shipment(s) for {merchant.shop_domain}")
        archived += count

    db.commit()
    logger.info(f"✅ Data cleanup archived {archived} shipment(s)")
    return archived
