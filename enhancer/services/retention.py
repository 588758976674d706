import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from sqlalchemy.exc import SQLAlchemyError

from enhancer.adapters.storage import SupabaseStorage
from enhancer.core.config import Settings
from enhancer.core.errors import EnhancerError
from enhancer.data.images import ImageStore
from enhancer.data.schema import utc_now_iso
from enhancer.services.notify import Notifier

log = logging.getLogger("retention")


@dataclass
class SweepReport:
    cutoff: str
    deleted: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_public(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": True,
            "cutoff": self.cutoff,
            "deletedCount": self.deleted,
            "errorCount": self.failed,
        }
        if self.errors:
            out["errors"] = self.errors
        return out


class RetentionService:
    def __init__(
        self,
        images: ImageStore,
        storage: SupabaseStorage,
        notifier: Notifier,
        settings: Settings,
    ):
        self.images = images
        self.storage = storage
        self.notifier = notifier
        self.settings = settings

    async def sweep(self, now: dt.datetime | None = None) -> SweepReport:
        """Delete image records past retention together with both stored objects.

        One image failing never aborts the sweep; its error is collected.
        """
        now = now or dt.datetime.now(dt.timezone.utc)
        cutoff = utc_now_iso(now - dt.timedelta(hours=self.settings.RETENTION_HOURS))
        report = SweepReport(cutoff=cutoff)
        expired = self.images.older_than(cutoff)
        log.info("retention.sweep start cutoff=%s candidates=%d", cutoff, len(expired))

        for image in expired:
            for url in (image.original_url, image.enhanced_url):
                try:
                    await self.storage.delete(url)
                except EnhancerError as e:
                    # the record still goes; the object is left behind
                    log.warning("retention.storage_delete failed image=%s err=%s", image.id, e.message)
                    report.errors.append(f"storage {image.id}: {e.message}")
            try:
                self.images.delete(image.id)
                report.deleted += 1
            except SQLAlchemyError as e:
                report.failed += 1
                report.errors.append(f"Failed to delete image {image.id}: {type(e).__name__}")
                log.exception("retention.record_delete failed image=%s", image.id)

        log.info(
            "retention.sweep done deleted=%d failed=%d errors=%d",
            report.deleted,
            report.failed,
            len(report.errors),
        )
        return report

    def storage_usage(self) -> Dict[str, Any]:
        """Estimate bucket usage from the record count and alert at the threshold."""
        count = self.images.count()
        estimated = count * self.settings.ESTIMATED_BYTES_PER_IMAGE
        limit = max(1, self.settings.STORAGE_LIMIT_BYTES)
        ratio = estimated / limit
        alert = ratio >= self.settings.STORAGE_ALERT_THRESHOLD
        emailed = False
        if alert:
            pct = ratio * 100
            subject = f"Storage limit alert - {pct:.1f}% used"
            body = "\n".join(
                [
                    "Storage is approaching the configured limit.",
                    "",
                    f"Current usage (estimated): {estimated / 1024 / 1024:.2f} MB",
                    f"Storage limit: {limit / 1024 / 1024:.2f} MB",
                    f"Usage: {pct:.1f}%",
                    f"Images: {count}",
                    "",
                    "Consider running the cleanup job or raising the storage plan.",
                ]
            )
            emailed = self.notifier.send_alert(subject, body)
            log.warning("retention.storage_alert pct=%.1f images=%d emailed=%s", pct, count, emailed)
        return {
            "estimatedUsage": estimated,
            "limit": limit,
            "percentage": f"{ratio * 100:.2f}",
            "imageCount": count,
            "alertSent": alert,
            "emailed": emailed,
        }
