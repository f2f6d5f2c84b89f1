import logging
from datetime import datetime, timezone

from receipt_approvals.config import get_settings
from receipt_approvals.services.export import receipts_to_csv
from receipt_approvals.services.firestore import list_approved_receipts
from receipt_approvals.services.gcs import upload_report

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def run(now=None):
    receipts = list_approved_receipts()
    if not receipts:
        logger.info("No approved receipts to export")
        return None

    now = now or datetime.now(timezone.utc)
    filename = f"reports/recibos-{now.strftime('%Y%m%d-%H%M%S')}.csv"
    uri = upload_report(get_settings().report_bucket_name, filename, receipts_to_csv(receipts))
    logger.info("Wrote %d approved receipts to %s", len(receipts), uri)
    return uri


if __name__ == "__main__":
    run()
