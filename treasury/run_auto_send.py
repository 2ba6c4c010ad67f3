from __future__ import annotations

import argparse
import json
import logging

from treasury.config import settings
from treasury.db import SessionLocal
from treasury.logging_config import configure_logging
from treasury.services.audit_service import log_audit
from treasury.services.auto_send_service import load_auto_send_config
from treasury.services.batch_service import BatchReport, run_auto_send_batch

logger = logging.getLogger(__name__)


def run_once(*, max_requests: int) -> BatchReport:
    with SessionLocal() as db:
        config = load_auto_send_config(db)
        if not config.enabled:
            logger.info('Auto-send is disabled; nothing to do')
        report = run_auto_send_batch(db, config, max_requests=max_requests)
        log_audit(
            db,
            actor='scheduler',
            action='AUTO_SEND_BATCH_RUN',
            request_id=None,
            metadata=report.as_dict(),
        )
        db.commit()
    return report


def main() -> None:
    parser = argparse.ArgumentParser(description='Advance approved draw requests that have cleared the auto-send window.')
    parser.add_argument(
        '--max-requests',
        type=int,
        default=settings.auto_send_batch_size,
        help='Maximum number of draw requests to process in this run.',
    )
    parser.add_argument('--log-level', default=None, help='Override LOG_LEVEL for this run.')
    args = parser.parse_args()

    configure_logging(args.log_level)
    report = run_once(max_requests=args.max_requests)
    print(json.dumps(report.as_dict()))
    if not report.success:
        raise SystemExit(1)


if __name__ == '__main__':
    main()
