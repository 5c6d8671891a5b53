"""
Daily subscription jobs.

    python -m marketplace.jobs cancellations
    python -m marketplace.jobs renewals
    python -m marketplace.jobs schedule
"""
import argparse
import calendar
import logging
import sys
import time

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from marketplace import payments
from marketplace.config import LOG_LEVEL, SCHEDULER_TIMEZONE
from marketplace.database import Base, engine, session_scope
from marketplace.models import ServiceConsumer, SubscriptionStatus, SubscriptionTier, utcnow
from marketplace.schemas import JobResult, PaymentIntentStatus

logger = logging.getLogger(__name__)


def one_month_before(moment):
    year, month = (moment.year, moment.month - 1) if moment.month > 1 else (moment.year - 1, 12)
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def check_subscription_cancellations(db, now=None):
    cutoff = one_month_before(now or utcnow())

    to_cancel = db.query(ServiceConsumer).filter(
        ServiceConsumer.subscription_status == SubscriptionStatus.PENDING_CANCELLATION,
        ServiceConsumer.last_renewed <= cutoff,
    ).all()

    for consumer in to_cancel:
        consumer.subscription_status = SubscriptionStatus.CANCELLED
    db.commit()

    return JobResult(success=True, count=len(to_cancel))


def renewal_key(subscription, now):
    # One charge per subscription per day, however often the job runs
    return "renewal:%s:%s" % (subscription.id, now.date().isoformat())


def check_subscription_renewals(db, now=None):
    now = now or utcnow()
    cutoff = one_month_before(now)

    due = (
        db.query(ServiceConsumer)
        .join(SubscriptionTier)
        .filter(
            ServiceConsumer.subscription_status == SubscriptionStatus.ACTIVE,
            ServiceConsumer.renewing_subscription.is_(True),
            ServiceConsumer.last_renewed <= cutoff,
            SubscriptionTier.price > 0,
        )
        .all()
    )

    renewed = 0
    for subscription in due:
        try:
            if subscription.payment_method is None:
                logger.warning("subscription %s has no payment method, not renewing", subscription.id)
                subscription.subscription_status = SubscriptionStatus.PENDING_CANCELLATION
                db.commit()
                continue

            result = payments.charge_renewal(db, subscription, idempotency_key=renewal_key(subscription, now))
            if result.success:
                subscription.last_renewed = now
                subscription.payment_intent_id = result.data.payment_intent_id
                renewed += 1
            else:
                if result.status == PaymentIntentStatus.CONFIRMATION_REQUIRED:
                    # Nobody is in-session to authenticate a renewal
                    payments.cancel_payment_intent(db, result.data.payment_intent_id)
                logger.info("renewal of subscription %s failed: %s", subscription.id, result.message)
                subscription.subscription_status = SubscriptionStatus.PENDING_CANCELLATION
            db.commit()
        except Exception:
            logger.exception("renewing subscription %s failed", subscription.id)
            db.rollback()

    return JobResult(success=renewed > 0, count=renewed)


def run_cancellations():
    with session_scope() as db:
        result = check_subscription_cancellations(db)
    if result.success:
        logger.info("Processed cancellations: %s", result.count)
    else:
        logger.info("No cancellations processed.")
    return result


def run_renewals():
    with session_scope() as db:
        result = check_subscription_renewals(db)
    if result.success:
        logger.info("Processed subscription renewals: %s", result.count)
    else:
        logger.info("No subscription renewals processed.")
    return result


def _run_daily():
    logger.info("Running daily subscription checks")
    for job in (run_cancellations, run_renewals):
        try:
            job()
        except Exception:
            logger.exception("%s failed", job.__name__)


def start_scheduler(scheduler=None):
    """Every day at 00:00 in SCHEDULER_TIMEZONE."""
    scheduler = scheduler or BackgroundScheduler(timezone=SCHEDULER_TIMEZONE)
    scheduler.add_job(
        _run_daily,
        CronTrigger(hour=0, minute=0, timezone=SCHEDULER_TIMEZONE),
        id="daily_subscription_checks",
        name="Subscription cancellations and renewals",
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Subscription scheduler started (%s)", SCHEDULER_TIMEZONE)
    return scheduler


def main(argv=None):
    parser = argparse.ArgumentParser(description="Marketplace subscription jobs")
    parser.add_argument("job", choices=["cancellations", "renewals", "schedule"])
    args = parser.parse_args(argv)

    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    Base.metadata.create_all(bind=engine)

    try:
        if args.job == "cancellations":
            run_cancellations()
        elif args.job == "renewals":
            run_renewals()
        else:
            _run_daily()
            scheduler = start_scheduler()
            try:
                while True:
                    time.sleep(60)
            except (KeyboardInterrupt, SystemExit):
                scheduler.shutdown()
    except Exception:
        logger.exception("%s job failed", args.job)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
