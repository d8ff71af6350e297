"""
Quota Manager: owns the monthly APIQuotaTracker rows.

Answers "how many calls may I make now", records calls as they happen, and
sends the quota-exceeded notification at most once per month.
"""
import logging
from datetime import datetime
from typing import Callable, List

from sqlalchemy.exc import IntegrityError

from core.exceptions import QuotaExceededError
from harvester.database import SessionLocal, session_scope
from harvester.models import APIQuotaTracker

logger = logging.getLogger(__name__)

DEFAULT_QUOTA_LIMIT = 50000


class QuotaManager:
    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        notifier=None,
        default_limit: int = DEFAULT_QUOTA_LIMIT,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.default_limit = default_limit or DEFAULT_QUOTA_LIMIT
        self.clock = clock

    def _session(self):
        return session_scope(self.session_factory)

    @staticmethod
    def _detach(session, tracker: APIQuotaTracker) -> APIQuotaTracker:
        session.refresh(tracker)
        session.expunge(tracker)
        return tracker

    def _get_or_create(self, session) -> APIQuotaTracker:
        """Load the current month's tracker, creating it on first access."""
        now = self.clock()
        tracker = session.query(APIQuotaTracker).filter(
            APIQuotaTracker.month == now.month,
            APIQuotaTracker.year == now.year,
        ).first()
        if tracker:
            return tracker

        tracker = APIQuotaTracker(
            month=now.month,
            year=now.year,
            call_count=0,
            quota_limit=self.default_limit,
            quota_exceeded=False,
            override_enabled=False,
            notification_sent=False,
        )
        session.add(tracker)
        try:
            session.commit()
            logger.info("[QUOTA] Created tracker for %02d/%d (limit=%d)", now.month, now.year, self.default_limit)
            return tracker
        except IntegrityError:
            # Another caller created it first
            session.rollback()
            return session.query(APIQuotaTracker).filter(
                APIQuotaTracker.month == now.month,
                APIQuotaTracker.year == now.year,
            ).one()

    # ------------------------------------------------------------------
    # Reservation & accounting
    # ------------------------------------------------------------------

    def reserve(self, requested: int) -> int:
        """Return how many of ``requested`` calls may be made now.

        Raises QuotaExceededError when the month's quota is exhausted and no
        override is active, or when no headroom is left at all.
        """
        with self._session() as session:
            tracker = self._get_or_create(session)

            if tracker.quota_exceeded and not tracker.override_enabled:
                if not tracker.notification_sent:
                    self._notify_exceeded(session, tracker)
                raise QuotaExceededError(
                    f"API quota exceeded ({tracker.call_count}/{tracker.quota_limit}). "
                    "Will auto-resume on 1st of next month. Admin can enable override."
                )

            remaining = tracker.quota_limit - tracker.call_count
            allowed = requested
            if remaining < requested:
                allowed = max(remaining, 0)
                if allowed == 0:
                    raise QuotaExceededError(
                        f"insufficient API quota remaining ({tracker.call_count}/{tracker.quota_limit})"
                    )
            return allowed

    def record_calls(self, n: int = 1) -> APIQuotaTracker:
        """Atomically add ``n`` calls to the current month's counter."""
        if n < 0:
            raise ValueError("call count increment must be >= 0")

        with self._session() as session:
            tracker = self._get_or_create(session)
            was_exceeded = tracker.quota_exceeded
            now = self.clock()

            session.query(APIQuotaTracker).filter(APIQuotaTracker.id == tracker.id).update(
                {
                    APIQuotaTracker.call_count: APIQuotaTracker.call_count + n,
                    APIQuotaTracker.quota_exceeded: (APIQuotaTracker.call_count + n) >= APIQuotaTracker.quota_limit,
                    APIQuotaTracker.last_call_at: now,
                    APIQuotaTracker.updated_at: now,
                },
                synchronize_session=False,
            )
            session.commit()
            session.refresh(tracker)

            if tracker.quota_exceeded and not was_exceeded:
                logger.warning("[QUOTA] Quota exceeded: %d/%d", tracker.call_count, tracker.quota_limit)
                self._notify_exceeded(session, tracker)

            return self._detach(session, tracker)

    def _notify_exceeded(self, session, tracker: APIQuotaTracker):
        """Send the exceeded alert once per tracker, guarded by notification_sent."""
        claimed = session.query(APIQuotaTracker).filter(
            APIQuotaTracker.id == tracker.id,
            APIQuotaTracker.notification_sent == False,  # noqa: E712
        ).update({APIQuotaTracker.notification_sent: True}, synchronize_session=False)
        session.commit()
        if not claimed or self.notifier is None:
            return

        sent = False
        try:
            sent = self.notifier.quota_exceeded(
                tracker.call_count, tracker.quota_limit, tracker.month, tracker.year
            )
        except Exception as e:
            logger.error("[QUOTA] Failed to send quota exceeded notification: %s", e)

        if not sent:
            # Let a later call try again
            session.query(APIQuotaTracker).filter(APIQuotaTracker.id == tracker.id).update(
                {APIQuotaTracker.notification_sent: False}, synchronize_session=False
            )
            session.commit()

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    def set_override(self, enabled: bool) -> APIQuotaTracker:
        with self._session() as session:
            tracker = self._get_or_create(session)
            tracker.override_enabled = enabled
            session.commit()
            logger.info("[QUOTA] Override %s", "enabled" if enabled else "disabled")
            self._safe_notify("override_changed", enabled)
            return self._detach(session, tracker)

    def update_limit(self, new_limit: int) -> APIQuotaTracker:
        if new_limit <= 0:
            raise ValueError("quota limit must be > 0")
        with self._session() as session:
            tracker = self._get_or_create(session)
            tracker.quota_limit = new_limit
            tracker.quota_exceeded = tracker.call_count >= new_limit
            session.commit()
            logger.info("[QUOTA] Limit for %02d/%d set to %d", tracker.month, tracker.year, new_limit)
            return self._detach(session, tracker)

    def current_status(self) -> APIQuotaTracker:
        with self._session() as session:
            return self._detach(session, self._get_or_create(session))

    def history(self, limit: int = 12) -> List[APIQuotaTracker]:
        with self._session() as session:
            trackers = session.query(APIQuotaTracker).order_by(
                APIQuotaTracker.year.desc(), APIQuotaTracker.month.desc()
            ).limit(limit).all()
            for t in trackers:
                session.expunge(t)
            return trackers

    def reset_monthly(self) -> APIQuotaTracker:
        """Create the tracker for the current month. Safe to call repeatedly."""
        now = self.clock()
        with self._session() as session:
            session.add(APIQuotaTracker(
                month=now.month,
                year=now.year,
                call_count=0,
                quota_limit=self.default_limit,
                quota_exceeded=False,
                override_enabled=False,
                notification_sent=False,
            ))
            try:
                session.commit()
                logger.info("[QUOTA] Reset quota for %02d/%d (limit=%d)", now.month, now.year, self.default_limit)
            except IntegrityError:
                session.rollback()
                logger.info("[QUOTA] Tracker for %02d/%d already exists, nothing to reset", now.month, now.year)

            tracker = self._get_or_create(session)
            self._safe_notify("quota_reset", now.month, now.year, tracker.quota_limit)
            return self._detach(session, tracker)

    def _safe_notify(self, method: str, *args):
        if self.notifier is None:
            return
        try:
            getattr(self.notifier, method)(*args)
        except Exception as e:
            logger.error("[QUOTA] Failed to send %s notification: %s", method, e)
