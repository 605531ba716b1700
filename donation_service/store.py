import logging
from datetime import timedelta

from sqlalchemy import update, func
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from donation_service.errors import DonationNotFound, PersistenceError
from donation_service.models import Donation, DonationStatus, utcnow
from donation_service.retry import call_with_retry

logger = logging.getLogger(__name__)

# Columns a caller may write through update(); JSON maps are merged, the rest replaced
_MERGED = ("payment_details", "refund_details")
_REPLACED = ("status", "payment_id")


def _is_transient(exc):
    return isinstance(exc, PersistenceError) and exc.transient


class DonationStore:
    """CRUD access to the ``donations`` table.

    Every call opens its own session and returns detached ``Donation`` rows.
    SQLAlchemy failures surface as ``PersistenceError``. Connection-level
    ``OperationalError`` and writes that lost a version race are marked
    transient and retried with backoff.
    """

    def __init__(self, session_factory, attempts=3, backoff=0.5):
        self.session_factory = session_factory
        self.attempts = attempts
        self.backoff = backoff

    def _run(self, func, *args):
        return call_with_retry(
            self._in_session, func, *args,
            attempts=self.attempts, backoff=self.backoff, should_retry=_is_transient,
        )

    def _in_session(self, func, *args):
        db = self.session_factory()
        try:
            return func(db, *args)
        except IntegrityError as exc:
            db.rollback()
            raise PersistenceError(f"Integrity violation: {exc.orig}") from exc
        except OperationalError as exc:
            db.rollback()
            raise PersistenceError(f"Database unavailable: {exc.orig}", transient=True) from exc
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError(f"Database error: {exc}") from exc
        finally:
            db.close()

    # ------------------------------------------------------------------ reads

    def get_by_id(self, donation_id):
        return self._run(lambda db: db.get(Donation, donation_id))

    def get_by_order_id(self, order_id):
        return self._run(lambda db: db.query(Donation).filter_by(order_id=order_id).first())

    def get_by_payment_id(self, payment_id):
        return self._run(lambda db: db.query(Donation).filter_by(payment_id=payment_id).first())

    def list(self, status=None, offset=0, limit=20):
        def _list(db):
            query = db.query(Donation)
            if status:
                query = query.filter(Donation.status == status)
            total = query.with_entities(func.count(Donation.id)).scalar()
            rows = query.order_by(Donation.created_at.desc()).offset(offset).limit(limit).all()
            return rows, total

        return self._run(_list)

    def list_pending(self, created_within_minutes=0, limit=100):
        def _pending(db):
            query = db.query(Donation).filter(Donation.status == DonationStatus.PENDING.value)
            if created_within_minutes > 0:
                cutoff = utcnow() - timedelta(minutes=created_within_minutes)
                query = query.filter(Donation.created_at >= cutoff)
            return query.order_by(Donation.created_at).limit(limit).all()

        return self._run(_pending)

    # ----------------------------------------------------------------- writes

    def create(self, donation_data):
        def _create(db):
            now = utcnow()
            donation = Donation(**{
                "status": DonationStatus.PENDING.value,
                **donation_data,
                "created_at": now,
                "updated_at": now,
            })
            db.add(donation)
            db.commit()
            db.refresh(donation)
            return donation

        return self._run(_create)

    def update(self, donation_id, **fields):
        """Merge ``payment_details``/``refund_details`` and replace the rest."""

        def _update(db):
            donation, _ = self._write(db, donation_id, fields)
            return donation

        return self._run(_update)

    def transition(self, donation_id, status, allowed_from, **fields):
        """Write ``status`` only if the row is currently in ``allowed_from``.

        Returns ``(donation, applied)``. The status check, the detail merge and
        the write all go against one row version, so two racing writers cannot
        both apply and neither can drop the other's details.
        """

        def _transition(db):
            return self._write(
                db, donation_id, {**fields, "status": DonationStatus(status).value},
                allowed_from=[DonationStatus(s).value for s in allowed_from],
            )

        return self._run(_transition)

    def _write(self, db, donation_id, fields, allowed_from=None):
        donation = db.get(Donation, donation_id, with_for_update=True)
        if donation is None:
            raise DonationNotFound(donation_id)
        if allowed_from is not None and donation.status not in allowed_from:
            return donation, False

        values = {"updated_at": utcnow(), "version": donation.version + 1}
        for key, value in fields.items():
            if key in _MERGED:
                values[key] = {**(getattr(donation, key) or {}), **(value or {})}
            elif key in _REPLACED:
                values[key] = value
            else:
                raise ValueError(f"Donation field {key!r} is not updatable")

        result = db.execute(
            update(Donation)
            .where(Donation.id == donation_id, Donation.version == donation.version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Someone wrote between our read and our update; retried from a fresh read
            db.rollback()
            raise PersistenceError(f"Donation {donation_id} changed concurrently", transient=True)
        db.commit()
        db.refresh(donation)
        return donation, True
