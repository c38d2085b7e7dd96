"""Entity repositories - data access for the placeable entities.

Leads, service files and trays carry the timestamps the time-trigger rules
read and the flags the rules write. Tags hang off leads.

Each repository extends BaseCRUD and adds the queries its rules need.
"""
from typing import Optional, List, Dict, Iterable
from datetime import datetime
from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from loguru import logger

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import Lead, ServiceFile, Tray, TrayItem, Tag, LeadTag


class LeadRepository(BaseCRUD):
    """Lead repository."""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get_expired_callbacks(self, now: datetime,
                              session: Optional[Session] = None) -> List[Lead]:
        """Leads whose callback or no-answer retry time has passed.

        Args:
            now: reference time.

        Returns:
            Leads with ``callback_date <= now`` or
            ``nu_raspunde_callback_at <= now``.
        """
        def _query(sess):
            return sess.query(Lead).filter(
                or_(
                    Lead.callback_date <= now,
                    Lead.nu_raspunde_callback_at <= now,
                )
            ).order_by(Lead.id).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_dispatched_before(self, cutoff: datetime,
                              session: Optional[Session] = None) -> List[Lead]:
        """Leads sent by courier or dropped at the office at or before ``cutoff``."""
        def _query(sess):
            return sess.query(Lead).filter(
                or_(
                    Lead.curier_trimis_at <= cutoff,
                    Lead.office_direct_at <= cutoff,
                )
            ).order_by(Lead.id).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_callbacks_between(self, start: datetime, end: datetime,
                              session: Optional[Session] = None) -> List[Lead]:
        """Leads with a callback scheduled strictly inside (start, end)."""
        def _query(sess):
            return sess.query(Lead).filter(
                Lead.callback_date > start,
                Lead.callback_date < end,
            ).order_by(Lead.callback_date).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_many(self, lead_ids: Iterable[int],
                 session: Optional[Session] = None) -> Dict[int, Lead]:
        ids = list(lead_ids)
        if not ids:
            return {}

        def _query(sess):
            rows = sess.query(Lead).filter(Lead.id.in_(ids)).all()
            return {lead.id: lead for lead in rows}

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)


class ServiceFileRepository(BaseCRUD):
    """Service file repository."""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get_dispatched_before(self, cutoff: datetime,
                              session: Optional[Session] = None
                              ) -> List[ServiceFile]:
        """Courier or office-direct files whose dispatch time is at or before ``cutoff``.

        The dispatch time is the first set of ``curier_scheduled_at``,
        ``office_direct_at`` and ``created_at``.
        """
        dispatched_at = func.coalesce(
            ServiceFile.curier_scheduled_at,
            ServiceFile.office_direct_at,
            ServiceFile.created_at,
        )

        def _query(sess):
            return sess.query(ServiceFile).filter(
                or_(
                    ServiceFile.curier_trimis.is_(True),
                    ServiceFile.office_direct.is_(True),
                ),
                ServiceFile.lead_id.isnot(None),
                dispatched_at <= cutoff,
            ).order_by(ServiceFile.id).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_unclaimed_candidates(self, cutoff: datetime,
                                 session: Optional[Session] = None
                                 ) -> List[ServiceFile]:
        """Courier files still open whose pickup was scheduled before ``cutoff``.

        Invoiced, locked, cancelled and arrived files are excluded.
        """
        def _query(sess):
            return sess.query(ServiceFile).filter(
                ServiceFile.curier_trimis.is_(True),
                ServiceFile.colet_ajuns.isnot(True),
                ServiceFile.status != "facturata",
                ServiceFile.is_locked.is_(False),
                ServiceFile.cancelled.is_(False),
                ServiceFile.curier_scheduled_at.isnot(None),
                ServiceFile.curier_scheduled_at < cutoff,
            ).order_by(ServiceFile.id).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_open_for_lead(self, lead_id: int,
                          exclude_id: Optional[int] = None,
                          session: Optional[Session] = None
                          ) -> List[ServiceFile]:
        """Files of a lead that are neither archived nor cancelled."""
        def _query(sess):
            query = sess.query(ServiceFile).filter(
                ServiceFile.lead_id == lead_id,
                ServiceFile.archived_at.is_(None),
                ServiceFile.cancelled.is_(False),
            )
            if exclude_id is not None:
                query = query.filter(ServiceFile.id != exclude_id)
            return query.order_by(ServiceFile.id).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_many(self, service_file_ids: Iterable[int],
                 session: Optional[Session] = None) -> Dict[int, ServiceFile]:
        ids = list(service_file_ids)
        if not ids:
            return {}

        def _query(sess):
            rows = sess.query(ServiceFile).filter(ServiceFile.id.in_(ids)).all()
            return {sf.id: sf for sf in rows}

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def lock_for_invoice(self, session: Session, service_file_id: int,
                         locked_at: datetime) -> bool:
        """Set ``is_locked`` unless another transaction already did.

        A conditional UPDATE: of two concurrent invoicings of one file only
        the first matches the row, the second sees zero rows.

        Args:
            session: the invoicing transaction.
            service_file_id: file to lock.
            locked_at: lock time.

        Returns:
            True when this transaction took the lock.
        """
        result = session.execute(
            update(ServiceFile)
            .where(
                ServiceFile.id == service_file_id,
                ServiceFile.is_locked.isnot(True),
                ServiceFile.archived_at.is_(None),
            )
            .values(is_locked=True, updated_at=locked_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def mark_package_arrived(self, service_file_id: int, arrived_at: datetime,
                             session: Optional[Session] = None) -> bool:
        """Set ``colet_ajuns`` on a file.

        Returns:
            False when the file was already marked.
        """
        def _do(sess):
            count = sess.query(ServiceFile).filter(
                ServiceFile.id == service_file_id,
                ServiceFile.colet_ajuns.isnot(True),
            ).update(
                {"colet_ajuns": True, "colet_ajuns_at": arrived_at,
                 "updated_at": arrived_at},
                synchronize_session=False,
            )
            sess.flush()
            return count == 1

        if session:
            return _do(session)

        with self._get_session() as sess:
            marked = _do(sess)
            sess.commit()
            return marked


class TrayRepository(BaseCRUD):
    """Tray and tray line item repository."""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get_for_service_file(self, service_file_id: int,
                             session: Optional[Session] = None) -> List[Tray]:
        return self.get_all(
            Tray, filters={"service_file_id": service_file_id}, session=session
        )

    def get_items(self, tray_ids: Iterable[int],
                  session: Optional[Session] = None) -> List[TrayItem]:
        ids = list(tray_ids)
        if not ids:
            return []

        def _query(sess):
            return sess.query(TrayItem).filter(
                TrayItem.tray_id.in_(ids)
            ).order_by(TrayItem.tray_id, TrayItem.id).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def delete_items(self, tray_ids: Iterable[int],
                     session: Optional[Session] = None) -> int:
        """Delete every line item of the given trays.

        Returns:
            Number of deleted rows.
        """
        ids = list(tray_ids)
        if not ids:
            return 0

        def _do(sess):
            count = sess.query(TrayItem).filter(
                TrayItem.tray_id.in_(ids)
            ).delete(synchronize_session=False)
            sess.flush()
            return count

        if session:
            return _do(session)

        with self._get_session() as sess:
            count = _do(sess)
            sess.commit()
            return count

    def number_exists(self, number: str,
                      session: Optional[Session] = None) -> bool:
        def _query(sess):
            return sess.query(Tray.id).filter(
                Tray.number == number
            ).first() is not None

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)


class TagRepository(BaseCRUD):
    """Tag repository (lead tags)."""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get_or_create(self, name: str, color: str = "gray",
                      session: Optional[Session] = None) -> Tag:
        """Get or create a tag by name.

        Args:
            name: tag name.
            color: colour used when creating.
            session: external session (optional).

        Returns:
            Tag object.
        """
        def _do(sess):
            tag = sess.query(Tag).filter(Tag.name == name).first()
            if tag:
                return tag
            try:
                with sess.begin_nested():
                    tag = Tag(name=name, color=color)
                    sess.add(tag)
            except IntegrityError:
                logger.debug(f"Tag '{name}' created concurrently, reusing it")
                tag = sess.query(Tag).filter(Tag.name == name).one()
            return tag

        if session:
            return _do(session)

        with self._get_session() as sess:
            tag = _do(sess)
            sess.commit()
            return tag

    def lead_has_tag(self, lead_id: int, tag_id: int,
                     session: Optional[Session] = None) -> bool:
        def _query(sess):
            return sess.query(LeadTag.id).filter(
                LeadTag.lead_id == lead_id, LeadTag.tag_id == tag_id
            ).first() is not None

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def add_to_lead(self, lead_id: int, tag_id: int,
                    session: Optional[Session] = None) -> bool:
        """Attach a tag to a lead.

        Returns:
            False when the lead already carried the tag, including when a
            concurrent writer attached it first.
        """
        def _do(sess):
            if self.lead_has_tag(lead_id, tag_id, session=sess):
                return False
            try:
                with sess.begin_nested():
                    sess.add(LeadTag(lead_id=lead_id, tag_id=tag_id))
            except IntegrityError:
                logger.debug(f"Tag {tag_id} attached to lead {lead_id} concurrently")
                return False
            return True

        if session:
            return _do(session)

        with self._get_session() as sess:
            added = _do(sess)
            sess.commit()
            return added

    def remove_from_lead(self, lead_id: int, tag_id: int,
                         session: Optional[Session] = None) -> bool:
        def _do(sess):
            count = sess.query(LeadTag).filter(
                LeadTag.lead_id == lead_id, LeadTag.tag_id == tag_id
            ).delete(synchronize_session=False)
            sess.flush()
            return count > 0

        if session:
            return _do(session)

        with self._get_session() as sess:
            removed = _do(sess)
            sess.commit()
            return removed

    def names_for_leads(self, lead_ids: Iterable[int],
                        session: Optional[Session] = None
                        ) -> Dict[int, List[str]]:
        """Tag names per lead id."""
        ids = list(lead_ids)
        if not ids:
            return {}

        def _query(sess):
            rows = sess.query(LeadTag.lead_id, Tag.name).join(
                Tag, Tag.id == LeadTag.tag_id
            ).filter(LeadTag.lead_id.in_(ids)).order_by(Tag.name).all()
            result: Dict[int, List[str]] = {}
            for lead_id, name in rows:
                result.setdefault(lead_id, []).append(name)
            return result

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def leads_with_tag(self, tag_name: str, lead_ids: Iterable[int],
                       session: Optional[Session] = None) -> List[int]:
        ids = list(lead_ids)
        if not ids:
            return []

        def _query(sess):
            rows = sess.query(LeadTag.lead_id).join(
                Tag, Tag.id == LeadTag.tag_id
            ).filter(
                Tag.name == tag_name, LeadTag.lead_id.in_(ids)
            ).all()
            return [row[0] for row in rows]

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)
