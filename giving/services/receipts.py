"""
Donor receipts.

A receipt goes out at most once per contribution no matter how many times
the triggering event is delivered. The flag is claimed before sending:

    UPDATE contribution SET receipt_sent_at = :now
    WHERE id = :id AND receipt_sent_at IS NULL

Only the caller whose UPDATE touched a row sends. If the send then fails,
the claim is released (matching on the claimed timestamp) so the receipt
can be retried. If even the release fails, the claimed timestamp travels
with the ReceiptSendError; a retry that presents it may take the claim
over, and nobody else can.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from giving.core.exceptions import ReceiptSendError, TransientDependencyError
from giving.core.logging_config import get_logger
from giving.core.typing import col, rowcount, utc_now
from giving.models.contribution import Contribution
from giving.models.organization import Fund, Person, Tenant
from giving.services.email import EmailSender, render_receipt_email

logger = get_logger(__name__)


class ReceiptNotifier:
    def __init__(
        self,
        email_sender: EmailSender,
        fallback_domain: str = "church.app",
        default_organization_name: str = "Our Church",
    ):
        self._email_sender = email_sender
        self._fallback_domain = fallback_domain
        self._default_organization_name = default_organization_name

    def send_if_needed(
        self,
        session: Session,
        contribution: Contribution,
        held_claim: Optional[datetime] = None,
    ) -> bool:
        """
        Send the receipt for `contribution` unless it was already sent.

        `held_claim` is the timestamp of an earlier claim whose release
        failed (see ReceiptSendError). Passing it lets this call take that
        claim over and send.

        Returns True only if this call sent it.

        Raises:
            ReceiptSendError: if the email service failed. `claimed_at` is
                None when the claim was released, otherwise the claim left
                on the row.
        """
        if contribution.receipt_sent_at is not None and held_claim is None:
            return False

        person = session.get(Person, contribution.person_id) if contribution.person_id else None
        recipient = (person.email if person else None) or contribution.guest_email
        if not recipient:
            logger.info("No receipt address for contribution", contribution_id=contribution.id)
            return False

        claimed_at = self._claim(session, contribution.id, held_claim)
        if claimed_at is None:
            logger.info("Receipt already claimed elsewhere", contribution_id=contribution.id)
            session.refresh(contribution)
            return False

        tenant = session.get(Tenant, contribution.tenant_id)
        fund = session.get(Fund, contribution.fund_id)
        organization_name = tenant.name if tenant else self._default_organization_name
        domain = (tenant.domain if tenant else None) or self._fallback_domain

        html_body = render_receipt_email(
            organization_name=organization_name,
            donor_name=_donor_name(person, contribution),
            fund_name=fund.name if fund else contribution.fund_id,
            amount_cents=contribution.amount_cents,
            given_at=contribution.processed_at or claimed_at,
            payment_method=contribution.payment_method,
            reference=contribution.id[:8],
            tax_id=tenant.tax_id if tenant else None,
        )

        try:
            self._email_sender.send(
                to=recipient,
                from_=f"{organization_name} <giving@{domain}>",
                subject=f"Thank you for your gift to {organization_name}",
                html_body=html_body,
            )
        except TransientDependencyError as e:
            contribution_id = contribution.id
            try:
                self._release(session, contribution_id, claimed_at)
            except SQLAlchemyError as release_error:
                session.rollback()
                logger.error(
                    "Receipt claim could not be released",
                    contribution_id=contribution_id,
                    claimed_at=claimed_at.isoformat(),
                    error=str(release_error),
                )
                raise ReceiptSendError(str(e), dependency=e.dependency, claimed_at=claimed_at) from e
            raise ReceiptSendError(str(e), dependency=e.dependency) from e

        session.refresh(contribution)
        logger.info("Receipt sent", contribution_id=contribution.id)
        return True

    @staticmethod
    def _claim(session: Session, contribution_id: str, held_claim: Optional[datetime] = None):
        unclaimed = col(Contribution.receipt_sent_at).is_(None)
        if held_claim is not None:
            unclaimed = or_(unclaimed, col(Contribution.receipt_sent_at) == held_claim)

        now = utc_now()
        result = session.execute(
            update(Contribution)
            .where(col(Contribution.id) == contribution_id)
            .where(unclaimed)
            .values(receipt_sent_at=now)
        )
        session.commit()
        return now if rowcount(result) == 1 else None

    @staticmethod
    def _release(session: Session, contribution_id: str, claimed_at) -> None:
        session.execute(
            update(Contribution)
            .where(col(Contribution.id) == contribution_id)
            .where(col(Contribution.receipt_sent_at) == claimed_at)
            .values(receipt_sent_at=None)
        )
        session.commit()
        logger.info("Receipt claim released", contribution_id=contribution_id)


def _donor_name(person: Optional[Person], contribution: Contribution) -> str:
    if person and person.full_name:
        return person.full_name
    return contribution.guest_name or "Friend"
