"""Email notifications sent once a payment is confirmed."""

import ssl
import smtplib
import asyncio
import logging
from decimal import Decimal
from email.mime.text import MIMEText
from email.utils import parseaddr
from typing import Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import SMTPConfig
from .database import AppointmentRepository, session_scope

logger = logging.getLogger(__name__)


class EmailClient:
    """Thin SMTP client; sends plain text messages."""

    def __init__(self, config: SMTPConfig):
        self.config = config

    @staticmethod
    def _validate_email(email: str) -> bool:
        parsed = parseaddr(email)[1]
        return "@" in parsed and "." in parsed.split("@")[1]

    def send_email(self, to_email: str, subject: str, body: str) -> bool:
        """
        Send an email.

        Returns True if the email was sent, False otherwise.
        """
        if not self.config.is_configured:
            logger.warning(f"SMTP not configured, skipping email to {to_email}")
            return False

        if not to_email or not self._validate_email(to_email):
            logger.error(f"Invalid email address: {to_email}")
            return False

        msg = MIMEText(body)
        msg["Subject"] = subject
        msg["From"] = self.config.sender or self.config.user
        msg["To"] = to_email

        try:
            if self.config.port == 465:
                context = ssl.create_default_context()
                with smtplib.SMTP_SSL(self.config.host, self.config.port, context=context) as server:
                    server.login(self.config.user, self.config.password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP(self.config.host, self.config.port) as server:
                    server.starttls()
                    server.login(self.config.user, self.config.password)
                    server.send_message(msg)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(f"SMTP authentication failed: {e}")
            return False
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP error sending to {to_email}: {e}")
            return False

        logger.info(f"Email sent successfully to {to_email}")
        return True


class NotificationService:
    """
    Sends payment confirmation emails to the patient and the dentist.

    Failures are logged and reported through the return value; callers treat
    notifications as fire-and-forget.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        email_client: Optional[EmailClient] = None,
        smtp_config: Optional[SMTPConfig] = None,
    ):
        self.session_factory = session_factory
        self.email_client = email_client or EmailClient(smtp_config or SMTPConfig())

    async def _send(self, to_email: Optional[str], subject: str, body: str) -> bool:
        if not to_email:
            return False
        return await asyncio.to_thread(self.email_client.send_email, to_email, subject, body)

    async def notify_payment_confirmed(
        self,
        appointment_id: int,
        amount: Optional[Union[Decimal, str]] = None,
    ) -> bool:
        """
        Email the patient and the dentist that an appointment has been paid.

        Args:
            appointment_id: Appointment that was paid.
            amount: Amount paid, shown in the message.

        Returns:
            True if at least one email was sent.
        """
        async with session_scope(self.session_factory) as session:
            appointment = await AppointmentRepository(session).get_by_id(appointment_id)
            if appointment is None:
                logger.warning(f"Cannot notify payment for missing appointment {appointment_id}")
                return False
            details = appointment.to_dict()

        when = details["appointment_time"] or "the scheduled time"
        service = details["service_name"] or "your appointment"
        paid = f"PHP {amount}" if amount is not None else "your payment"

        patient_sent = await self._send(
            details["patient_email"],
            "Payment Confirmed - Appointment Scheduled",
            (
                f"Hi {details['patient_name'] or 'there'},\n\n"
                f"We received {paid} for {service} with "
                f"{details['dentist_name'] or 'your dentist'} on {when}.\n"
                "Your appointment is confirmed.\n"
            ),
        )
        dentist_sent = await self._send(
            details["dentist_email"],
            "Payment Received for Appointment",
            (
                f"Hi {details['dentist_name'] or 'Doctor'},\n\n"
                f"{details['patient_name'] or 'A patient'} paid {paid} for "
                f"{service} on {when} (appointment #{appointment_id}).\n"
            ),
        )

        logger.info(
            f"Payment confirmation for appointment {appointment_id}: "
            f"patient_sent={patient_sent}, dentist_sent={dentist_sent}"
        )
        return patient_sent or dentist_sent
