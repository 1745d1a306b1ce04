"""
Appointment notifications over email (SMTP) and WhatsApp (HTTP API).
Best effort: runs after the booking has committed, and a failed send is
logged and dropped.
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import httpx

from clinic_backend.core import config
from clinic_backend.schemas.appointment import AppointmentResponse

logger = logging.getLogger(__name__)


def describe(appointment: AppointmentResponse) -> str:
    return (
        f"{appointment.appointment_date:%A, %B %d, %Y} at {appointment.appointment_time:%I:%M %p} "
        f"({appointment.location})"
    )


class NotificationDispatcher:
    def __init__(
        self,
        smtp_host: str = config.SMTP_HOST,
        smtp_port: int = config.SMTP_PORT,
        smtp_username: str = config.SMTP_USERNAME,
        smtp_password: str = config.SMTP_PASSWORD,
        smtp_use_tls: bool = config.SMTP_USE_TLS,
        from_address: str = config.EMAIL_FROM_ADDRESS,
        whatsapp_api_url: str = config.WHATSAPP_API_URL,
        whatsapp_api_token: str = config.WHATSAPP_API_TOKEN,
        clinic_name: str = config.CLINIC_NAME,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_address = from_address
        self.whatsapp_api_url = whatsapp_api_url
        self.whatsapp_api_token = whatsapp_api_token
        self.clinic_name = clinic_name

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_host and self.from_address)

    @property
    def whatsapp_enabled(self) -> bool:
        return bool(self.whatsapp_api_url)

    def send_email(self, to_email: str, subject: str, body: str) -> bool:
        if not self.email_enabled:
            logger.debug("Email disabled, skipping %s", subject)
            return False

        message = MIMEMultipart()
        message["From"] = self.from_address
        message["To"] = to_email
        message["Subject"] = subject
        message.attach(MIMEText(body, "plain"))

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=15) as server:
                if self.smtp_use_tls:
                    server.starttls()
                if self.smtp_username:
                    server.login(self.smtp_username, self.smtp_password)
                server.sendmail(self.from_address, [to_email], message.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("Email to %s failed: %s", to_email, exc)
            return False

        logger.info("Email sent to %s: %s", to_email, subject)
        return True

    def send_whatsapp(self, phone: str | None, text: str) -> bool:
        if not self.whatsapp_enabled or not phone:
            return False

        headers = {"Content-Type": "application/json"}
        if self.whatsapp_api_token:
            headers["Authorization"] = f"Bearer {self.whatsapp_api_token}"
        payload = {"to": phone, "type": "text", "text": {"body": text}}

        try:
            with httpx.Client(timeout=config.WHATSAPP_HTTP_TIMEOUT) as client:
                response = client.post(self.whatsapp_api_url, headers=headers, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("WhatsApp message to %s failed: %s", phone, exc)
            return False

        if response.status_code >= 400:
            logger.warning("WhatsApp message to %s failed: HTTP %s", phone, response.status_code)
            return False
        return True

    def _notify(self, appointment: AppointmentResponse, subject: str, text: str) -> None:
        greeting = f"Hi {appointment.patient_name}," if appointment.patient_name else "Hello,"
        body = f"{greeting}\n\n{text}\n\nBest regards,\n{self.clinic_name}"
        try:
            self.send_email(appointment.patient_email, subject, body)
            self.send_whatsapp(appointment.patient_phone, text)
        except Exception:
            logger.exception("Notification for appointment %s failed", appointment.id)

    def appointment_booked(self, appointment: AppointmentResponse) -> None:
        self._notify(
            appointment,
            "Appointment booked",
            f"Your {appointment.appointment_type} appointment is {appointment.status} for {describe(appointment)}.",
        )

    def appointment_canceled(self, appointment: AppointmentResponse) -> None:
        by = "by the doctor" if appointment.canceled_by_role == "doctor" else "at your request"
        self._notify(
            appointment,
            "Appointment canceled",
            f"Your appointment on {describe(appointment)} was canceled {by}.",
        )

    def appointment_rescheduled(self, previous: AppointmentResponse, appointment: AppointmentResponse) -> None:
        self._notify(
            appointment,
            "Appointment rescheduled",
            f"Your appointment on {describe(previous)} was moved to {describe(appointment)}.",
        )
