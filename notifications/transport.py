import logging
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import make_msgid

from services.errors import NotificationError, PermanentNotificationError

logger = logging.getLogger(__name__)

# SMTP failures retrying will not fix
_PERMANENT_SMTP_ERRORS = (
    smtplib.SMTPAuthenticationError,
    smtplib.SMTPRecipientsRefused,
    smtplib.SMTPSenderRefused,
)


class SMTPTransport:
    """Sends messages through an SMTP server (STARTTLS, or implicit TLS on port 465)."""

    def __init__(self, host: str, port: int, user: str | None, password: str | None, timeout: float = 30.0):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.timeout = timeout

    def send(self, message: EmailMessage) -> str:
        if not self.user or not self.password:
            raise PermanentNotificationError("Missing EMAIL_USER/EMAIL_PASS")
        if "Message-ID" not in message:
            message["Message-ID"] = make_msgid(domain=self.user.split("@")[-1])

        context = ssl.create_default_context()
        try:
            if self.port == 465:
                with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout, context=context) as smtp:
                    smtp.login(self.user, self.password)
                    smtp.send_message(message)
            else:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                    smtp.starttls(context=context)
                    smtp.login(self.user, self.password)
                    smtp.send_message(message)
        except _PERMANENT_SMTP_ERRORS as e:
            raise PermanentNotificationError(str(e)) from e
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(str(e)) from e
        return message["Message-ID"]


class ConsoleTransport:
    """Logs messages instead of sending them. Used in development without credentials."""

    def send(self, message: EmailMessage) -> str:
        if "Message-ID" not in message:
            message["Message-ID"] = make_msgid(domain="console.local")
        logger.info(
            f"[console email] to={message['To']} subject={message['Subject']!r} id={message['Message-ID']}"
        )
        return message["Message-ID"]


def build_transport(settings):
    if settings.EMAIL_BACKEND == "console":
        logger.info("Email backend: console")
        return ConsoleTransport()
    logger.info(f"Email backend: SMTP {settings.EMAIL_HOST}:{settings.EMAIL_PORT}")
    return SMTPTransport(
        settings.EMAIL_HOST,
        settings.EMAIL_PORT,
        settings.EMAIL_USER,
        settings.EMAIL_PASS,
    )
