import logging
import smtplib
from email.mime.text import MIMEText
from typing import Optional

from activity_digest.domain.exceptions import DeliveryError

logger = logging.getLogger(__name__)

SSL_PORT = 465


class SmtpMailer:
    """Sends the HTML digest over SMTP (implicit SSL on 465, STARTTLS otherwise)."""

    def __init__(
        self,
        host: str,
        port: int = SSL_PORT,
        username: Optional[str] = None,
        password: Optional[str] = None,
        sender: Optional[str] = None,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender or username or f"activity-digest@{host}"

    def build_message(self, to_address: str, subject: str, html_body: str) -> MIMEText:
        msg = MIMEText(html_body, "html", "utf-8")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to_address
        return msg

    def send(self, to_address: str, subject: str, html_body: str) -> None:
        msg = self.build_message(to_address, subject, html_body)

        try:
            if self.port == SSL_PORT:
                server = smtplib.SMTP_SSL(self.host, self.port, timeout=30)
            else:
                server = smtplib.SMTP(self.host, self.port, timeout=30)

            with server:
                if self.port != SSL_PORT:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.sendmail(self.sender, [to_address], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"Could not send digest to {to_address}: {e}") from e

        logger.info(f"Email sent successfully to {to_address}.")
