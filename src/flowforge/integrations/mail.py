"""
邮件发送集成
"""
import asyncio
import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Optional

from ..config import SmtpSettings
from ..exceptions import TransportFailure


logger = logging.getLogger(__name__)


@dataclass
class MailMessage:
    """待发送邮件"""
    sender: str
    to: str
    subject: str
    text: str
    html: Optional[str] = None


@dataclass
class SmtpServer:
    """单次发送使用的 SMTP 服务器参数"""
    host: str
    port: int
    username: Optional[str] = None
    password: Optional[str] = None


class MailTransport(ABC):
    """邮件传输接口"""

    @abstractmethod
    async def send(self, message: MailMessage, server: Optional[SmtpServer] = None) -> str:
        """发送邮件，返回 message id；不可达时抛出 TransportFailure"""
        pass


class SmtpMailTransport(MailTransport):
    """基于 smtplib 的邮件传输，在线程中执行阻塞调用"""

    def __init__(self, settings: SmtpSettings = None):
        self.settings = settings or SmtpSettings()

    def default_server(self) -> SmtpServer:
        return SmtpServer(
            host=self.settings.host,
            port=self.settings.port,
            username=self.settings.username,
            password=self.settings.password
        )

    async def send(self, message: MailMessage, server: Optional[SmtpServer] = None) -> str:
        server = server or self.default_server()
        try:
            return await asyncio.to_thread(self._send_sync, message, server)
        except (smtplib.SMTPException, OSError) as e:
            raise TransportFailure(f"{server.host}:{server.port}", str(e), e)

    def _build_message(self, message: MailMessage) -> MIMEMultipart:
        mime = MIMEMultipart('alternative')
        mime['From'] = message.sender
        mime['To'] = message.to
        mime['Subject'] = message.subject
        mime['Message-ID'] = make_msgid(domain=message.sender.rpartition('@')[2] or None)
        mime.attach(MIMEText(message.text, 'plain'))
        mime.attach(MIMEText(message.html or message.text, 'html'))
        return mime

    def _send_sync(self, message: MailMessage, server: SmtpServer) -> str:
        mime = self._build_message(message)

        with smtplib.SMTP(server.host, server.port, timeout=self.settings.timeout) as smtp:
            smtp.ehlo()
            if smtp.has_extn('starttls'):
                smtp.starttls()
                smtp.ehlo()
            if server.username and server.password:
                smtp.login(server.username, server.password)
            smtp.send_message(mime)

        logger.info(f"Email sent to {message.to} via {server.host}:{server.port}")
        return mime['Message-ID']
