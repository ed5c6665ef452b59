"""External system integrations"""

from .cache import CacheService
from .mail import MailMessage, MailTransport, SmtpMailTransport, SmtpServer

__all__ = [
    "CacheService",
    "MailMessage",
    "MailTransport",
    "SmtpMailTransport",
    "SmtpServer"
]
