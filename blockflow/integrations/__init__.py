"""Collaborator integrations.

Each collaborator the engine depends on (app ownership, media storage,
outbound email, AI summarization, live-update publishing) is an interface
with a production implementation and, where tests need one, an in-memory
double.
"""

from blockflow.integrations.base import ExternalServiceError, InvalidApiKeyError, RateLimitedError
from blockflow.integrations.email import EmailSender, SmtpEmailSender
from blockflow.integrations.gemini import GeminiSummarizer, Summarizer
from blockflow.integrations.media import LocalMediaStorage, MediaStorage
from blockflow.integrations.ownership import AppOwnership, SqlAppOwnership
from blockflow.integrations.publisher import InMemoryPublisher, Publisher, RedisPublisher

__all__ = [
    "AppOwnership",
    "EmailSender",
    "ExternalServiceError",
    "GeminiSummarizer",
    "InMemoryPublisher",
    "InvalidApiKeyError",
    "LocalMediaStorage",
    "MediaStorage",
    "Publisher",
    "RateLimitedError",
    "RedisPublisher",
    "SmtpEmailSender",
    "SqlAppOwnership",
    "Summarizer",
]
