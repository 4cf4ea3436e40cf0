"""
Database models - import all models here so Alembic can discover them.
"""
from nurture.models.lead import Lead
from nurture.models.sequence import Sequence, SequenceStep
from nurture.models.enrollment import LeadSequence
from nurture.models.message_queue import MessageQueue
from nurture.models.sent_message import SentMessage
from nurture.models.newsletter import NewsletterSend, NewsletterSubscriber
from nurture.models.event_log import EventLog

__all__ = [
    "Lead",
    "Sequence",
    "SequenceStep",
    "LeadSequence",
    "MessageQueue",
    "SentMessage",
    "NewsletterSubscriber",
    "NewsletterSend",
    "EventLog",
]
