from intake_queue.providers.base import (
    Attachment,
    EmailProvider,
    FetchedMessage,
    MessageDescriptor,
    MessagePage,
    SearchWindow,
)

__all__ = [
    "Attachment",
    "EmailProvider",
    "FetchedMessage",
    "MessageDescriptor",
    "MessagePage",
    "SearchWindow",
]
