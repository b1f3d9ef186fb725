from .collaborators import (
    DirectoryLeadResolver,
    LoggingChannelGateway,
    SessionArchive,
    normalize_identity,
    summarize_session,
)

__all__ = [
    "DirectoryLeadResolver",
    "LoggingChannelGateway",
    "SessionArchive",
    "normalize_identity",
    "summarize_session",
]
