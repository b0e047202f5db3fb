from .client import ChatTransport, SubjectApi, TherapistApi, TransportError

__all__ = [
    "ChatTransport",
    "SubjectApi",
    "TherapistApi",
    "TransportError",
]
