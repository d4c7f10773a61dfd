from .donations import DonationStore
from .matching import MatchingEngine
from .notifications import NotificationSink
from .requests import RequestStore

__all__ = ["DonationStore", "MatchingEngine", "NotificationSink", "RequestStore"]
