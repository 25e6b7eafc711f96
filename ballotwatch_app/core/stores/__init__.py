"""Store contracts and their default implementations."""

from django.conf import settings

from core.stores.database import (
    DatabaseNotificationSink,
    DjangoBallotStore,
    DjangoContestStore,
    DjangoMemberStore,
)
from core.stores.exceptions import NotificationFailedError, StoreUnavailableError
from core.stores.interfaces import (
    AnnouncementDraft,
    BallotRecord,
    BallotStore,
    CandidateRecord,
    ContestStore,
    MemberRecord,
    MemberStore,
    NotificationSink,
)
from core.stores.member_directory import HttpMemberDirectory


def default_member_store() -> MemberStore:
    url = str(settings.MEMBER_DIRECTORY_URL or "").strip()
    if url:
        return HttpMemberDirectory(url=url, token=settings.MEMBER_DIRECTORY_TOKEN)
    return DjangoMemberStore()


__all__ = [
    "AnnouncementDraft",
    "BallotRecord",
    "BallotStore",
    "CandidateRecord",
    "ContestStore",
    "DatabaseNotificationSink",
    "DjangoBallotStore",
    "DjangoContestStore",
    "DjangoMemberStore",
    "HttpMemberDirectory",
    "MemberRecord",
    "MemberStore",
    "NotificationFailedError",
    "NotificationSink",
    "StoreUnavailableError",
    "default_member_store",
]
