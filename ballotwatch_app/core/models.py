from __future__ import annotations

import datetime
import logging

from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import Q

logger = logging.getLogger(__name__)


class ElectionCycle(models.Model):
    """A grouping of contests decided together (e.g. "2026 General Election")."""

    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-created_at", "id")

    def __str__(self) -> str:
        return self.title


class ContestQuerySet(models.QuerySet["Contest"]):
    def open(self) -> ContestQuerySet:
        """Contests that are not in a terminal state.

        Uses raw strings because the queryset must be defined before Contest
        (Django's as_manager() requires it). They match Contest.Status below.
        """
        return self.exclude(status__in=["completed", "cancelled"])

    def due_for_completion(self, *, now: datetime.datetime) -> ContestQuerySet:
        # Upcoming contests are activated first, even when their window already passed.
        return self.filter(status__in=["active", "paused"], end_at__isnull=False, end_at__lte=now)

    def due_for_activation(self, *, now: datetime.datetime) -> ContestQuerySet:
        return self.filter(status="upcoming", start_at__lte=now)


class Contest(models.Model):
    class Status(models.TextChoices):
        upcoming = "upcoming", "Upcoming"
        active = "active", "Active"
        paused = "paused", "Paused"
        completed = "completed", "Completed"
        cancelled = "cancelled", "Cancelled"

    TERMINAL_STATUSES: frozenset[str] = frozenset({Status.completed, Status.cancelled})

    cycle = models.ForeignKey(
        ElectionCycle,
        on_delete=models.PROTECT,
        blank=True,
        null=True,
        related_name="contests",
    )
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    max_selections_per_member = models.PositiveSmallIntegerField(default=1, validators=[MinValueValidator(1)])
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.upcoming, db_index=True)
    start_at = models.DateTimeField()
    # A contest without an end is never completed automatically.
    end_at = models.DateTimeField(blank=True, null=True)

    # NULL means "never set" and is treated exactly like True.
    results_public = models.BooleanField(blank=True, null=True, default=True)

    # In-flight completion claim. Set atomically only while NULL; released on
    # failure, kept on success.
    completing_since = models.DateTimeField(blank=True, null=True)
    completed_at = models.DateTimeField(blank=True, null=True)
    completion_announced_at = models.DateTimeField(blank=True, null=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = ContestQuerySet.as_manager()

    class Meta:
        ordering = ("-start_at", "id")
        constraints = [
            models.CheckConstraint(
                condition=Q(end_at__isnull=True) | Q(end_at__gt=models.F("start_at")),
                name="core_contest_end_after_start",
            ),
            models.CheckConstraint(
                condition=Q(max_selections_per_member__gte=1),
                name="core_contest_max_selections_positive",
            ),
        ]
        indexes = [
            models.Index(fields=["status", "end_at"], name="contest_status_end"),
        ]

    def __str__(self) -> str:
        return self.title

    def clean(self) -> None:
        super().clean()
        if self.end_at is not None and self.start_at is not None and self.end_at <= self.start_at:
            raise ValidationError({"end_at": "End must be after start."})

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    @property
    def results_are_public(self) -> bool:
        return self.results_public is not False


class Candidate(models.Model):
    contest = models.ForeignKey(Contest, on_delete=models.CASCADE, related_name="candidates")
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    photo_url = models.URLField(blank=True, default="", max_length=2048)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("name", "id")
        constraints = [
            models.UniqueConstraint(fields=["contest", "name"], name="uniq_candidate_contest_name"),
        ]

    def __str__(self) -> str:
        return f"{self.name} ({self.contest_id})"


class Member(models.Model):
    class Role(models.TextChoices):
        member = "member", "Member"
        officer = "officer", "Officer"
        admin = "admin", "Admin"
        auditor = "auditor", "Auditor"

    username = models.CharField(max_length=255, unique=True)
    display_name = models.CharField(max_length=255, blank=True, default="")
    # Free text or a branch code; empty means the member never provided one.
    branch = models.CharField(max_length=255, blank=True, default="")
    role = models.CharField(max_length=16, choices=Role.choices, default=Role.member)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("username",)

    def __str__(self) -> str:
        return self.username


class BallotQuerySet(models.QuerySet["Ballot"]):
    def for_contest(self, *, contest_id: int) -> BallotQuerySet:
        return self.filter(contest_id=contest_id)

    def for_voter(self, *, contest_id: int, voter_id: str) -> BallotQuerySet:
        return self.filter(contest_id=contest_id, voter_id=voter_id)


class Ballot(models.Model):
    """One cast vote. Rows are append-only; there is no update path."""

    contest = models.ForeignKey(Contest, on_delete=models.CASCADE, related_name="ballots")
    # Member username. Not a FK: the member directory may live outside this database.
    voter_id = models.CharField(max_length=255, db_index=True)
    candidate = models.ForeignKey(Candidate, on_delete=models.PROTECT, related_name="ballots")
    cast_at = models.DateTimeField()

    objects = BallotQuerySet.as_manager()

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["contest", "voter_id", "candidate"],
                name="uniq_ballot_contest_voter_candidate",
            ),
        ]
        indexes = [
            models.Index(fields=["contest", "cast_at"], name="ballot_contest_at"),
            models.Index(fields=["contest", "voter_id"], name="ballot_contest_voter"),
        ]

    def __str__(self) -> str:
        return f"ballot:{self.contest_id}:{self.voter_id}:{self.candidate_id}"


class Announcement(models.Model):
    class Priority(models.TextChoices):
        low = "LOW", "Low"
        medium = "MEDIUM", "Medium"
        high = "HIGH", "High"

    class Audience(models.TextChoices):
        all = "all", "All members"
        has_voted = "hasVoted", "Members who voted"
        has_not_voted = "hasNotVoted", "Members who have not voted"

    title = models.CharField(max_length=255)
    content = models.TextField()
    priority = models.CharField(max_length=8, choices=Priority.choices, default=Priority.low)
    author = models.CharField(max_length=255, default="System")
    target_audience = models.JSONField(default=list)
    contest = models.ForeignKey(
        Contest,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name="announcements",
    )
    # Dedupe key for automatically generated announcements.
    event_key = models.CharField(max_length=255, blank=True, null=True, unique=True)
    published_at = models.DateTimeField()
    expires_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        ordering = ("-published_at", "-id")

    def __str__(self) -> str:
        return self.title


class AuditLogEntry(models.Model):
    contest = models.ForeignKey(Contest, on_delete=models.CASCADE, related_name="audit_log")
    timestamp = models.DateTimeField(auto_now_add=True)
    event_type = models.CharField(max_length=64)
    payload = models.JSONField(blank=True, default=dict)
    is_public = models.BooleanField(default=False)

    class Meta:
        verbose_name_plural = "Audit log entries"
        ordering = ("timestamp", "id")
        indexes = [
            models.Index(fields=["contest", "timestamp"], name="audit_contest_ts"),
            models.Index(fields=["contest", "is_public"], name="audit_contest_pub"),
        ]

    def __str__(self) -> str:
        return f"{self.contest_id}:{self.event_type}"
