"""Exception hierarchy shared by the planner services."""

from __future__ import annotations


class PlannerError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(PlannerError):
    """Settings are missing or out of range. Raised at startup only."""


class PreferenceValidationError(PlannerError):
    """A preference record breaks an invariant (negative radius, unknown weight...)."""


class GeoSourceError(PlannerError):
    """The external place provider failed or returned an error payload."""


class ReasoningServiceError(PlannerError):
    """The AI reasoning service failed or answered with something unusable."""


class RecommendationFailure(PlannerError):
    """A pipeline run could not produce a shortlist. Terminal for that run."""

    user_message = "Could not generate recommendations, please retry."


class NoCandidatesError(RecommendationFailure):
    """Neither the catalog nor the external source returned a venue."""


class EmptyShortlistError(RecommendationFailure):
    """Every scored venue fell below the minimum score."""


class TransitionError(PlannerError):
    """The requested lifecycle transition is not allowed."""


class GuardRejected(TransitionError):
    """The transition exists but its guard returned False."""


class EventNotFound(PlannerError):
    pass


class VoteRejected(PlannerError):
    """A vote was cast outside voting, by a non-participant or on an unknown venue."""


class ProgressRegressionError(PlannerError):
    """A run tried to move its progress record backwards."""


class NotInvited(PlannerError):
    """The user is not a participant of the event (or has not accepted)."""


class PermissionDenied(PlannerError):
    """Only the organizer may do this."""
