"""
Dispatch enumerations.

Defines roles, request lifecycle states and response outcomes used across
the ledger, the coordinator and the API.
"""

import enum


class UserRole(str, enum.Enum):
    """
    Role carried in the bearer token.

    Roles:
        ADMIN: Operations staff (statistics, manual sweeps)
        REQUESTER: Customer placing delivery requests
        DRIVER: Receives and answers offers
    """
    ADMIN = "ADMIN"
    REQUESTER = "REQUESTER"
    DRIVER = "DRIVER"


class RequestStatus(str, enum.Enum):
    """TripRequest lifecycle state."""
    PENDING = "pending"  # Created, no round started yet
    MATCHING = "matching"  # A coordinator claimed the request and is searching
    MATCHED = "matched"  # Offer outstanding, acceptance_deadline set
    ACCEPTED = "accepted"  # Exactly one driver's accept recorded
    EXPIRED_NO_RESPONSE = "expired_no_response"  # Deadline passed with no accept
    IN_PROGRESS = "in_progress"  # Pickup started (external event)
    DELIVERED = "delivered"  # Terminal
    CANCELLED = "cancelled"  # Terminal
    NO_DRIVERS_AVAILABLE = "no_drivers_available"  # Terminal


# States from which a requester may still cancel
CANCELLABLE_STATUSES = (
    RequestStatus.PENDING,
    RequestStatus.MATCHING,
    RequestStatus.MATCHED,
    RequestStatus.EXPIRED_NO_RESPONSE,
)

# States in which the driver is committed to the request
ASSIGNED_STATUSES = (
    RequestStatus.ACCEPTED,
    RequestStatus.IN_PROGRESS,
)


class TimingMode(str, enum.Enum):
    """Pickup preference."""
    ASAP = "asap"
    SCHEDULED = "scheduled"


class OfferMode(str, enum.Enum):
    """How a round distributes its offer."""
    BROADCAST = "broadcast"  # All candidates, first accept wins
    SEQUENTIAL = "sequential"  # Best candidate only


class Decision(str, enum.Enum):
    """Driver response to an offer."""
    ACCEPT = "accept"
    DECLINE = "decline"


class ResponseOutcome(str, enum.Enum):
    """Result of RespondToOffer."""
    ACCEPTED = "accepted"
    TOO_LATE = "too_late"
    INVALID_ROUND = "invalid_round"
    NOT_OFFERED = "not_offered"
    DECLINED = "declined"


class CancelOutcome(str, enum.Enum):
    """Result of CancelRequest."""
    CANCELLED = "cancelled"
    ALREADY_TERMINAL = "already_terminal"


class TransitionResult(str, enum.Enum):
    """Result of a conditional ledger write."""
    APPLIED = "applied"
    STALE = "stale"  # Precondition failed, another writer got there first


class RoundOutcome(str, enum.Enum):
    """Result of one matching round."""
    PENDING = "pending"
    WON = "won"
    ALL_DECLINED = "all_declined"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    NO_DRIVERS = "no_drivers"
    ABORTED = "aborted"  # Claim or offer write was stale
    ABANDONED = "abandoned"  # Store unreachable, left to the reaper
