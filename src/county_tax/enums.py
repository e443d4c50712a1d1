"""Closed enumerations for every status, reason and confidence field."""

from enum import Enum


class RunType(str, Enum):
    """Kinds of pipeline run."""

    SYNC = "sync"
    CALCULATE = "calculate"


class RunStatus(str, Enum):
    """Lifecycle of a pipeline run. Anything but IN_PROGRESS is terminal."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.IN_PROGRESS


class PaymentStatus(str, Enum):
    """Payment state of a mirrored invoice."""

    PAID = "paid"
    UNPAID = "unpaid"
    PARTIALLY_PAID = "partially_paid"
    SCHEDULED = "scheduled"
    UNKNOWN = "unknown"


class ProcessingStatus(str, Enum):
    """Outcome recorded on a tax result."""

    COUNTED = "counted"
    SKIPPED = "skipped"
    EXCLUDED = "excluded"
    FAILED = "failed"


class SkipReason(str, Enum):
    """Why a tax result was not counted."""

    CUSTOMER_EXCLUDED = "customer_excluded"
    UNPAID = "unpaid"
    NO_ADDRESS = "no_address"
    GEOCODING_FAILED = "geocoding_failed"
    COUNTY_RATE_NOT_FOUND = "county_rate_not_found"


class Confidence(str, Enum):
    """Geocoder's self-reported certainty about an address match."""

    MATCH = "Match"
    TIE = "Tie"
    NO_MATCH = "No_Match"
    ERROR = "Error"


class IncludeMode(str, Enum):
    """How the customer filter narrows the candidate invoices."""

    ALL = "all"
    EXCLUDE = "exclude"
    INCLUDE_ONLY = "include_only"
