"""External service clients: the invoicing system and the geocoder."""

from county_tax.clients.billcom import (
    AuthenticationError,
    BillcomAPIError,
    BillcomClient,
    SessionExpiredError,
)
from county_tax.clients.geocoder import CensusGeocoder, GeocoderError, GeocodingResult

__all__ = [
    # Invoicing
    "BillcomClient",
    "BillcomAPIError",
    "AuthenticationError",
    "SessionExpiredError",
    # Geocoding
    "CensusGeocoder",
    "GeocoderError",
    "GeocodingResult",
]
