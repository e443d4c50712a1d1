"""Best-effort parsing of free-text billing addresses.

Invoice addresses arrive as loosely formatted strings, e.g.
"123 Main St, Asheville, NC 28801", "214 Alta Vista Dr Candler NC 28715"
or just "Asheville". The parser peels a trailing ZIP and state off the last
component and splits what is left into street and city. It never raises;
anything it cannot place ends up in ``street`` so the one-line form of the
address still carries it to the geocoder.
"""

import re
from dataclasses import dataclass

DEFAULT_STATE = "NC"

US_STATES: dict[str, str] = {
    "AL": "Alabama", "AK": "Alaska", "AZ": "Arizona", "AR": "Arkansas",
    "CA": "California", "CO": "Colorado", "CT": "Connecticut", "DE": "Delaware",
    "DC": "District of Columbia", "FL": "Florida", "GA": "Georgia", "HI": "Hawaii",
    "ID": "Idaho", "IL": "Illinois", "IN": "Indiana", "IA": "Iowa",
    "KS": "Kansas", "KY": "Kentucky", "LA": "Louisiana", "ME": "Maine",
    "MD": "Maryland", "MA": "Massachusetts", "MI": "Michigan", "MN": "Minnesota",
    "MS": "Mississippi", "MO": "Missouri", "MT": "Montana", "NE": "Nebraska",
    "NV": "Nevada", "NH": "New Hampshire", "NJ": "New Jersey", "NM": "New Mexico",
    "NY": "New York", "NC": "North Carolina", "ND": "North Dakota", "OH": "Ohio",
    "OK": "Oklahoma", "OR": "Oregon", "PA": "Pennsylvania", "RI": "Rhode Island",
    "SC": "South Carolina", "SD": "South Dakota", "TN": "Tennessee", "TX": "Texas",
    "UT": "Utah", "VT": "Vermont", "VA": "Virginia", "WA": "Washington",
    "WV": "West Virginia", "WI": "Wisconsin", "WY": "Wyoming",
}

# Longest first so "West Virginia" wins over "Virginia"
_STATE_NAMES = sorted(
    ((name.upper(), code) for code, name in US_STATES.items()),
    key=lambda item: len(item[0]),
    reverse=True,
)

_COUNTY_SUFFIX = re.compile(r"\s+(county|co\.?)$", re.IGNORECASE)
_ZIP_TAIL = re.compile(r"(?:^|[\s,])(\d{5})(?:-(\d{4}))?\s*$")
_STATE_CODE_TAIL = re.compile(r"(?:^|\s)([A-Za-z]{2})\.?\s*$")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class ParsedAddress:
    """Components of a parsed address."""

    street: str
    city: str
    state: str
    zip: str
    state_found: bool = False

    @property
    def one_line(self) -> str:
        """Address rebuilt as "street, city, ST zip" without empty parts."""
        state_zip = " ".join(part for part in (self.state, self.zip) if part)
        return ", ".join(part for part in (self.street, self.city, state_zip) if part)

    @property
    def is_empty(self) -> bool:
        return not (self.street or self.city or self.zip)


def normalize_county_name(name: str | None) -> str:
    """Trim a county name and drop a trailing "County"/"Co." qualifier."""
    if not name:
        return ""
    cleaned = _WHITESPACE.sub(" ", name).strip()
    return _COUNTY_SUFFIX.sub("", cleaned).strip()


def _take_zip(text: str) -> tuple[str, str]:
    match = _ZIP_TAIL.search(text)
    if not match:
        return text, ""
    zip_code = match.group(1)
    if match.group(2):
        zip_code = f"{zip_code}-{match.group(2)}"
    return text[: match.start(1)].strip(" ,"), zip_code


def _take_state(text: str, has_zip: bool, others: int) -> tuple[str, str]:
    """Peel a state name or code off the end of ``text``.

    ``others`` counts the components before ``text``. Without a ZIP a
    state name may just as well be a city ("Washington", "Nevada"), so it
    is only read as the state when it stands alone after a street and a
    city.
    """
    upper = text.upper()
    for name, code in _STATE_NAMES:
        if has_zip and (upper == name or upper.endswith(f" {name}")):
            return text[: len(text) - len(name)].strip(" ,"), code
        if upper == name and others >= 2:
            return "", code

    if not (has_zip or others):
        return text, ""
    match = _STATE_CODE_TAIL.search(text)
    if match and match.group(1).upper() in US_STATES:
        return text[: match.start(1)].strip(" ,"), match.group(1).upper()
    return text, ""


def parse_address(address: str | None, default_state: str = DEFAULT_STATE) -> ParsedAddress:
    """Split a free-text address into street, city, state and ZIP.

    Args:
        address: Raw address, commas and/or newlines between components.
        default_state: State assumed when none can be found.

    Returns:
        ParsedAddress; ``state_found`` tells whether the state was read
        from the text or defaulted.
    """
    default_state = default_state.upper()
    if not address or not address.strip():
        return ParsedAddress(street="", city="", state=default_state, zip="")

    text = address.replace("\r", "\n").replace("\n", ",")
    parts = [_WHITESPACE.sub(" ", part).strip() for part in text.split(",")]
    parts = [part for part in parts if part]
    if not parts:
        return ParsedAddress(street="", city="", state=default_state, zip="")

    tail, zip_code = _take_zip(parts.pop())
    if not tail and parts:
        # "..., NC, 28801": the state sits one component earlier
        tail = parts.pop()

    # A bare two-letter word is only trusted as a state when the address is
    # comma separated or carries a ZIP ("123 Main St NE" stays a street)
    tail, state = _take_state(tail, has_zip=bool(zip_code), others=len(parts))

    components = parts + [tail] if tail else parts
    if len(components) >= 2:
        street = ", ".join(components[:-1])
        city = components[-1]
    elif components:
        street, city = components[0], ""
    else:
        street, city = "", ""

    return ParsedAddress(
        street=street,
        city=city,
        state=state or default_state,
        zip=zip_code,
        state_found=bool(state),
    )
