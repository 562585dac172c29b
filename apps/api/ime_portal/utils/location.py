"""Booking location strings."""

from ime_portal.db.enums import BookingType

TELEHEALTH_LOCATION = "Online Meeting Room"
AWAITING_ADDRESS_LOCATION = "Awaiting admin confirmation"

# Country omitted from addresses in the home market
HOME_COUNTRY = "Australia"

_ADDRESS_PARTS = ("streetAddress", "suburb", "city", "state", "postalCode")


def format_location_full(location: dict | None) -> str | None:
    """e.g. "12 Main St, Fortitude Valley, Brisbane, QLD, 4006"."""
    if not location:
        return None

    parts = [str(location[key]).strip() for key in _ADDRESS_PARTS if location.get(key)]
    country = location.get("country")
    if country and country != HOME_COUNTRY:
        parts.append(str(country).strip())

    parts = [p for p in parts if p]
    return ", ".join(parts) if parts else None


def booking_location(booking_type: BookingType, specialist_location: dict | None) -> str:
    """Location stored on a new booking for the given modality."""
    if booking_type == BookingType.TELEHEALTH:
        return TELEHEALTH_LOCATION
    return format_location_full(specialist_location) or AWAITING_ADDRESS_LOCATION
