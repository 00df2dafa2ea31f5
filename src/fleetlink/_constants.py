"""Internal constants shared across the library."""

USER_AGENT = "fleetlink/0.1 (+aiohttp)"

# ------------------------------------------------------------------
# Unit conversions used by provider adapters
# ------------------------------------------------------------------

KM_PER_MILE = 1.609344


def miles_to_km(miles: float) -> float:
    return miles * KM_PER_MILE


def fraction_to_percent(value: float) -> float:
    """Convert a 0..1 fraction to a percentage."""
    return round(value * 100.0, 2)


# ------------------------------------------------------------------
# Motion detection
# ------------------------------------------------------------------

#: Speeds at or below this are treated as parked (GPS jitter).
PARKED_SPEED_KPH = 3.0

#: Mean earth radius used for geofence distances.
EARTH_RADIUS_M = 6_371_008.8
