import math
import logging

logger = logging.getLogger(__name__)

# Fixed fare: 10 per seat per km
FARE_PER_KM = 10
DEFAULT_SPEED_KMPH = 30.0

def haversine(lat1, lon1, lat2, lon2):
    """Calculate the great circle distance between two points on the earth"""
    R = 6371  # Earth radius in km
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi/2)**2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda/2)**2
    return R * (2 * math.atan2(math.sqrt(a), math.sqrt(1-a)))

def ride_amount(distance_km, seats):
    """Amount charged for booking `seats` seats over `distance_km`"""
    return round(FARE_PER_KM * float(distance_km) * int(seats), 2)

def per_seat_fare(distance_km):
    return round(FARE_PER_KM * float(distance_km), 2)

def estimate_fare(lat1, lon1, lat2, lon2, seats=1):
    distance = haversine(lat1, lon1, lat2, lon2)
    fare = ride_amount(distance, seats)
    logger.debug(f"Fare estimate: {distance:.2f} km x {seats} seat(s) = {fare:.2f}")
    return fare

def estimate_eta_minutes(lat1, lon1, lat2, lon2, speed_kmph=DEFAULT_SPEED_KMPH):
    """Minutes to cover the great-circle distance at `speed_kmph`, never below 1"""
    if speed_kmph is None or not math.isfinite(speed_kmph) or speed_kmph <= 0:
        raise ValueError("speed_kmph must be a positive number")
    distance = haversine(lat1, lon1, lat2, lon2)
    minutes = distance / speed_kmph * 60
    # Round half up
    return max(1, int(math.floor(minutes + 0.5)))
