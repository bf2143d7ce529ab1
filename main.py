"""Ride-sharing backend

REST API for a ride-sharing platform: drivers publish rides, passengers search
and book seats, payments and wallet refunds are recorded, and admins verify
driver documents and vehicles.

Commands:
  - Initialize DB (creates tables):
      python main.py init_db

  - Seed demo data (drivers, passengers, vehicles and upcoming rides):
      python main.py seed

  - Run server:
      python main.py runserver

Ride Lifecycle:
  - scheduled: Ride is published and open for bookings
  - ongoing: Driver has started the trip
  - completed: Trip finished, passengers are asked to confirm they arrived safely
  - cancelled: Driver cancelled, bookings are cancelled and wallet payments refunded
"""

import sys
import random
import logging
from datetime import date, timedelta
from faker import Faker

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Configuration constants
CITY_CENTER = (12.9716, 77.5946)  # Bangalore coordinates
CITY_RADIUS_KM = 20
NUM_PASSENGERS = 10
NUM_DRIVERS = 5
SEED_DAYS = 3
DEMO_PASSWORD = "password123"
PLACES = ["MG Road", "Whitefield", "Koramangala", "Indiranagar", "Electronic City", "Hebbal", "Jayanagar", "Airport"]

# Initialize faker for generating random names
faker = Faker()

from app import create_app, db, bcrypt
from models import User, Vehicle, Ride, Wallet
from pricing import haversine, FARE_PER_KM

# Create Flask application
app = create_app()

# ---------------- HELPERS ----------------
def random_point_within_km(center, radius_km):
    """Generate a random point within a given radius from a center point"""
    import math
    # 1 deg lat ~ 111 km; 1 deg lon ~ 111 km * cos(lat)
    r = random.random()**0.5 * radius_km
    theta = random.random() * 2 * math.pi
    dx = r * math.cos(theta)
    dy = r * math.sin(theta)
    dlat = dy / 111.0
    dlng = dx / (111.0 * math.cos(math.radians(center[0])))
    return (center[0] + dlat, center[1] + dlng)

def random_phone(used):
    while True:
        phone = "9" + "".join(random.choice("0123456789") for _ in range(9))
        if phone not in used:
            used.add(phone)
            return phone

# ---------------- SEED FUNCTIONS ----------------
def seed_users():
    """Create demo drivers (with vehicles) and passengers (with wallets)"""
    with app.app_context():
        if User.query.count() > 0:
            logger.info("Users already exist in the database")
            return

        password_hash = bcrypt.generate_password_hash(DEMO_PASSWORD).decode('utf-8')
        phones = set()

        for i in range(NUM_DRIVERS):
            lat, lng = random_point_within_km(CITY_CENTER, CITY_RADIUS_KM)
            driver = User(
                name=faker.name(),
                email=f"driver{i+1}@example.com",
                phone=random_phone(phones),
                password_hash=password_hash,
                user_type="driver",
                is_available=True,
                latitude=lat,
                longitude=lng,
            )
            driver.vehicles.append(Vehicle(
                model=random.choice(["Swift Dzire", "Innova", "Ertiga", "City"]),
                license_plate=f"KA01{faker.unique.bothify('??####').upper()}",
                capacity=random.choice([4, 5, 7]),
                color=faker.safe_color_name(),
                verification_status="approved",
            ))
            db.session.add(driver)

        for i in range(NUM_PASSENGERS):
            lat, lng = random_point_within_km(CITY_CENTER, CITY_RADIUS_KM)
            passenger = User(
                name=faker.name(),
                email=f"passenger{i+1}@example.com",
                phone=random_phone(phones),
                password_hash=password_hash,
                user_type="passenger",
                latitude=lat,
                longitude=lng,
            )
            db.session.add(passenger)
            db.session.flush()
            db.session.add(Wallet(user_id=passenger.id, balance=float(random.choice([0, 200, 500, 1000]))))

        db.session.add(User(
            name="Admin",
            email="admin@example.com",
            phone=random_phone(phones),
            password_hash=password_hash,
            user_type="admin",
        ))
        db.session.commit()
        logger.info(f"Created {NUM_DRIVERS} drivers, {NUM_PASSENGERS} passengers and 1 admin (password: {DEMO_PASSWORD})")

def seed_rides(days=SEED_DAYS):
    """Publish a couple of rides per driver for each of the next few days"""
    with app.app_context():
        drivers = User.query.filter_by(user_type="driver").all()
        logger.info(f"Found {len(drivers)} drivers for ride generation")

        total_rides = 0
        for day in range(days):
            ride_date = date.today() + timedelta(days=day + 1)
            for driver in drivers:
                vehicle = driver.vehicles[0] if driver.vehicles else None
                for _ in range(random.randint(1, 2)):
                    source, destination = random.sample(PLACES, 2)
                    start = random_point_within_km(CITY_CENTER, CITY_RADIUS_KM)
                    end = random_point_within_km(CITY_CENTER, CITY_RADIUS_KM)
                    seats = (vehicle.capacity - 1) if vehicle else 3
                    db.session.add(Ride(
                        driver_id=driver.id,
                        vehicle_id=vehicle.id if vehicle else None,
                        source=source,
                        destination=destination,
                        date=ride_date,
                        time=f"{random.randint(6, 21):02d}:{random.choice([0, 15, 30, 45]):02d}:00",
                        total_seats=seats,
                        available_seats=seats,
                        fare_per_km=FARE_PER_KM,
                        distance_km=round(haversine(start[0], start[1], end[0], end[1]), 2),
                        status="scheduled",
                    ))
                    total_rides += 1
            db.session.commit()
            logger.info(f"Generated rides for {ride_date.isoformat()}")

        logger.info(f"Total rides generated: {total_rides}")

# ---------------- CLI ENTRYPOINT ----------------
def init_db():
    """Initialize the database tables"""
    with app.app_context():
        db.create_all()
        logger.info("Database initialized")

def run_seed():
    """Create tables and load demo data"""
    init_db()
    seed_users()
    seed_rides(SEED_DAYS)
    logger.info("Seeding completed successfully")

def run_server():
    """Run the Flask server"""
    # Make sure database is initialized
    with app.app_context():
        db.create_all()

    app.run(debug=True, use_reloader=False, host='0.0.0.0', port=5000)

if __name__ == '__main__':
    if len(sys.argv) < 2:
        print("Usage: python main.py [init_db|seed|runserver]")
        sys.exit(1)

    command = sys.argv[1]

    if command == 'init_db':
        init_db()
    elif command == 'seed':
        run_seed()
    elif command == 'runserver':
        run_server()
    else:
        print("Unknown command. Available commands: init_db, seed, runserver")
        sys.exit(1)
